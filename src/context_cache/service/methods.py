"""Protocol methods exposed through the registry."""

from __future__ import annotations

from typing import Any

from context_cache.service.context import ContextService, record_to_dict, result_to_dict
from context_cache.service.registry import MethodRegistry, MethodSpec
from context_cache.service.schemas import (
    GetRecordInput,
    ListAvailableInput,
    RecordInput,
    RetrieveInput,
    SummarizeAndStoreInput,
)


def register_context_methods(registry: MethodRegistry, service: ContextService) -> None:
    """Register the context cache method set.

    Methods:
    - `retrieve`: budget-constrained record selection (read-only).
    - `store`: insert a pre-formed record; the store assigns the id.
    - `summarize_and_store`: summarize raw text into a new record.
    - `list_available`: tag -> record count, for discovery.
    - `get_record`: fetch one record by id.
    """

    def _retrieve(input_data: RetrieveInput) -> dict[str, Any]:
        return result_to_dict(service.retrieve(input_data.to_query()))

    def _store(input_data: RecordInput) -> dict[str, Any]:
        return service.store_record(input_data)

    def _summarize_and_store(input_data: SummarizeAndStoreInput) -> dict[str, Any]:
        return service.summarize_and_store(
            input_data.raw_text,
            input_data.tags,
            input_data.target_tokens,
            record_type=input_data.record_type,
            supersedes=input_data.supersedes,
            key_entities=input_data.key_entities,
        )

    def _list_available(input_data: ListAvailableInput) -> dict[str, Any]:
        return service.list_available()

    def _get_record(input_data: GetRecordInput) -> dict[str, Any]:
        return record_to_dict(service.get_record(input_data.id))

    registry.register(
        MethodSpec(
            name="retrieve",
            description=(
                "Retrieve stored context summaries matching tags and/or free text "
                "within a token budget."
            ),
            args_schema=RetrieveInput,
            handler=_retrieve,
            read_only=True,
            tags=["retrieval"],
        )
    )
    registry.register(
        MethodSpec(
            name="store",
            description="Store a pre-formed context summary record.",
            args_schema=RecordInput,
            handler=_store,
            tags=["store"],
        )
    )
    registry.register(
        MethodSpec(
            name="summarize_and_store",
            description="Summarize raw text into a compact record and store it.",
            args_schema=SummarizeAndStoreInput,
            handler=_summarize_and_store,
            tags=["summarize", "store"],
        )
    )
    registry.register(
        MethodSpec(
            name="list_available",
            description="List available tags with the number of records carrying each.",
            args_schema=ListAvailableInput,
            handler=_list_available,
            read_only=True,
            tags=["discovery"],
        )
    )
    registry.register(
        MethodSpec(
            name="get_record",
            description="Fetch one stored record by id.",
            args_schema=GetRecordInput,
            handler=_get_record,
            read_only=True,
            tags=["store"],
        )
    )
