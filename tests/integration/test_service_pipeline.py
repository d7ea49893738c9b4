import json

from context_cache.config import AccountingConfig, ServiceConfig, StoreConfig, SummarizerConfig
from context_cache.service.context import ContextService
from context_cache.service.methods import register_context_methods
from context_cache.service.registry import MethodRegistry
from context_cache.service.schemas import RecordInput
from context_cache.types import RetrievalQuery


class _CompactSummarizer:
    def __call__(self, text: str, target_tokens: int) -> str:
        return " ".join(["fact"] * target_tokens)


def _config(tmp_path, threshold: int = 1500) -> ServiceConfig:
    return ServiceConfig(
        store=StoreConfig(data_dir=str(tmp_path / "records")),
        summarizer=SummarizerConfig(threshold_tokens=threshold, target_tokens=52),
        accounting=AccountingConfig(log_path=str(tmp_path / "accounting.jsonl")),
    )


def _build(tmp_path, clock, word_estimator, threshold: int = 1500) -> ContextService:
    return ContextService.build(
        _config(tmp_path, threshold),
        summarize=_CompactSummarizer(),
        estimate_tokens=word_estimator,
        clock=clock,
    )


def test_long_session_is_summarized_and_retrievable_after_restart(tmp_path, clock, word_estimator) -> None:
    service = _build(tmp_path, clock, word_estimator, threshold=3200)
    working = service.store_record(
        RecordInput(
            type="working_notes",
            summary="Scratch notes for the retention review.",
            tags=["active_session", "customer_retention"],
            token_estimate=8,
        )
    )

    session = service.open_session(
        ["customer_retention", "q4_2024"],
        session_id="review",
        supersedes=[working["id"]],
    )
    for _ in range(4):
        service.append_turn("review", " ".join(["turn"] * 800))
    assert session.state.value == "pending_summarization"

    record = service.summarize_session("review")
    service.coordinator.shutdown()

    assert record.token_estimate == 52
    assert record.source_token_cost == 3200
    assert "active_session" not in service.get_record(working["id"]).tags

    reopened = _build(tmp_path, clock, word_estimator)
    result = reopened.retrieve(RetrievalQuery(tags={"customer_retention", "q4_2024"}, max_tokens=55))

    assert result.ids == [record.id]
    assert result.total_tokens_retrieved == 52
    assert result.alternative_available is True
    assert reopened.list_available()["tags"]["session:review"] == 1

    events = [entry.event for entry in reopened.accounting.entries()]
    assert events == ["summarization", "retrieval"]
    assert reopened.accounting.summary()["total_tokens_saved"] == 3148 + (3200 - 52)
    reopened.coordinator.shutdown()


def test_registry_tools_drive_the_same_service(tmp_path, clock, word_estimator) -> None:
    service = _build(tmp_path, clock, word_estimator)
    registry = MethodRegistry()
    register_context_methods(registry, service)
    tools = {tool.name: tool for tool in registry.as_langchain_tools()}

    assert set(tools) == {"retrieve", "store", "summarize_and_store", "list_available", "get_record"}

    stored = json.loads(
        tools["summarize_and_store"].invoke(
            {"raw_text": " ".join(["turn"] * 400), "tags": ["q4_2024"], "target_tokens": 30}
        )
    )
    assert stored["token_estimate"] == 30

    fetched = json.loads(tools["get_record"].invoke({"id": stored["id"]}))
    assert fetched["source_token_cost"] == 400

    missing = json.loads(tools["get_record"].invoke({"id": "nope"}))
    assert missing["error"]["code"] == "not_found"

    retrieved = json.loads(tools["retrieve"].invoke({"tags": ["q4_2024"], "max_tokens": 100}))
    assert [item["id"] for item in retrieved["records"]] == [stored["id"]]
    service.coordinator.shutdown()


def test_update_keeps_creation_time_and_reindexes(tmp_path, clock, word_estimator) -> None:
    service = _build(tmp_path, clock, word_estimator)
    created = service.store_record(
        RecordInput(type="workflow_summary", summary="v1", tags=["draft"], token_estimate=4)
    )
    original = service.get_record(created["id"])

    updated = service.update_record(
        created["id"],
        RecordInput(type="workflow_summary", summary="v2", tags=["final"], token_estimate=4),
    )

    assert updated.created_at == original.created_at
    assert service.list_available() == {"tags": {"final": 1}}
    assert service.retrieve(RetrievalQuery(tags={"draft"})).records == []
    service.coordinator.shutdown()
