"""FastAPI entrypoint for retrieval, storage, summarization and accounting."""

from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from context_cache.config import ServiceConfig
from context_cache.errors import ContextCacheError, NotFoundError, SummarizationFailed, ValidationError
from context_cache.logging_config import setup_logging
from context_cache.obs.accounting import entry_to_dict
from context_cache.service.context import (
    ContextService,
    record_to_dict,
    result_to_dict,
    session_to_dict,
)
from context_cache.service.methods import register_context_methods
from context_cache.service.registry import MethodRegistry
from context_cache.service.schemas import (
    OpenSessionInput,
    RecordInput,
    RetrieveInput,
    SessionSummarizeInput,
    SummarizeAndStoreInput,
    TurnInput,
)
from context_cache.summarize.collaborators import LangChainSummarizer, SummarizeFn

_STATUS_BY_ERROR: dict[type[ContextCacheError], int] = {
    ValidationError: 422,
    NotFoundError: 404,
    SummarizationFailed: 502,
}


def _create_summarizer() -> SummarizeFn | None:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"), temperature=0)
    return LangChainSummarizer(llm)


def create_app(service: ContextService | None = None) -> FastAPI:
    if service is None:
        service = ContextService.build(ServiceConfig.from_env(), summarize=_create_summarizer())
    registry = MethodRegistry()
    register_context_methods(registry, service)

    app = FastAPI(title="Context Cache", version="0.1.0")
    app.state.service = service
    app.state.registry = registry

    @app.exception_handler(ContextCacheError)
    async def _context_error(request: Request, exc: ContextCacheError) -> JSONResponse:
        status = next(
            (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
            500,
        )
        return JSONResponse(status_code=status, content=exc.to_dict())

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "record_count": len(service.store),
            "persistent": service.config.store.data_dir is not None,
            "strategies": service.engine.strategies,
            "accounting": service.accounting.summary(),
        }

    @app.post("/retrieve")
    def retrieve(request: RetrieveInput) -> dict[str, Any]:
        return result_to_dict(service.retrieve(request.to_query()))

    @app.post("/records")
    def store(request: RecordInput) -> dict[str, Any]:
        return service.store_record(request)

    @app.get("/records/{record_id}")
    def get_record(record_id: str) -> dict[str, Any]:
        return record_to_dict(service.get_record(record_id))

    @app.put("/records/{record_id}")
    def update_record(record_id: str, request: RecordInput) -> dict[str, Any]:
        return record_to_dict(service.update_record(record_id, request))

    @app.post("/summaries")
    def summarize_and_store(request: SummarizeAndStoreInput) -> dict[str, Any]:
        return service.summarize_and_store(
            request.raw_text,
            request.tags,
            request.target_tokens,
            record_type=request.record_type,
            supersedes=request.supersedes,
            key_entities=request.key_entities,
        )

    @app.get("/tags")
    def list_available() -> dict[str, Any]:
        return service.list_available()

    @app.post("/sessions")
    def open_session(request: OpenSessionInput) -> dict[str, Any]:
        session = service.open_session(
            request.tags,
            record_type=request.record_type,
            session_id=request.session_id,
            supersedes=request.supersedes,
            key_entities=request.key_entities,
        )
        return session_to_dict(session)

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str) -> dict[str, Any]:
        return session_to_dict(service.get_session(session_id))

    @app.post("/sessions/{session_id}/turns")
    def append_turn(session_id: str, request: TurnInput) -> dict[str, Any]:
        return session_to_dict(service.append_turn(session_id, request.text))

    @app.post("/sessions/{session_id}/checkpoint")
    def checkpoint(session_id: str) -> dict[str, Any]:
        return session_to_dict(service.checkpoint(session_id))

    @app.post("/sessions/{session_id}/summarize")
    def summarize_session(session_id: str, request: SessionSummarizeInput) -> dict[str, Any]:
        record = service.summarize_session(
            session_id,
            target_tokens=request.target_tokens,
            timeout=request.timeout_seconds,
        )
        return {"id": record.id, "token_estimate": record.token_estimate}

    @app.delete("/sessions/{session_id}")
    def close_session(session_id: str) -> dict[str, Any]:
        return session_to_dict(service.close_session(session_id))

    @app.get("/accounting/entries")
    def accounting_entries(limit: int = Query(default=50, ge=1)) -> dict[str, Any]:
        return {"items": [entry_to_dict(entry) for entry in service.accounting.entries(limit=limit)]}

    @app.get("/accounting/rollup")
    def accounting_rollup(period: str = "day") -> dict[str, Any]:
        items = []
        for bucket in service.accounting_rollup(period):
            item = asdict(bucket)
            item["period_start"] = bucket.period_start.isoformat()
            items.append(item)
        return {"period": period, "items": items, "summary": service.accounting.summary()}

    @app.post("/rpc/{method}")
    def rpc(method: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            return registry.execute(method, payload)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=f"Unknown method: {method}") from exc

    return app


setup_logging()
app = create_app()
