"""Transport-agnostic context cache service."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any

from loguru import logger

from context_cache.config import ServiceConfig
from context_cache.errors import ValidationError
from context_cache.obs.accounting import AccountingLog, Timer
from context_cache.retrieval.engine import RankingEngine
from context_cache.service.schemas import RecordInput
from context_cache.store.backend import JsonDirectoryBackend
from context_cache.store.codec import encode_record
from context_cache.store.record_store import RecordStore
from context_cache.summarize.collaborators import (
    ExtractiveSummarizer,
    SummarizeFn,
    TokenEstimator,
    estimate_token_count,
)
from context_cache.summarize.coordinator import SummarizationSession, SummarizerCoordinator
from context_cache.types import AccountingRollup, Record, RetrievalQuery, RetrievalResult


class ContextService:
    """Serves retrieve / store / summarize_and_store / list_available.

    Each call is an independent unit of work. Writes go through the record
    store's write lock; retrievals only read and are safe to abandon.
    """

    def __init__(
        self,
        *,
        store: RecordStore,
        engine: RankingEngine,
        coordinator: SummarizerCoordinator,
        accounting: AccountingLog,
        config: ServiceConfig | None = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.coordinator = coordinator
        self.accounting = accounting
        self.config = config or ServiceConfig()

    @classmethod
    def build(
        cls,
        config: ServiceConfig | None = None,
        *,
        summarize: SummarizeFn | None = None,
        estimate_tokens: TokenEstimator | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> "ContextService":
        """Wire the default components from `config`."""
        config = config or ServiceConfig()
        estimator = estimate_tokens or estimate_token_count
        backend = JsonDirectoryBackend(Path(config.store.data_dir)) if config.store.data_dir else None
        store = RecordStore(backend, config.store)
        accounting = AccountingLog(config.accounting, clock=clock)
        engine = RankingEngine(store, config.ranking, clock=clock)
        coordinator = SummarizerCoordinator(
            store,
            summarize or ExtractiveSummarizer(estimator),
            estimator,
            config.summarizer,
            accounting=accounting,
            clock=clock,
        )
        logger.info(
            f"Context service ready: records={len(store)} "
            f"persistent={backend is not None} strategies={engine.strategies}"
        )
        return cls(
            store=store,
            engine=engine,
            coordinator=coordinator,
            accounting=accounting,
            config=config,
        )

    def retrieve(self, query: RetrievalQuery) -> RetrievalResult:
        with Timer() as timer:
            candidates = self.engine.candidates(query)
            result = self.engine.select(query, candidates)
        self.accounting.record_retrieval(query, result, candidates, timer.elapsed_ms)
        return result

    def store_record(self, record_input: RecordInput) -> dict[str, str]:
        record = self.store.add(record_input.to_record())
        return {"id": record.id}

    def summarize_and_store(
        self,
        raw_text: str,
        tags: Iterable[str],
        target_tokens: int | None = None,
        *,
        timeout: float | None = None,
        record_type: str | None = None,
        supersedes: Iterable[str] = (),
        key_entities: Iterable[str] = (),
    ) -> dict[str, Any]:
        record = self.coordinator.summarize_text(
            raw_text,
            tags,
            target_tokens=target_tokens,
            timeout=timeout,
            record_type=record_type,
            supersedes=supersedes,
            key_entities=key_entities,
        )
        return {"id": record.id, "token_estimate": record.token_estimate}

    def list_available(self) -> dict[str, dict[str, int]]:
        return {"tags": self.store.list_tag_counts()}

    def get_record(self, record_id: str) -> Record:
        return self.store.get_by_id(record_id)

    def update_record(self, record_id: str, record_input: RecordInput) -> Record:
        """Whole-record replacement; id and creation time are kept."""
        current = self.store.get_by_id(record_id)
        updated = replace(record_input.to_record(record_id), created_at=current.created_at)
        return self.store.put(updated)

    def open_session(self, tags: Iterable[str], **options: Any) -> SummarizationSession:
        return self.coordinator.open_session(tags, **options)

    def append_turn(self, session_id: str, text: str) -> SummarizationSession:
        return self.coordinator.append(session_id, text)

    def checkpoint(self, session_id: str) -> SummarizationSession:
        return self.coordinator.checkpoint(session_id)

    def summarize_session(
        self,
        session_id: str,
        *,
        target_tokens: int | None = None,
        timeout: float | None = None,
    ) -> Record:
        session = self.coordinator.get_session(session_id)
        if session.trigger is None:
            self.coordinator.request_summary(session_id)
        return self.coordinator.summarize(session_id, target_tokens=target_tokens, timeout=timeout)

    def close_session(self, session_id: str) -> SummarizationSession:
        return self.coordinator.close(session_id)

    def get_session(self, session_id: str) -> SummarizationSession:
        return self.coordinator.get_session(session_id)

    def accounting_rollup(self, period: str = "day") -> list[AccountingRollup]:
        try:
            return self.accounting.rollup(period)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc


def record_to_dict(record: Record) -> dict[str, Any]:
    return encode_record(record)


def result_to_dict(result: RetrievalResult) -> dict[str, Any]:
    return {
        "records": [record_to_dict(record) for record in result.records],
        "scores": result.scores,
        "total_tokens_retrieved": result.total_tokens_retrieved,
        "alternative_available": result.alternative_available,
        "candidate_count": result.candidate_count,
    }


def session_to_dict(session: SummarizationSession) -> dict[str, Any]:
    return {
        "session_id": session.session_id,
        "state": session.state.value,
        "tags": sorted(session.tags),
        "record_type": session.record_type,
        "raw_token_estimate": session.raw_token_estimate,
        "turn_count": len(session.turns),
        "trigger": session.trigger.value if session.trigger else None,
        "record_id": session.record_id,
        "last_error": session.last_error,
        "opened_at": session.opened_at.isoformat(),
    }
