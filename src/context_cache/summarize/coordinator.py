"""Session summarization lifecycle."""

from __future__ import annotations

import threading
import uuid
from collections import deque
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from loguru import logger

from context_cache.config import SummarizerConfig
from context_cache.errors import NotFoundError, SummarizationFailed, ValidationError
from context_cache.obs.accounting import AccountingLog, Timer
from context_cache.store.record_store import RecordStore
from context_cache.summarize.collaborators import SummarizeFn, TokenEstimator
from context_cache.types import Record, utc_now


class SessionState(str, Enum):
    ACCUMULATING = "accumulating"
    PENDING_SUMMARIZATION = "pending_summarization"
    SUMMARIZED = "summarized"
    CLOSED = "closed"


class Trigger(str, Enum):
    THRESHOLD = "threshold"
    MANUAL = "manual"
    CHECKPOINT = "checkpoint"


@dataclass(slots=True)
class SummarizationSession:
    """Staging buffer for one logical unit of raw turns."""

    session_id: str
    tags: frozenset[str]
    record_type: str
    key_entities: frozenset[str] = field(default_factory=frozenset)
    supersedes: set[str] = field(default_factory=set)
    state: SessionState = SessionState.ACCUMULATING
    turns: list[str] = field(default_factory=list)
    raw_token_estimate: int = 0
    trigger: Trigger | None = None
    record_id: str | None = None
    last_error: str | None = None
    opened_at: datetime = field(default_factory=utc_now)

    @property
    def session_tag(self) -> str:
        return f"session:{self.session_id}"

    @property
    def raw_text(self) -> str:
        return "\n\n".join(self.turns)


class SummarizerCoordinator:
    """Moves sessions through accumulate -> summarize -> close.

    A session enters `pending_summarization` when its running token estimate
    crosses `threshold_tokens`, on a manual request, or on a checkpoint.
    `summarize` then calls the external summarizer with a timeout and writes
    the new record only after that call has returned. On any failure the
    session stays pending with its buffer intact and `SummarizationFailed`
    is raised; nothing retries automatically.

    Closing drops the staging buffer and retires the `active_session` tag
    from superseded records. Records are never deleted.
    """

    def __init__(
        self,
        store: RecordStore,
        summarize: SummarizeFn,
        estimate_tokens: TokenEstimator,
        config: SummarizerConfig | None = None,
        *,
        accounting: AccountingLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or SummarizerConfig()
        self.accounting = accounting
        self._summarize = summarize
        self._estimate = estimate_tokens
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._sessions: dict[str, SummarizationSession] = {}
        self._in_flight: set[str] = set()
        self._closed: deque[SummarizationSession] = deque()
        self._pool_lock = threading.Lock()
        self._stuck: set[Future] = set()
        self._executor = self._new_executor()

    def shutdown(self) -> None:
        with self._pool_lock:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def open_session(
        self,
        tags: Iterable[str],
        *,
        record_type: str | None = None,
        session_id: str | None = None,
        supersedes: Iterable[str] = (),
        key_entities: Iterable[str] = (),
    ) -> SummarizationSession:
        session = SummarizationSession(
            session_id=session_id or uuid.uuid4().hex,
            tags=frozenset(tags),
            record_type=record_type or self.config.default_record_type,
            key_entities=frozenset(key_entities),
            supersedes=set(supersedes),
            opened_at=self._clock(),
        )
        with self._lock:
            existing = self._sessions.get(session.session_id)
            if existing is not None and existing.state is not SessionState.CLOSED:
                raise ValidationError(f"Session already open: {session.session_id}")
            self._sessions[session.session_id] = session
        logger.debug(f"Opened session {session.session_id} tags={sorted(session.tags)}")
        return session

    def get_session(self, session_id: str) -> SummarizationSession:
        with self._lock:
            return self._get(session_id)

    def append(self, session_id: str, text: str) -> SummarizationSession:
        """Add a raw turn; crossing the threshold makes the session pending."""
        if not text or not text.strip():
            raise ValidationError("Turn text must be non-empty")
        with self._lock:
            self._require(self._get(session_id), SessionState.ACCUMULATING)
        tokens = self._estimate_tokens(text, session_id)
        with self._lock:
            session = self._require(self._get(session_id), SessionState.ACCUMULATING)
            session.turns.append(text)
            session.raw_token_estimate += int(tokens)
            if session.raw_token_estimate >= self.config.threshold_tokens:
                self._mark_pending(session, Trigger.THRESHOLD)
            return session

    def request_summary(self, session_id: str) -> SummarizationSession:
        return self._trigger(session_id, Trigger.MANUAL)

    def checkpoint(self, session_id: str) -> SummarizationSession:
        return self._trigger(session_id, Trigger.CHECKPOINT)

    def summarize(
        self,
        session_id: str,
        *,
        target_tokens: int | None = None,
        timeout: float | None = None,
    ) -> Record:
        """Summarize a pending session, store the record and close the session."""
        target = target_tokens if target_tokens is not None else self.config.target_tokens
        if target <= 0:
            raise ValidationError("target_tokens must be a positive integer")

        with self._lock:
            session = self._require(self._get(session_id), SessionState.PENDING_SUMMARIZATION)
            if session_id in self._in_flight:
                raise ValidationError(f"Session {session_id} is already being summarized")
            if not session.turns:
                raise ValidationError(f"Session {session_id} has no raw text to summarize")
            self._in_flight.add(session_id)
            raw_text = session.raw_text
            raw_estimate = session.raw_token_estimate

        try:
            record, elapsed_ms = self._summarize_and_write(session, raw_text, raw_estimate, target, timeout)
        except SummarizationFailed as exc:
            with self._lock:
                session.last_error = str(exc)
                self._in_flight.discard(session_id)
            logger.warning(f"Summarization failed for session {session_id}: {exc}")
            raise
        except BaseException:
            with self._lock:
                self._in_flight.discard(session_id)
            raise

        with self._lock:
            session.state = SessionState.SUMMARIZED
            session.record_id = record.id
            session.last_error = None
            self._in_flight.discard(session_id)
        logger.info(
            f"Session {session_id} summarized into {record.id}: "
            f"{record.source_token_cost} -> {record.token_estimate} tokens"
        )
        if self.accounting is not None:
            self.accounting.record_summarization(record, elapsed_ms)
        self._finish(session, record.related_ids)
        return record

    def summarize_text(
        self,
        raw_text: str,
        tags: Iterable[str],
        *,
        target_tokens: int | None = None,
        timeout: float | None = None,
        record_type: str | None = None,
        supersedes: Iterable[str] = (),
        key_entities: Iterable[str] = (),
    ) -> Record:
        """One-shot session: append, trigger manually, summarize.

        On failure the pending session is kept so the caller can retry with
        `summarize(exc.session_id)` or `close` it.
        """
        session = self.open_session(
            tags,
            record_type=record_type,
            supersedes=supersedes,
            key_entities=key_entities,
        )
        try:
            self.append(session.session_id, raw_text)
        except (ValidationError, SummarizationFailed):
            self.close(session.session_id)
            raise
        if session.state is SessionState.ACCUMULATING:
            self.request_summary(session.session_id)
        record = self.summarize(session.session_id, target_tokens=target_tokens, timeout=timeout)
        with self._lock:
            self._sessions.pop(session.session_id, None)
        return record

    def close(self, session_id: str) -> SummarizationSession:
        """Discard a session's buffer without writing a summary."""
        with self._lock:
            session = self._get(session_id)
            if session_id in self._in_flight:
                raise ValidationError(f"Session {session_id} is being summarized")
            if session.state is not SessionState.CLOSED:
                self._drop_buffer(session)
        return session

    def _summarize_and_write(
        self,
        session: SummarizationSession,
        raw_text: str,
        raw_estimate: int,
        target: int,
        timeout: float | None,
    ) -> tuple[Record, float]:
        session_id = session.session_id
        with Timer() as timer:
            summary = self._call_summarizer(raw_text, target, timeout, session_id)
            summary = str(summary or "").strip()
            if not summary:
                raise SummarizationFailed("summarizer returned an empty summary", session_id=session_id)
            estimate = self._estimate_tokens(summary, session_id)

        if raw_estimate > 0 and estimate >= raw_estimate:
            raise SummarizationFailed(
                f"summary costs {estimate} tokens, not less than its {raw_estimate}-token source",
                session_id=session_id,
            )
        if estimate > target * (1.0 + self.config.target_tolerance):
            logger.warning(f"Summary for session {session_id} is {estimate} tokens, target was {target}")

        superseded = self._superseded_ids(session)
        record = self.store.add(
            Record(
                id="",
                type=session.record_type,
                created_at=self._clock(),
                tags=session.tags | {session.session_tag},
                summary=summary,
                token_estimate=estimate,
                source_token_cost=max(1, raw_estimate),
                related_ids=frozenset(superseded),
                key_entities=session.key_entities,
            )
        )
        return record, timer.elapsed_ms

    def _finish(self, session: SummarizationSession, superseded: Iterable[str]) -> None:
        retired = self.store.retire_tag(superseded, self.config.active_session_tag)
        if retired:
            logger.debug(f"Retired {self.config.active_session_tag!r} from {[r.id for r in retired]}")
        with self._lock:
            self._drop_buffer(session)

    def _superseded_ids(self, session: SummarizationSession) -> set[str]:
        ids = set(session.supersedes)
        for record in self.store.query_by_tags({session.session_tag}):
            if self.config.active_session_tag in record.tags:
                ids.add(record.id)
        return ids

    def _call_summarizer(self, raw_text: str, target: int, timeout: float | None, session_id: str) -> Any:
        limit = timeout if timeout is not None else self.config.timeout_seconds
        with self._pool_lock:
            future = self._executor.submit(self._summarize, raw_text, target)
        try:
            return future.result(timeout=limit)
        except FutureTimeoutError as exc:
            self._abandon(future)
            raise SummarizationFailed(f"summarizer timed out after {limit}s", session_id=session_id) from exc
        except SummarizationFailed:
            raise
        except Exception as exc:
            raise SummarizationFailed(f"summarizer failed: {exc}", session_id=session_id) from exc

    def _abandon(self, future: Future) -> None:
        """Stop counting on a timed-out call; its worker stays busy until it returns.

        Once every worker of the pool is held by an abandoned call, the pool
        is replaced so later summaries are not queued behind hung threads.
        """
        if future.cancel():
            return
        with self._pool_lock:
            stuck = self._stuck
            stuck.add(future)
            future.add_done_callback(stuck.discard)
            if len(stuck) < self.config.max_workers:
                return
            logger.warning(
                f"{len(stuck)} summarizer calls still running after timeout; replacing the worker pool"
            )
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = self._new_executor()
            self._stuck = set()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="summarizer")

    def _estimate_tokens(self, text: str, session_id: str) -> int:
        try:
            return int(self._estimate(text))
        except Exception as exc:
            raise SummarizationFailed(f"token estimator failed: {exc}", session_id=session_id) from exc

    def _trigger(self, session_id: str, trigger: Trigger) -> SummarizationSession:
        with self._lock:
            session = self._get(session_id)
            if session.state is SessionState.PENDING_SUMMARIZATION:
                return session
            self._require(session, SessionState.ACCUMULATING)
            self._mark_pending(session, trigger)
            return session

    def _mark_pending(self, session: SummarizationSession, trigger: Trigger) -> None:
        session.state = SessionState.PENDING_SUMMARIZATION
        session.trigger = trigger
        logger.debug(
            f"Session {session.session_id} pending summarization "
            f"trigger={trigger.value} raw_tokens={session.raw_token_estimate}"
        )

    def _drop_buffer(self, session: SummarizationSession) -> None:
        session.turns.clear()
        session.state = SessionState.CLOSED
        logger.debug(f"Closed session {session.session_id}")
        self._closed.append(session)
        while len(self._closed) > self.config.closed_session_retention:
            evicted = self._closed.popleft()
            if self._sessions.get(evicted.session_id) is evicted:
                del self._sessions[evicted.session_id]

    def _get(self, session_id: str) -> SummarizationSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    @staticmethod
    def _require(session: SummarizationSession, state: SessionState) -> SummarizationSession:
        if session.state is not state:
            raise ValidationError(
                f"Session {session.session_id} is {session.state.value}, expected {state.value}"
            )
        return session
