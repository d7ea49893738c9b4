"""Token-savings accounting for retrieval and summarization events."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from dataclasses import asdict
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from loguru import logger

from context_cache.config import AccountingConfig
from context_cache.types import (
    AccountingEntry,
    AccountingRollup,
    Record,
    RetrievalQuery,
    RetrievalResult,
    utc_now,
)

RETRIEVAL_EVENT = "retrieval"
SUMMARIZATION_EVENT = "summarization"
_PERIODS = ("day", "week", "month")


class AccountingLog:
    """Append-only log of token-saving deltas with periodic rollups.

    Entries are kept in memory and, when `log_path` is configured, appended to
    a JSON-lines file that is reloaded on construction.
    """

    def __init__(
        self,
        config: AccountingConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config or AccountingConfig()
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._entries: list[AccountingEntry] = []
        self._path = Path(self.config.log_path) if self.config.log_path else None
        if self._path is not None:
            self._entries.extend(self._load(self._path))

    def record_retrieval(
        self,
        query: RetrievalQuery,
        result: RetrievalResult,
        candidates: list[Record],
        latency_ms: float,
    ) -> AccountingEntry:
        """Log one retrieval.

        The raw-token equivalent sums `source_token_cost` over every candidate
        that has one, selected or excluded.
        """
        equivalent_raw = sum(
            record.source_token_cost for record in candidates if record.source_token_cost
        )
        return self._append(
            AccountingEntry(
                timestamp=self._clock(),
                event=RETRIEVAL_EVENT,
                query_tags=tuple(sorted(query.tags)),
                records_returned=len(result.records),
                tokens_in_summary=result.total_tokens_retrieved,
                equivalent_raw_tokens=equivalent_raw,
                tokens_saved=max(0, equivalent_raw - result.total_tokens_retrieved),
                latency_ms=latency_ms,
                strategy=query.strategy,
            )
        )

    def record_summarization(self, record: Record, latency_ms: float) -> AccountingEntry:
        tokens = record.token_estimate or 0
        raw = record.source_token_cost or 0
        return self._append(
            AccountingEntry(
                timestamp=self._clock(),
                event=SUMMARIZATION_EVENT,
                query_tags=tuple(sorted(record.tags)),
                records_returned=1,
                tokens_in_summary=tokens,
                equivalent_raw_tokens=raw,
                tokens_saved=max(0, raw - tokens),
                latency_ms=latency_ms,
            )
        )

    def entries(self, limit: int | None = None) -> list[AccountingEntry]:
        """Most recent entries last; `limit` keeps the newest `limit`."""
        if limit is not None and limit < 1:
            raise ValueError("limit must be a positive integer")
        with self._lock:
            entries = list(self._entries)
        return entries if limit is None else entries[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate totals for dashboard display."""
        entries = self.entries()
        retrievals = [entry for entry in entries if entry.event == RETRIEVAL_EVENT]
        if not entries:
            return {
                "total_events": 0,
                "retrievals": 0,
                "summarizations": 0,
                "avg_retrieval_latency_ms": 0.0,
                "p95_retrieval_latency_ms": 0.0,
                "total_tokens_in_summary": 0,
                "total_equivalent_raw_tokens": 0,
                "total_tokens_saved": 0,
            }

        latencies = sorted(entry.latency_ms for entry in retrievals)
        p95 = latencies[max(0, int((len(latencies) * 0.95) - 1))] if latencies else 0.0
        avg = sum(latencies) / len(latencies) if latencies else 0.0
        return {
            "total_events": len(entries),
            "retrievals": len(retrievals),
            "summarizations": len(entries) - len(retrievals),
            "avg_retrieval_latency_ms": avg,
            "p95_retrieval_latency_ms": p95,
            "total_tokens_in_summary": sum(entry.tokens_in_summary for entry in entries),
            "total_equivalent_raw_tokens": sum(entry.equivalent_raw_tokens for entry in entries),
            "total_tokens_saved": sum(entry.tokens_saved for entry in entries),
        }

    def rollup(self, period: str = "day", *, since: datetime | None = None) -> list[AccountingRollup]:
        """Group entries into day/week/month buckets, oldest bucket first."""
        if period not in _PERIODS:
            raise ValueError(f"period must be one of {', '.join(_PERIODS)}")
        buckets: dict[datetime, AccountingRollup] = {}
        for entry in self.entries():
            if since is not None and entry.timestamp < since:
                continue
            start = period_start(entry.timestamp, period)
            bucket = buckets.setdefault(start, AccountingRollup(period_start=start))
            if entry.event == RETRIEVAL_EVENT:
                bucket.retrievals += 1
            else:
                bucket.summarizations += 1
            bucket.records_returned += entry.records_returned
            bucket.tokens_in_summary += entry.tokens_in_summary
            bucket.equivalent_raw_tokens += entry.equivalent_raw_tokens
            bucket.tokens_saved += entry.tokens_saved
        return [buckets[start] for start in sorted(buckets)]

    def _append(self, entry: AccountingEntry) -> AccountingEntry:
        with self._lock:
            self._entries.append(entry)
            if self._path is not None:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry_to_dict(entry), ensure_ascii=False) + "\n")
        logger.debug(
            f"Accounting {entry.event}: returned={entry.records_returned} "
            f"tokens={entry.tokens_in_summary} saved={entry.tokens_saved}"
        )
        return entry

    @staticmethod
    def _load(path: Path) -> list[AccountingEntry]:
        if not path.exists():
            return []
        entries: list[AccountingEntry] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                entries.append(entry_from_dict(json.loads(line)))
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(f"Skipping malformed accounting line {number} in {path}: {exc}")
        return entries


def entry_to_dict(entry: AccountingEntry) -> dict[str, Any]:
    payload = asdict(entry)
    payload["timestamp"] = entry.timestamp.isoformat()
    payload["query_tags"] = list(entry.query_tags)
    return payload


def entry_from_dict(payload: dict[str, Any]) -> AccountingEntry:
    return AccountingEntry(
        timestamp=datetime.fromisoformat(payload["timestamp"]),
        event=str(payload["event"]),
        query_tags=tuple(payload.get("query_tags", ())),
        records_returned=int(payload["records_returned"]),
        tokens_in_summary=int(payload["tokens_in_summary"]),
        equivalent_raw_tokens=int(payload["equivalent_raw_tokens"]),
        tokens_saved=int(payload["tokens_saved"]),
        latency_ms=float(payload["latency_ms"]),
        strategy=payload.get("strategy"),
    )


def period_start(timestamp: datetime, period: str) -> datetime:
    day = timestamp.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "week":
        return day - timedelta(days=day.weekday())
    if period == "month":
        return day.replace(day=1)
    return day


class Timer:
    """Simple context timer used around retrievals and summarizer calls."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
