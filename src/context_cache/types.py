"""Shared domain models."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class Strategy(str, Enum):
    """Built-in ranking strategies."""

    RELEVANCE = "relevance"
    RECENCY = "recency"
    LOWEST_COST = "lowest_cost"


def _frozen(values: Iterable[str] | None) -> frozenset[str]:
    if values is None:
        return frozenset()
    if isinstance(values, str):
        return frozenset([values])
    return frozenset(values)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Record:
    """A stored summary with a known token cost.

    Records are immutable; an update is a whole-record replacement built with
    `dataclasses.replace` and written back through `RecordStore.put`.
    `related_ids` are weak references and may point at records that do not
    exist.
    """

    id: str
    type: str
    summary: str
    token_estimate: int | None
    tags: frozenset[str] = field(default_factory=frozenset)
    created_at: datetime = field(default_factory=utc_now)
    source_token_cost: int | None = None
    related_ids: frozenset[str] = field(default_factory=frozenset)
    key_entities: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", _frozen(self.tags))
        object.__setattr__(self, "related_ids", _frozen(self.related_ids))
        object.__setattr__(self, "key_entities", _frozen(self.key_entities))
        if self.created_at.tzinfo is None:
            object.__setattr__(self, "created_at", self.created_at.replace(tzinfo=timezone.utc))


@dataclass(frozen=True, slots=True)
class RetrievalQuery:
    """An ephemeral retrieval request."""

    tags: frozenset[str] = field(default_factory=frozenset)
    free_text: str | None = None
    max_tokens: int | None = None
    limit: int | None = None
    strategy: str = Strategy.RELEVANCE.value

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", _frozen(self.tags))
        if isinstance(self.strategy, Strategy):
            object.__setattr__(self, "strategy", self.strategy.value)


@dataclass(slots=True)
class ScoredRecord:
    """A candidate record with its strategy score."""

    record: Record
    score: float


@dataclass(slots=True)
class RetrievalResult:
    """Budget-constrained selection, most relevant first."""

    records: list[Record]
    total_tokens_retrieved: int
    alternative_available: bool
    scores: list[float] = field(default_factory=list)
    candidate_count: int = 0

    @property
    def ids(self) -> list[str]:
        return [record.id for record in self.records]


@dataclass(frozen=True, slots=True)
class AccountingEntry:
    """One retrieval or summarization event. Never modified once written."""

    timestamp: datetime
    event: str
    query_tags: tuple[str, ...]
    records_returned: int
    tokens_in_summary: int
    equivalent_raw_tokens: int
    tokens_saved: int
    latency_ms: float
    strategy: str | None = None


@dataclass(slots=True)
class AccountingRollup:
    """Aggregated accounting over one period bucket."""

    period_start: datetime
    retrievals: int = 0
    summarizations: int = 0
    records_returned: int = 0
    tokens_in_summary: int = 0
    equivalent_raw_tokens: int = 0
    tokens_saved: int = 0
