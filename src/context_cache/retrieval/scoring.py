"""Scoring strategies for budgeted retrieval."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from datetime import datetime

from context_cache.config import RankingConfig
from context_cache.types import Record, RetrievalQuery, Strategy

_WORD_PATTERN = re.compile(r"\w+", flags=re.UNICODE)


class Scorer(ABC):
    """Scores one candidate; higher scores rank first."""

    @abstractmethod
    def score(self, record: Record, query: RetrievalQuery, now: datetime) -> float:
        """Return the candidate's score for `query` at time `now`."""


class RelevanceScorer(Scorer):
    """Weighted tag overlap, key-entity overlap and recency decay."""

    def __init__(self, config: RankingConfig | None = None) -> None:
        self.config = config or RankingConfig()

    def score(self, record: Record, query: RetrievalQuery, now: datetime) -> float:
        return (
            tag_overlap(record, query) * self.config.tag_weight
            + entity_overlap(record, query) * self.config.entity_weight
            + recency_decay(record.created_at, now, self.config.recency_half_life_hours)
            * self.config.recency_weight
        )


class RecencyScorer(Scorer):
    """Newest first."""

    def score(self, record: Record, query: RetrievalQuery, now: datetime) -> float:
        return record.created_at.timestamp()


class LowestCostScorer(Scorer):
    """Cheapest first; maximizes record count per budget over relevance."""

    def score(self, record: Record, query: RetrievalQuery, now: datetime) -> float:
        if record.token_estimate is None:
            return float("-inf")
        return -float(record.token_estimate)


def default_scorers(config: RankingConfig | None = None) -> dict[str, Scorer]:
    return {
        Strategy.RELEVANCE.value: RelevanceScorer(config),
        Strategy.RECENCY.value: RecencyScorer(),
        Strategy.LOWEST_COST.value: LowestCostScorer(),
    }


def tag_overlap(record: Record, query: RetrievalQuery) -> int:
    return len(record.tags & query.tags)


def entity_overlap(record: Record, query: RetrievalQuery) -> int:
    """Count key entities named by a query tag or by the free text."""
    if not record.key_entities:
        return 0
    terms = {tag.lower() for tag in query.tags}
    text = (query.free_text or "").lower()
    terms.update(_WORD_PATTERN.findall(text))
    count = 0
    for entity in record.key_entities:
        name = entity.lower()
        if name in terms or (text and name in text):
            count += 1
    return count


def recency_decay(created_at: datetime, now: datetime, half_life_hours: float) -> float:
    """Exponential half-life decay in [0, 1]; future timestamps score 1."""
    age_hours = (now - created_at).total_seconds() / 3600.0
    if age_hours <= 0:
        return 1.0
    return min(1.0, max(0.0, 0.5 ** (age_hours / half_life_hours)))
