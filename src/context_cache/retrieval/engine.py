"""Token-budgeted ranking over stored records."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from loguru import logger

from context_cache.config import RankingConfig
from context_cache.errors import ValidationError
from context_cache.retrieval.scoring import Scorer, default_scorers
from context_cache.store.record_store import RecordStore
from context_cache.types import Record, RetrievalQuery, RetrievalResult, ScoredRecord, utc_now


class RankingEngine:
    """Turns a `RetrievalQuery` into a budget-respecting `RetrievalResult`.

    Selection is a rank-ordered bounded knapsack solved by one forward pass
    with skip: walk the ranked candidates and admit each one whose cost still
    fits the remaining budget while the count limit allows. A record too
    expensive for the remaining budget is skipped and the scan continues, so
    cheaper lower-ranked records can use the leftover budget. This is
    O(n log n) for the sort plus O(n) for the pass and is not a 0/1 knapsack
    optimum.

    Ranking is read-only, so an abandoned retrieval leaves nothing behind.
    """

    def __init__(
        self,
        store: RecordStore,
        config: RankingConfig | None = None,
        *,
        scorers: dict[str, Scorer] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.config = config or RankingConfig()
        self._scorers = dict(scorers) if scorers is not None else default_scorers(self.config)
        self._clock = clock or utc_now

    @property
    def strategies(self) -> list[str]:
        return sorted(self._scorers)

    def register_strategy(self, name: str, scorer: Scorer) -> None:
        """Add an extension strategy, e.g. embedding similarity."""
        if name in self._scorers:
            raise ValueError(f"Strategy already registered: {name}")
        self._scorers[name] = scorer

    def retrieve(self, query: RetrievalQuery) -> RetrievalResult:
        candidates = self.candidates(query)
        return self.select(query, candidates)

    def candidates(self, query: RetrievalQuery) -> list[Record]:
        """Union of tag and text matches, deduplicated by id, tag hits first."""
        return self.store.query(query.tags, query.free_text)

    def select(self, query: RetrievalQuery, candidates: list[Record]) -> RetrievalResult:
        max_tokens, limit, scorer = self._resolve(query)
        ranked = self.rank(query, candidates, scorer=scorer)

        selected: list[ScoredRecord] = []
        total = 0
        alternative_available = False
        for item in ranked:
            if limit is not None and len(selected) >= limit:
                alternative_available = True
                break
            cost = item.record.token_estimate or 0
            if total + cost > max_tokens:
                alternative_available = True
                continue
            selected.append(item)
            total += cost

        logger.debug(
            f"Retrieval strategy={query.strategy} candidates={len(candidates)} "
            f"eligible={len(ranked)} selected={len(selected)} tokens={total}/{max_tokens}"
        )
        return RetrievalResult(
            records=[item.record for item in selected],
            total_tokens_retrieved=total,
            alternative_available=alternative_available,
            scores=[item.score for item in selected],
            candidate_count=len(candidates),
        )

    def rank(
        self,
        query: RetrievalQuery,
        candidates: list[Record],
        *,
        scorer: Scorer | None = None,
    ) -> list[ScoredRecord]:
        """Score and totally order the candidates that have a token estimate.

        Order: score desc, token estimate asc, created_at desc, id asc.
        """
        scorer = scorer or self._scorer(query.strategy)
        now = self._clock()
        scored = [
            ScoredRecord(record=record, score=scorer.score(record, query, now))
            for record in candidates
            if record.token_estimate is not None
        ]
        return sorted(
            scored,
            key=lambda item: (
                -item.score,
                item.record.token_estimate,
                -item.record.created_at.timestamp(),
                item.record.id,
            ),
        )

    def _resolve(self, query: RetrievalQuery) -> tuple[int, int | None, Scorer]:
        max_tokens = query.max_tokens if query.max_tokens is not None else self.config.default_max_tokens
        if max_tokens <= 0:
            raise ValidationError("max_tokens must be a positive integer")
        if query.limit is not None and query.limit <= 0:
            raise ValidationError("limit must be a positive integer")
        return max_tokens, query.limit, self._scorer(query.strategy)

    def _scorer(self, strategy: str) -> Scorer:
        scorer = self._scorers.get(strategy)
        if scorer is None:
            raise ValidationError(
                f"Unknown strategy: {strategy}. Expected one of {', '.join(self.strategies)}"
            )
        return scorer
