"""Request schemas for the context cache protocol."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from context_cache.types import Record, RetrievalQuery, Strategy, utc_now


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RecordInput(_Strict):
    """A pre-formed record without an id; the store assigns one."""

    type: str = Field(min_length=1)
    summary: str
    tags: list[str] = Field(default_factory=list)
    token_estimate: int | None = Field(default=None, ge=0)
    source_token_cost: int | None = Field(default=None, ge=1)
    related_ids: list[str] = Field(default_factory=list)
    key_entities: list[str] = Field(default_factory=list)
    created_at: datetime | None = None

    def to_record(self, record_id: str = "") -> Record:
        return Record(
            id=record_id,
            type=self.type,
            summary=self.summary,
            token_estimate=self.token_estimate,
            tags=frozenset(self.tags),
            created_at=self.created_at or utc_now(),
            source_token_cost=self.source_token_cost,
            related_ids=frozenset(self.related_ids),
            key_entities=frozenset(self.key_entities),
        )


class RetrieveInput(_Strict):
    tags: list[str] = Field(default_factory=list)
    free_text: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    limit: int | None = Field(default=None, ge=1)
    strategy: str = Strategy.RELEVANCE.value

    def to_query(self) -> RetrievalQuery:
        return RetrievalQuery(
            tags=frozenset(self.tags),
            free_text=self.free_text,
            max_tokens=self.max_tokens,
            limit=self.limit,
            strategy=self.strategy,
        )


class SummarizeAndStoreInput(_Strict):
    raw_text: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    target_tokens: int | None = Field(default=None, ge=1)
    record_type: str | None = Field(default=None, min_length=1)
    supersedes: list[str] = Field(default_factory=list)
    key_entities: list[str] = Field(default_factory=list)


class ListAvailableInput(_Strict):
    pass


class GetRecordInput(_Strict):
    id: str = Field(min_length=1)


class OpenSessionInput(_Strict):
    tags: list[str] = Field(default_factory=list)
    record_type: str | None = Field(default=None, min_length=1)
    session_id: str | None = Field(default=None, min_length=1)
    supersedes: list[str] = Field(default_factory=list)
    key_entities: list[str] = Field(default_factory=list)


class TurnInput(_Strict):
    text: str = Field(min_length=1)


class SessionSummarizeInput(_Strict):
    target_tokens: int | None = Field(default=None, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0.0)
