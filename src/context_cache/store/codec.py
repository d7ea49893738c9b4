"""Record schema shared by the disk backend and request boundary."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from context_cache.types import Record, utc_now


class StoredRecord(BaseModel):
    """Fixed record shape; unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    tags: list[str] = Field(default_factory=list)
    summary: str
    token_estimate: int | None = Field(default=None, ge=0)
    source_token_cost: int | None = Field(default=None, ge=1)
    related_ids: list[str] = Field(default_factory=list)
    key_entities: list[str] = Field(default_factory=list)

    def to_record(self) -> Record:
        return Record(
            id=self.id,
            type=self.type,
            created_at=self.created_at,
            tags=frozenset(self.tags),
            summary=self.summary,
            token_estimate=self.token_estimate,
            source_token_cost=self.source_token_cost,
            related_ids=frozenset(self.related_ids),
            key_entities=frozenset(self.key_entities),
        )

    @classmethod
    def from_record(cls, record: Record) -> "StoredRecord":
        return cls(
            id=record.id,
            type=record.type,
            created_at=record.created_at,
            tags=sorted(record.tags),
            summary=record.summary,
            token_estimate=record.token_estimate,
            source_token_cost=record.source_token_cost,
            related_ids=sorted(record.related_ids),
            key_entities=sorted(record.key_entities),
        )


def encode_record(record: Record) -> dict[str, Any]:
    return StoredRecord.from_record(record).model_dump(mode="json")


def decode_record(payload: dict[str, Any]) -> Record:
    return StoredRecord.model_validate(payload).to_record()
