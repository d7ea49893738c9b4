"""Shared fixtures for context cache tests."""

from datetime import datetime, timezone

import pytest

from context_cache.types import Record

FIXED_NOW = datetime(2024, 12, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def make_record():
    def _make(
        record_id: str,
        tags=("customer_retention", "q4_2024"),
        token_estimate: int | None = 50,
        summary: str | None = None,
        created_at: datetime = FIXED_NOW,
        **kwargs,
    ) -> Record:
        return Record(
            id=record_id,
            type=kwargs.pop("type", "workflow_summary"),
            summary=summary if summary is not None else f"Summary of {record_id}.",
            token_estimate=token_estimate,
            tags=frozenset(tags),
            created_at=created_at,
            **kwargs,
        )

    return _make


def word_count(text: str) -> int:
    return len(text.split())


@pytest.fixture
def word_estimator():
    return word_count
