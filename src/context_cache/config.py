"""Configuration models for the context cache."""

from __future__ import annotations

import os

from pydantic import BaseModel, Field, model_validator


class StoreConfig(BaseModel):
    """Configures record persistence and text lookup."""

    data_dir: str | None = None
    text_scan_threshold: int = Field(default=500, ge=0)


class RankingConfig(BaseModel):
    """Configures relevance weights and the default token budget.

    Tag overlap dominates, key entities come second and recency only breaks
    ties, so the weights must be ordered.
    """

    tag_weight: float = Field(default=10.0, ge=0.0)
    entity_weight: float = Field(default=3.0, ge=0.0)
    recency_weight: float = Field(default=1.0, ge=0.0)
    recency_half_life_hours: float = Field(default=168.0, gt=0.0)
    default_max_tokens: int = Field(default=2000, ge=1)

    @model_validator(mode="after")
    def _check_weight_order(self) -> "RankingConfig":
        if not self.tag_weight >= self.entity_weight >= self.recency_weight:
            raise ValueError("weights must satisfy tag_weight >= entity_weight >= recency_weight")
        return self


class SummarizerConfig(BaseModel):
    """Configures when sessions are summarized and how small summaries get."""

    threshold_tokens: int = Field(default=1500, ge=1)
    target_tokens: int = Field(default=64, ge=1)
    target_tolerance: float = Field(default=0.25, ge=0.0)
    timeout_seconds: float = Field(default=30.0, gt=0.0)
    active_session_tag: str = Field(default="active_session", min_length=1)
    default_record_type: str = Field(default="conversation_summary", min_length=1)
    max_workers: int = Field(default=4, ge=1)
    closed_session_retention: int = Field(default=256, ge=0)


class AccountingConfig(BaseModel):
    """Configures the optional JSON-lines accounting file."""

    log_path: str | None = None


class ServiceConfig(BaseModel):
    """Bundles every component config for `ContextService`."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    accounting: AccountingConfig = Field(default_factory=AccountingConfig)

    @classmethod
    def from_env(cls) -> "ServiceConfig":
        config = cls()
        data_dir = os.getenv("CONTEXT_CACHE_DIR")
        if data_dir:
            config.store.data_dir = data_dir
        log_path = os.getenv("CONTEXT_CACHE_ACCOUNTING_LOG")
        if log_path:
            config.accounting.log_path = log_path
        max_tokens = os.getenv("CONTEXT_CACHE_MAX_TOKENS")
        if max_tokens:
            config.ranking.default_max_tokens = int(max_tokens)
        threshold = os.getenv("CONTEXT_CACHE_SUMMARY_THRESHOLD")
        if threshold:
            config.summarizer.threshold_tokens = int(threshold)
        timeout = os.getenv("CONTEXT_CACHE_SUMMARY_TIMEOUT")
        if timeout:
            config.summarizer.timeout_seconds = float(timeout)
        # Assignment skips field validation; re-validate the assembled config.
        return cls.model_validate(config.model_dump())
