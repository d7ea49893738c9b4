"""Token-budgeted context cache."""

from .config import RankingConfig, ServiceConfig, StoreConfig, SummarizerConfig
from .errors import ContextCacheError, NotFoundError, SummarizationFailed, ValidationError
from .types import Record, RetrievalQuery, RetrievalResult, Strategy

__all__ = [
    "ContextCacheError",
    "NotFoundError",
    "RankingConfig",
    "Record",
    "RetrievalQuery",
    "RetrievalResult",
    "ServiceConfig",
    "Strategy",
    "StoreConfig",
    "SummarizationFailed",
    "SummarizerConfig",
    "ValidationError",
]
