from .alignment import (
    AlignedRow,
    AlignmentResult,
    LineByLineResult,
    MatchQuality,
    PlaceholderPolicy,
)
from .content import ContentRow, ContentSet, RowStatus, ValidationError
from .embeddings import (
    DimensionMismatchError,
    Embedder,
    EmbeddingError,
    ProviderError,
    RetryPolicy,
)
from .matching import Assignment, SimilarityCandidate

__all__ = [
    "AlignedRow",
    "AlignmentResult",
    "Assignment",
    "ContentRow",
    "ContentSet",
    "DimensionMismatchError",
    "Embedder",
    "EmbeddingError",
    "LineByLineResult",
    "MatchQuality",
    "PlaceholderPolicy",
    "ProviderError",
    "RetryPolicy",
    "RowStatus",
    "SimilarityCandidate",
    "ValidationError",
]
