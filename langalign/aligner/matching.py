from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

import numpy as np
import numpy.typing as npt
import structlog

from .content import ContentRow, ContentSet

logger = structlog.get_logger()


@dataclass(frozen=True)
class SimilarityCandidate:
    reference_id: str
    target_id: str
    score: float

    def sort_key(self) -> tuple[float, str, str]:
        # highest score first, then ascending ids
        return (-self.score, self.reference_id, self.target_id)


@dataclass(frozen=True)
class Assignment:
    """
    The accepted reference to target pairs of one alignment run. Every
    reference id and every target id appears in at most one match.

    Attributes:
        matches (tuple[SimilarityCandidate, ...]): Accepted pairs, in the order
            they were accepted.
        threshold (float): The similarity cutoff used.
        candidate_count (int): Pairs that reached the threshold.
    """

    matches: tuple[SimilarityCandidate, ...] = ()
    threshold: float = 0.0
    candidate_count: int = 0
    _by_reference: Mapping[str, SimilarityCandidate] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self):
        by_reference = {match.reference_id: match for match in self.matches}
        targets = {match.target_id for match in self.matches}
        if len(by_reference) != len(self.matches) or len(targets) != len(
            self.matches
        ):
            raise ValueError("an id is claimed by more than one match")
        object.__setattr__(self, "_by_reference", MappingProxyType(by_reference))

    def __iter__(self) -> Iterator[SimilarityCandidate]:
        return iter(self.matches)

    def __len__(self) -> int:
        return len(self.matches)

    def target_for(self, reference_id: str) -> SimilarityCandidate | None:
        return self._by_reference.get(reference_id)

    @property
    def matched_reference_ids(self) -> frozenset[str]:
        return frozenset(self._by_reference)

    @property
    def matched_target_ids(self) -> frozenset[str]:
        return frozenset(match.target_id for match in self.matches)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two vectors in [-1, 1]. A zero vector scores 0.

    Raises:
        ValueError: if the vectors differ in length.
    """
    if len(a) != len(b):
        raise ValueError("Vectors must have the same length")
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    magnitude = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if magnitude == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / magnitude, -1.0, 1.0))


def similarity_matrix(
    reference_rows: Sequence[ContentRow], target_rows: Sequence[ContentRow]
) -> npt.NDArray[np.float64]:
    """
    Cosine similarity of every reference row against every target row, as a
    len(reference_rows) x len(target_rows) matrix. Rows must be embedded.
    """
    if not reference_rows or not target_rows:
        return np.zeros((len(reference_rows), len(target_rows)), dtype=np.float64)

    ref = np.asarray([row.embedding for row in reference_rows], dtype=np.float64)
    tgt = np.asarray([row.embedding for row in target_rows], dtype=np.float64)
    if ref.ndim != 2 or tgt.ndim != 2 or ref.shape[1] != tgt.shape[1]:
        raise ValueError("all embeddings must share one dimension")

    ref_norms = np.linalg.norm(ref, axis=1)
    tgt_norms = np.linalg.norm(tgt, axis=1)
    denominator = np.outer(ref_norms, tgt_norms)
    dots = ref @ tgt.T
    scores = np.divide(
        dots, denominator, out=np.zeros_like(dots), where=denominator != 0
    )
    return np.clip(scores, -1.0, 1.0)


def candidates(
    reference: ContentSet, target: ContentSet, threshold: float
) -> list[SimilarityCandidate]:
    """
    All embedded reference/target pairs whose similarity is at least
    `threshold`, sorted by score descending, then reference id, then target id.
    """
    reference_rows = reference.embedded_rows()
    target_rows = target.embedded_rows()
    scores = similarity_matrix(reference_rows, target_rows)

    found = [
        SimilarityCandidate(
            reference_id=reference_rows[i].id,
            target_id=target_rows[j].id,
            score=float(scores[i, j]),
        )
        for i, j in zip(*np.nonzero(scores >= threshold), strict=True)
    ]
    found.sort(key=SimilarityCandidate.sort_key)
    return found


def match(reference: ContentSet, target: ContentSet, threshold: float) -> Assignment:
    """
    Greedy global best-first assignment.

    Candidates at or above the threshold are visited from the highest score
    down (ties by ascending reference id, then target id). A candidate is
    accepted when neither its reference row nor its target row has been
    claimed yet. Rows without an embedding never take part.
    """
    ranked = candidates(reference, target, threshold)
    claimed_references: set[str] = set()
    claimed_targets: set[str] = set()
    accepted: list[SimilarityCandidate] = []

    for candidate in ranked:
        if (
            candidate.reference_id in claimed_references
            or candidate.target_id in claimed_targets
        ):
            continue
        claimed_references.add(candidate.reference_id)
        claimed_targets.add(candidate.target_id)
        accepted.append(candidate)

    logger.info(
        "matching finished",
        candidates=len(ranked),
        matched=len(accepted),
        threshold=threshold,
    )
    return Assignment(
        matches=tuple(accepted), threshold=threshold, candidate_count=len(ranked)
    )
