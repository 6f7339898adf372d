import csv
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import structlog

from .content import ContentRow, ContentSet
from .embeddings import BatchFailure
from .matching import Assignment, SimilarityCandidate, similarity_matrix

logger = structlog.get_logger()

DEFAULT_PLACEHOLDER = "[NO MATCH FOUND FOR: {reference_content}]"

OUTPUT_COLUMNS = [
    "ReferenceContentId",
    "ReferenceContent",
    "TargetContentId",
    "TargetContent",
    "SimilarityScore",
    "Quality",
]

LINE_BY_LINE_COLUMNS = [
    "Line",
    "TargetContentId",
    "TargetContent",
    "ReferenceContentId",
    "ReferenceContent",
    "LineScore",
    "IsGoodMatch",
    "Quality",
    "SuggestedReferenceId",
    "SuggestedScore",
]


class MatchQuality(str, Enum):
    POOR = "Poor"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def from_score(cls, score: float | None) -> "MatchQuality":
        if score is None:
            return cls.POOR
        if score >= 0.8:
            return cls.HIGH
        if score >= 0.6:
            return cls.MEDIUM
        if score >= 0.4:
            return cls.LOW
        return cls.POOR


@dataclass(frozen=True)
class PlaceholderPolicy:
    """
    What to put in the target column of an unmatched reference row.

    With `export_unmatched_as_placeholder` on, `template` is rendered with the
    reference row's `reference_id` and `reference_content`; otherwise the
    target content is left empty.
    """

    export_unmatched_as_placeholder: bool = True
    template: str = DEFAULT_PLACEHOLDER

    def render(self, reference: ContentRow) -> str:
        if not self.export_unmatched_as_placeholder:
            return ""
        return self.template.format(
            reference_id=reference.id, reference_content=reference.content
        )


@dataclass(frozen=True)
class AlignedRow:
    reference_id: str
    reference_content: str
    target_content: str
    target_id: str | None = None
    match_score: float | None = None

    @property
    def is_matched(self) -> bool:
        return self.target_id is not None

    @property
    def quality(self) -> MatchQuality:
        return MatchQuality.from_score(self.match_score)


@dataclass(frozen=True)
class MatchingStatistics:
    total_reference_rows: int
    matched_rows: int
    unmatched_rows: int
    orphaned_target_rows: int
    high_quality_matches: int
    medium_quality_matches: int
    low_quality_matches: int
    poor_quality_matches: int
    match_percentage: float
    average_similarity_score: float


@dataclass
class AlignmentResult:
    rows: list[AlignedRow]
    orphaned_targets: list[ContentRow]
    assignment: Assignment
    statistics: MatchingStatistics
    embedding_failures: list[BatchFailure] = field(default_factory=list)
    line_by_line: list["LineByLineResult"] = field(default_factory=list)


def build(
    reference: ContentSet,
    target: ContentSet,
    assignment: Assignment,
    placeholder_policy: PlaceholderPolicy | None = None,
) -> list[AlignedRow]:
    """
    One aligned row per reference row, in the reference file's order. Matched
    rows carry the original (not normalized) target content and the score.
    """
    placeholder_policy = placeholder_policy or PlaceholderPolicy()
    targets = target.by_id()
    aligned: list[AlignedRow] = []

    for reference_row in reference:
        match = assignment.target_for(reference_row.id)
        if match is None:
            aligned.append(
                AlignedRow(
                    reference_id=reference_row.id,
                    reference_content=reference_row.content,
                    target_content=placeholder_policy.render(reference_row),
                )
            )
            continue

        target_row = targets.get(match.target_id)
        if target_row is None:
            raise KeyError(
                f"assignment refers to unknown target row '{match.target_id}'"
            )
        aligned.append(
            AlignedRow(
                reference_id=reference_row.id,
                reference_content=reference_row.content,
                target_id=target_row.id,
                target_content=target_row.content,
                match_score=match.score,
            )
        )
    return aligned


def orphaned_targets(target: ContentSet, assignment: Assignment) -> list[ContentRow]:
    """Target rows no reference row claimed, in the target file's order."""
    claimed = assignment.matched_target_ids
    return [row for row in target if row.id not in claimed]


def compute_statistics(
    rows: Sequence[AlignedRow], orphans: Sequence[ContentRow] = ()
) -> MatchingStatistics:
    matched = [row for row in rows if row.is_matched]
    qualities = [row.quality for row in matched]
    total = len(rows)
    scores = [row.match_score for row in matched if row.match_score is not None]
    return MatchingStatistics(
        total_reference_rows=total,
        matched_rows=len(matched),
        unmatched_rows=total - len(matched),
        orphaned_target_rows=len(orphans),
        high_quality_matches=qualities.count(MatchQuality.HIGH),
        medium_quality_matches=qualities.count(MatchQuality.MEDIUM),
        low_quality_matches=qualities.count(MatchQuality.LOW),
        poor_quality_matches=qualities.count(MatchQuality.POOR),
        match_percentage=len(matched) / total * 100 if total else 0.0,
        average_similarity_score=sum(scores) / len(scores) if scores else 0.0,
    )


def write_aligned_csv(
    path: str | Path,
    rows: Sequence[AlignedRow],
    orphans: Sequence[ContentRow] = (),
) -> None:
    """
    Writes aligned rows in reference order. Orphaned target rows, when given,
    are appended with empty reference columns.
    """
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(OUTPUT_COLUMNS)
        for row in rows:
            writer.writerow(
                [
                    row.reference_id,
                    row.reference_content,
                    row.target_id or "",
                    row.target_content,
                    "" if row.match_score is None else f"{row.match_score:.4f}",
                    row.quality.value,
                ]
            )
        for orphan in orphans:
            writer.writerow(["", "", orphan.id, orphan.content, "", ""])

    logger.info(
        "aligned csv written", path=str(path), rows=len(rows), orphans=len(orphans)
    )


@dataclass(frozen=True)
class LineByLineResult:
    """
    A target row compared with the reference row at the same position.

    Attributes:
        line (int): 1-based position of the target row.
        target (ContentRow): The target row.
        reference (ContentRow | None): The reference row at the same position,
            None past the end of the reference file.
        score (float): Cosine similarity of the pair, 0 unless both rows have
            an embedding.
        is_good (bool): Both rows are embedded and the score reached the
            threshold.
        suggestion (SimilarityCandidate | None): For a pair that is not good,
            the reference row most similar to the target row.
    """

    line: int
    target: ContentRow
    reference: ContentRow | None
    score: float
    is_good: bool
    suggestion: SimilarityCandidate | None = None

    @property
    def quality(self) -> MatchQuality:
        return MatchQuality.from_score(self.score)


def line_by_line(
    reference: ContentSet, target: ContentSet, threshold: float
) -> list[LineByLineResult]:
    """
    Compares every target row with the reference row at the same position,
    without reordering anything. A pair that is not good gets the best scoring
    embedded reference row as a suggestion, whatever its score. Target rows
    past the end of the reference file only get a suggestion, and reference
    rows past the end of the target file are not reported.
    """
    reference_rows = list(reference)
    if len(reference_rows) != len(target):
        logger.warning(
            "files differ in length, comparing by position",
            reference_rows=len(reference_rows),
            target_rows=len(target),
        )

    embedded_references = reference.embedded_rows()
    embedded_targets = target.embedded_rows()
    scores = similarity_matrix(embedded_targets, embedded_references)
    target_index = {row.id: i for i, row in enumerate(embedded_targets)}
    reference_index = {row.id: j for j, row in enumerate(embedded_references)}

    def suggest(target_row: ContentRow) -> SimilarityCandidate | None:
        i = target_index.get(target_row.id)
        if i is None or not embedded_references:
            return None
        return min(
            (
                SimilarityCandidate(
                    reference_id=reference_row.id,
                    target_id=target_row.id,
                    score=float(scores[i, j]),
                )
                for j, reference_row in enumerate(embedded_references)
            ),
            key=SimilarityCandidate.sort_key,
        )

    results: list[LineByLineResult] = []
    for position, target_row in enumerate(target):
        reference_row = (
            reference_rows[position] if position < len(reference_rows) else None
        )
        paired = (
            reference_row is not None
            and reference_row.has_embedding
            and target_row.has_embedding
        )
        score = 0.0
        if paired:
            assert reference_row is not None
            i = target_index[target_row.id]
            score = float(scores[i, reference_index[reference_row.id]])
        is_good = paired and score >= threshold
        results.append(
            LineByLineResult(
                line=position + 1,
                target=target_row,
                reference=reference_row,
                score=score,
                is_good=is_good,
                suggestion=None if is_good else suggest(target_row),
            )
        )

    logger.info(
        "line by line comparison finished",
        lines=len(results),
        good=sum(1 for result in results if result.is_good),
    )
    return results


def write_line_by_line_csv(path: str | Path, results: Sequence[LineByLineResult]):
    """Writes the line by line report in target order."""
    path = Path(path)
    with path.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(LINE_BY_LINE_COLUMNS)
        for result in results:
            suggestion = result.suggestion
            writer.writerow(
                [
                    result.line,
                    result.target.id,
                    result.target.content,
                    "" if result.reference is None else result.reference.id,
                    "" if result.reference is None else result.reference.content,
                    f"{result.score:.4f}",
                    "Yes" if result.is_good else "No",
                    result.quality.value,
                    "" if suggestion is None else suggestion.reference_id,
                    "" if suggestion is None else f"{suggestion.score:.4f}",
                ]
            )

    logger.info("line by line report written", path=str(path), lines=len(results))
