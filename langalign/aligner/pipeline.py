import asyncio
from typing import TYPE_CHECKING

import structlog
from ddtrace.trace import tracer

from .alignment import (
    AlignmentResult,
    build,
    compute_statistics,
    line_by_line,
    orphaned_targets,
)
from .content import ContentSet, validate_content_set
from .embeddings import Embedder, check_dimensions, embed_rows
from .matching import match
from .preprocessing import prepare_rows

if TYPE_CHECKING:
    from ..configuration import AppConfiguration

logger = structlog.get_logger()


class Aligner:
    """
    Aligns a target-language content set to a reference-language one.

    A run validates both sets, normalizes their content, embeds the eligible
    rows, matches them by cosine similarity and builds one aligned row per
    reference row. With `Output.LineByLineReport` on it also compares the
    rows position by position. Either a complete AlignmentResult is returned
    or the run raises; a cancelled run publishes nothing.

    Attributes:
        config (AppConfiguration): Thresholds, bounds and toggles for the run.
        embedder (Embedder): The provider used for vectors; defaults to the
            configured one.
    """

    def __init__(self, config: "AppConfiguration", embedder: Embedder | None = None):
        self.config = config
        self.embedder: Embedder = embedder if embedder is not None else config.embedding

    async def align(self, reference: ContentSet, target: ContentSet) -> AlignmentResult:
        """
        Raises:
            ValidationError: if either set is empty or has missing/duplicate ids.
            EmbeddingError: if no row could be embedded.
            DimensionMismatchError: if the provider returned vectors of
                different lengths.
        """
        settings = self.config.language_comparison
        log = logger.bind(reference=reference.name, target=target.name)

        reference = reference.limit(settings.demo_row_limit)
        target = target.limit(settings.demo_row_limit)
        validate_content_set(reference)
        validate_content_set(target)

        with tracer.trace("alignment.run"):
            current_span = tracer.current_span()
            if current_span:
                current_span.set_tag("reference.rows", len(reference))
                current_span.set_tag("target.rows", len(target))

            options = self.config.preprocessing.normalize_options()
            for content_set in (reference, target):
                eligible = prepare_rows(
                    content_set,
                    options,
                    settings.min_content_length,
                    settings.max_content_length,
                )
                await log.adebug(
                    "content normalized",
                    content_set=content_set.name,
                    rows=len(content_set),
                    eligible=eligible,
                )

            try:
                report = await embed_rows(
                    [reference, target],
                    self.embedder,
                    batch_size=settings.max_embedding_batch_size,
                    max_concurrency=settings.max_concurrent_requests,
                    retry=self.config.retry.retry_policy(),
                    show_progress=self.config.output.show_progress_messages,
                )
            except asyncio.CancelledError:
                await log.awarning("alignment cancelled while embedding")
                raise
            check_dimensions(reference, target)

            assignment = match(reference, target, settings.similarity_threshold)
            rows = build(
                reference,
                target,
                assignment,
                self.config.output.placeholder_policy(),
            )
            orphans = orphaned_targets(target, assignment)
            statistics = compute_statistics(rows, orphans)
            report_lines = (
                line_by_line(reference, target, settings.similarity_threshold)
                if self.config.output.line_by_line_report
                else []
            )

        await log.ainfo(
            "alignment finished",
            matched=statistics.matched_rows,
            unmatched=statistics.unmatched_rows,
            orphaned=statistics.orphaned_target_rows,
            failed_batches=len(report.failures),
        )
        return AlignmentResult(
            rows=rows,
            orphaned_targets=orphans,
            assignment=assignment,
            statistics=statistics,
            embedding_failures=report.failures,
            line_by_line=report_lines,
        )


async def align(
    reference: ContentSet,
    target: ContentSet,
    config: "AppConfiguration",
    embedder: Embedder | None = None,
) -> AlignmentResult:
    return await Aligner(config, embedder).align(reference, target)
