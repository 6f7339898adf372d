import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from rich.console import Console
from rich.table import Table

from .__init__ import __version__
from .aligner.alignment import (
    AlignmentResult,
    write_aligned_csv,
    write_line_by_line_csv,
)
from .aligner.content import ValidationError, read_content_csv
from .aligner.embeddings import ApiKeyMixin, DimensionMismatchError, EmbeddingError
from .aligner.pipeline import Aligner
from .configuration import AppConfiguration, ConfigurationError, load_configuration
from .tracing import configure_tracing

load_dotenv(dotenv_path=find_dotenv(usecwd=True))

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

EXIT_INVALID_INPUT = 1
EXIT_EMBEDDING_FAILED = 2
EXIT_CANCELLED = 130


def asbool(value: str | None):
    """Convert the given String to a boolean object.

    Accepted values are `True` and `1`.
    """
    if value is None:
        return False

    return value.lower() in ("true", "1")


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.INFO


def configure_logging(log_level: str, quiet: bool) -> None:
    level = get_log_level(log_level)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))
    if not quiet:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=level,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        )


def set_api_key(config: AppConfiguration) -> None:
    """Reads the embedder's API key from the environment, if it needs one."""
    embedder = config.embedding
    if not isinstance(embedder, ApiKeyMixin) or embedder.api_key_name is None:
        return
    api_key = os.getenv(embedder.api_key_name)
    if api_key is None:
        raise ConfigurationError(
            f"environment variable {embedder.api_key_name} is not set"
        )
    log.debug(f"obtained secret '{embedder.api_key_name}' from environment")
    embedder.set_api_key({embedder.api_key_name: api_key})


def print_statistics(console: Console, result: AlignmentResult) -> None:
    stats = result.statistics
    table = Table(title="Alignment summary")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Reference rows", str(stats.total_reference_rows))
    table.add_row("Matched", str(stats.matched_rows))
    table.add_row("Unmatched", str(stats.unmatched_rows))
    table.add_row("Orphaned target rows", str(stats.orphaned_target_rows))
    table.add_row("High quality (>= 0.8)", str(stats.high_quality_matches))
    table.add_row("Medium quality (>= 0.6)", str(stats.medium_quality_matches))
    table.add_row("Low quality (>= 0.4)", str(stats.low_quality_matches))
    table.add_row("Poor quality", str(stats.poor_quality_matches))
    table.add_row("Match percentage", f"{stats.match_percentage:.1f}%")
    table.add_row("Average score", f"{stats.average_similarity_score:.3f}")
    table.add_row("Failed embedding batches", str(len(result.embedding_failures)))
    console.print(table)


def print_details(console: Console, result: AlignmentResult, width: int = 40) -> None:
    def snip(text: str) -> str:
        return (text[: width - 1] + "…") if len(text) > width else text

    table = Table(title="Aligned rows")
    table.add_column("Reference")
    table.add_column("Target")
    table.add_column("Score", justify="right")
    table.add_column("Quality")
    for row in result.rows:
        table.add_row(
            f"{row.reference_id}: {snip(row.reference_content)}",
            f"{row.target_id}: {snip(row.target_content)}"
            if row.target_id
            else snip(row.target_content),
            "" if row.match_score is None else f"{row.match_score:.3f}",
            row.quality.value,
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
def cli():
    pass


@cli.command()
@click.option(
    "-r",
    "--reference",
    "reference_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="CSV export in the reference language (ContentId,Content)",
)
@click.option(
    "-t",
    "--target",
    "target_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    required=True,
    help="CSV export in the target language (ContentId,Content)",
)
@click.option(
    "-o",
    "--output",
    "output_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Where to write the aligned CSV. Defaults to <target>_aligned.csv",
)
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="JSON configuration file (appsettings.json layout)",
)
@click.option("--threshold", type=click.FloatRange(0.0, 1.0), default=None)
@click.option("--batch-size", type=click.IntRange(1), default=None)
@click.option("--concurrency", type=click.IntRange(1), default=None)
@click.option(
    "--row-limit",
    type=click.IntRange(0),
    default=None,
    help="Only align the first n rows of each file (0 = no limit)",
)
@click.option(
    "--include-orphans/--no-include-orphans",
    default=None,
    help="Append target rows that matched nothing to the output",
)
@click.option(
    "--line-by-line/--no-line-by-line",
    default=None,
    help="Also write a report comparing the rows position by position",
)
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)
@click.option("-q", "--quiet", is_flag=True, default=False, help="Only print errors")
def align(
    reference_path: Path,
    target_path: Path,
    output_path: Path | None,
    config_path: Path | None,
    threshold: float | None,
    batch_size: int | None,
    concurrency: int | None,
    row_limit: int | None,
    include_orphans: bool | None,
    line_by_line: bool | None,
    log_level: str,
    quiet: bool,
) -> None:
    """Align a target-language CSV export to a reference-language one."""
    configure_logging(log_level, quiet)
    configure_tracing(asbool(os.getenv("DD_TRACE_ENABLED")))

    overrides: dict[str, dict[str, Any]] = {
        "language_comparison": {
            key: value
            for key, value in {
                "similarity_threshold": threshold,
                "max_embedding_batch_size": batch_size,
                "max_concurrent_requests": concurrency,
                "demo_row_limit": row_limit,
            }.items()
            if value is not None
        },
        "output": {
            key: value
            for key, value in {
                "include_orphaned_targets": include_orphans,
                "line_by_line_report": line_by_line,
            }.items()
            if value is not None
        },
    }

    try:
        config = load_configuration(config_path, overrides)
        set_api_key(config)
        reference = read_content_csv(reference_path)
        target = read_content_csv(target_path)
        result = asyncio.run(Aligner(config).align(reference, target))
    except (ConfigurationError, ValidationError, FileNotFoundError) as e:
        log.error(str(e))
        sys.exit(EXIT_INVALID_INPUT)
    except DimensionMismatchError as e:
        log.error("embedding dimensions differ", error=str(e))
        sys.exit(EXIT_EMBEDDING_FAILED)
    except EmbeddingError as e:
        log.error(str(e), failed_batches=len(e.failures))
        sys.exit(EXIT_EMBEDDING_FAILED)
    except KeyboardInterrupt:
        log.info("received SIGINT, exiting")
        sys.exit(EXIT_CANCELLED)

    if output_path is None:
        output_path = target_path.with_name(f"{target_path.stem}_aligned.csv")
    orphans = result.orphaned_targets if config.output.include_orphaned_targets else []
    report_path = output_path.with_name(f"{output_path.stem}_line_by_line.csv")
    try:
        write_aligned_csv(output_path, result.rows, orphans)
        if config.output.line_by_line_report:
            write_line_by_line_csv(report_path, result.line_by_line)
    except OSError as e:
        log.error("cannot write output", error=str(e))
        sys.exit(EXIT_INVALID_INPUT)

    if not quiet:
        console = Console()
        if config.output.show_detailed_results:
            print_details(console, result)
        print_statistics(console, result)
        console.print(f"Aligned file written to {output_path}")
        if config.output.line_by_line_report:
            console.print(f"Line by line report written to {report_path}")


@cli.command(name="check-config")
@click.option(
    "-c",
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
)
@click.option(
    "--probe/--no-probe",
    default=False,
    help="Send a test request to the embedding provider",
)
def check_config(config_path: Path | None, probe: bool) -> None:
    """Validate a configuration file and print the effective settings."""
    try:
        config = load_configuration(config_path)
        if probe:
            set_api_key(config)
    except ConfigurationError as e:
        log.error(str(e))
        sys.exit(EXIT_INVALID_INPUT)

    console = Console()
    console.print_json(config.model_dump_json(by_alias=True))

    if probe:
        ok = asyncio.run(config.embedding.test_connection())
        if not ok:
            console.print("[red]embedding provider did not respond[/red]")
            sys.exit(EXIT_EMBEDDING_FAILED)
        console.print("[green]embedding provider is reachable[/green]")
