import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

import backoff
import structlog
from backoff._typing import Details
from ddtrace.trace import tracer

from .content import ContentRow, ContentSet, EmbeddingVector, RowStatus

logger = structlog.get_logger()

PROBE_TEXT = "Test connection"


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embeddings: list[list[float]]
    usage: Usage


class ProviderError(Exception):
    """
    Raised when a single embedding request fails: network or provider error,
    quota, or a malformed response. The whole batch is considered failed.
    """


class EmbeddingError(Exception):
    """
    Raised when embedding cannot produce a usable result for the run, e.g.
    when no row in the whole input could be embedded.
    """

    def __init__(self, message: str, failures: Sequence["BatchFailure"] = ()):
        super().__init__(message)
        self.failures = list(failures)


class DimensionMismatchError(EmbeddingError):
    """
    Raised when the provider returns vectors of different lengths. This points
    at a provider or model inconsistency, so the run is aborted.
    """


@dataclass(frozen=True)
class RetryPolicy:
    """
    Attributes:
        max_retries (int): Extra attempts after the first failed request.
        base_delay (float): Backoff before retry n is base_delay * 2**n seconds.
        max_delay (float): Upper bound on a single backoff.
        request_timeout (float): Seconds a single request may take.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    request_timeout: float = 60.0


def describe_failure(error: BaseException, retry: RetryPolicy) -> str:
    if isinstance(error, asyncio.TimeoutError):
        return f"request timed out after {retry.request_timeout}s"
    return str(error)


@dataclass
class BatchFailure:
    content_set: str
    row_ids: list[str]
    attempts: int
    error: str


@dataclass
class EmbeddingReport:
    """Outcome of embedding one or more content sets."""

    embedded: int = 0
    failed: int = 0
    skipped: int = 0
    batches: int = 0
    dimension: int | None = None
    failures: list[BatchFailure] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return self.failed > 0


def batch_indices(
    text_token_lengths: Sequence[float],
    max_texts_per_batch: int,
    max_tokens_per_batch: int | None,
) -> list[tuple[int, int]]:
    """
    Given a list of text token lengths, determines how to batch them, adhering to
    configured 'max_texts_per_batch' and 'max_tokens_per_batch'.

    A text that alone exceeds 'max_tokens_per_batch' is sent in a batch of its
    own; the provider decides whether to accept it.

    Returns a list of tuples indicating the text indexes to include in the batch
    """
    batches: list[list[int]] = []
    batch: list[int] = []
    token_count = 0.0
    for idx, text_tokens in enumerate(text_token_lengths):
        oversized = (
            max_tokens_per_batch is not None and text_tokens > max_tokens_per_batch
        )
        if oversized:
            logger.warning(
                f"text length {text_tokens} greater than max_tokens_per_batch {max_tokens_per_batch}"  # noqa
            )
        max_tokens_reached = (
            max_tokens_per_batch is not None
            and token_count + text_tokens > max_tokens_per_batch
        )
        max_texts_reached = len(batch) + 1 > max_texts_per_batch
        if batch and (max_tokens_reached or max_texts_reached):
            logger.debug(
                f"Batch {len(batches) + 1} has {token_count} tokens in {len(batch)} texts"  # noqa
            )
            batches.append(batch)
            batch = []
            token_count = 0
        batch.append(idx)
        token_count += text_tokens
    if batch:
        logger.debug(
            f"Batch {len(batches) + 1} has {token_count} tokens in {len(batch)} texts"
        )
        batches.append(batch)
    return [(idxs[0], idxs[-1] + 1) for idxs in batches]


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    An embedder turns a batch of texts into one vector per text, in the same
    order, or fails the batch as a whole.
    """

    @abstractmethod
    def _max_texts_per_batch(self) -> int:
        """
        The maximum number of texts that can be embedded per API call
        :return: int: the max text count
        """

    def _max_tokens_per_batch(self) -> int | None:
        """
        The maximum number of tokens that can be embedded per API call
        :return: int: the max token count
        """
        return None

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Setup the embedder
        """

    @abstractmethod
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        """
        Call the embed API
        :param documents:
        :return:
        """

    def token_count(self, document: str) -> float:
        """Estimated tokens for a document, used for batching. 0 if unknown."""
        return 0

    async def prepare_documents(self, documents: list[str]) -> list[str]:
        """Hook to truncate or otherwise adjust documents before batching."""
        return documents

    async def embed_batch(self, documents: list[str]) -> list[EmbeddingVector]:
        """
        Embeds one batch. Provider exceptions and responses that do not carry
        exactly one vector per document are raised as ProviderError.
        """
        try:
            response = await self.call_embed_api(documents)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"{type(e).__name__}: {e}") from e

        if len(response.embeddings) != len(documents):
            raise ProviderError(
                f"expected {len(documents)} embeddings, got {len(response.embeddings)}"
            )
        await logger.adebug("batch embedded", texts=len(documents), usage=response.usage)
        return response.embeddings

    async def test_connection(self) -> bool:
        """Embeds a short probe text; True if the provider answered."""
        try:
            await self.setup()
        except Exception as e:
            await logger.awarning("embedding provider setup failed", error=str(e))
            return False
        try:
            await self.embed_batch([PROBE_TEXT])
        except ProviderError as e:
            await logger.awarning("embedding provider probe failed", error=str(e))
            return False
        return True


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the environment variable or secret that
            holds the API key.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the stored API key.

        Raises:
            ValueError: If the API key has not been set.
        """
        if self._api_key_ is None:
            raise ValueError("API key not set")
        return self._api_key_

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """
        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if api_key is None:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key


class EmbeddingStats:
    """
    Tracks embedding statistics for one run: total request time, rows
    processed and rows per second.
    """

    def __init__(self):
        self.total_request_time = 0.0
        self.total_rows = 0
        self.wall_time = 0.0
        self.wall_start = time.perf_counter()

    def add_request_time(self, duration: float, row_count: int):
        self.total_request_time += duration
        self.total_rows += row_count

    def rows_per_second(self) -> float:
        return (
            self.total_rows / self.total_request_time
            if self.total_request_time > 0
            else 0
        )

    async def print_stats(self):
        self.wall_time = time.perf_counter() - self.wall_start
        await logger.adebug(
            "Embedding stats",
            total_request_time=self.total_request_time,
            wall_time=self.wall_time,
            total_rows=self.total_rows,
            rows_per_second=self.rows_per_second(),
        )


@dataclass
class _Batch:
    number: int
    content_set: str
    rows: list[ContentRow]
    documents: list[str]


class _BatchRunner:
    """
    Runs batches through the embedder with at most `max_concurrency` requests
    in flight. Each batch writes its vectors straight into its own rows, so the
    result does not depend on completion order.
    """

    def __init__(
        self,
        embedder: Embedder,
        max_concurrency: int,
        retry: RetryPolicy,
        total_batches: int,
        show_progress: bool = False,
    ):
        self.embedder = embedder
        self.retry = retry
        self.total_batches = total_batches
        self.show_progress = show_progress
        self.completed_batches = 0
        self.semaphore = asyncio.Semaphore(max_concurrency)
        self.dimension: int | None = None
        self.stats = EmbeddingStats()
        self.report = EmbeddingReport(batches=total_batches)

    def _check_dimension(self, batch: _Batch, vectors: list[EmbeddingVector]):
        for row, vector in zip(batch.rows, vectors, strict=True):
            if self.dimension is None:
                self.dimension = len(vector)
            elif len(vector) != self.dimension:
                raise DimensionMismatchError(
                    f"row '{row.id}' in '{batch.content_set}' has "
                    f"{len(vector)} dimensions, expected {self.dimension}"
                )

    async def run(self, batch: _Batch) -> None:
        async with self.semaphore:
            await self._run_with_retries(batch)
        self.completed_batches += 1
        if self.show_progress:
            await logger.ainfo(
                "embedding progress",
                completed=self.completed_batches,
                batches=self.total_batches,
                embedded=self.report.embedded,
                failed=self.report.failed,
            )

    async def _run_with_retries(self, batch: _Batch) -> None:
        log = logger.bind(
            batch=batch.number,
            batches=self.total_batches,
            content_set=batch.content_set,
            rows=len(batch.rows),
        )
        attempts = 0

        async def on_backoff(detail: Details):
            await log.awarning(
                "batch failed, retrying",
                attempt=detail["tries"],
                retry_in=detail["wait"],
                error=describe_failure(detail["exception"], self.retry),
            )

        @backoff.on_exception(
            backoff.expo,
            (ProviderError, asyncio.TimeoutError),
            max_tries=self.retry.max_retries + 1,
            on_backoff=on_backoff,
            raise_on_giveup=True,
            jitter=None,
            factor=self.retry.base_delay,
            max_value=self.retry.max_delay,
        )
        async def attempt() -> tuple[list[EmbeddingVector], float]:
            nonlocal attempts
            attempts += 1
            with tracer.trace("embeddings.do.embedder.create"):
                current_span = tracer.current_span()
                if current_span:
                    current_span.set_tag("batch.id", batch.number)
                    current_span.set_tag("batch.texts.total", len(batch.rows))
                    current_span.set_tag("batch.attempt", attempts)
                start_time = time.perf_counter()
                vectors = await asyncio.wait_for(
                    self.embedder.embed_batch(batch.documents),
                    timeout=self.retry.request_timeout,
                )
                return vectors, time.perf_counter() - start_time

        try:
            vectors, request_duration = await attempt()
        except (ProviderError, asyncio.TimeoutError) as e:
            error = describe_failure(e, self.retry)
            for row in batch.rows:
                row.embedding = None
                row.status = RowStatus.EMBEDDING_FAILED
            self.report.failed += len(batch.rows)
            self.report.failures.append(
                BatchFailure(
                    content_set=batch.content_set,
                    row_ids=[row.id for row in batch.rows],
                    attempts=attempts,
                    error=error,
                )
            )
            await log.aerror("batch failed, giving up", attempts=attempts, error=error)
            return

        self._check_dimension(batch, vectors)
        for row, vector in zip(batch.rows, vectors, strict=True):
            row.embedding = list(vector)
            row.status = RowStatus.EMBEDDED
        self.stats.add_request_time(request_duration, len(batch.rows))
        self.report.embedded += len(batch.rows)
        await log.adebug(
            "batch succeeded", attempt=attempts, seconds=round(request_duration, 3)
        )


async def _plan_batches(
    content_sets: Sequence[ContentSet], embedder: Embedder, batch_size: int
) -> list[_Batch]:
    max_texts = min(batch_size, embedder._max_texts_per_batch())
    max_tokens = embedder._max_tokens_per_batch()
    batches: list[_Batch] = []
    for content_set in content_sets:
        rows = [row for row in content_set if row.status == RowStatus.PENDING]
        if not rows:
            continue
        documents = await embedder.prepare_documents(
            [row.normalized_content for row in rows]
        )
        token_counts = [embedder.token_count(document) for document in documents]
        for start, end in batch_indices(token_counts, max_texts, max_tokens):
            batches.append(
                _Batch(
                    number=len(batches) + 1,
                    content_set=content_set.name,
                    rows=rows[start:end],
                    documents=documents[start:end],
                )
            )
    return batches


async def embed_rows(
    content_sets: ContentSet | Sequence[ContentSet],
    embedder: Embedder,
    batch_size: int,
    max_concurrency: int,
    retry: RetryPolicy | None = None,
    show_progress: bool = False,
) -> EmbeddingReport:
    """
    Embeds every pending row of the given content sets in place.

    Rows are split into batches of at most `batch_size` texts and at most
    `max_concurrency` batches are in flight; the rest wait in submission order.
    With `show_progress` every finished batch is logged at info level.
    A batch that still fails after the retries marks its rows as
    `embedding_failed` and is recorded in the report.

    Raises:
        DimensionMismatchError: if two vectors differ in length. Other in-flight
            batches are cancelled.
        EmbeddingError: if the embedder cannot be set up, or if there were rows
            to embed and none succeeded.
    """
    if isinstance(content_sets, ContentSet):
        content_sets = [content_sets]
    if batch_size <= 0 or max_concurrency <= 0:
        raise ValueError("batch_size and max_concurrency must be greater than 0")
    retry = retry or RetryPolicy()

    skipped = sum(
        1 for content_set in content_sets for row in content_set if not row.is_eligible
    )
    try:
        await embedder.setup()
    except Exception as e:
        raise EmbeddingError(
            f"embedding provider setup failed: {type(e).__name__}: {e}"
        ) from e
    batches = await _plan_batches(content_sets, embedder, batch_size)
    runner = _BatchRunner(
        embedder, max_concurrency, retry, len(batches), show_progress
    )
    runner.report.skipped = skipped

    with tracer.trace("embeddings.do"):
        current_span = tracer.current_span()
        if current_span:
            current_span.set_tag("batches.total", len(batches))
        await logger.ainfo(
            "embedding rows",
            rows=sum(len(batch.rows) for batch in batches),
            batches=len(batches),
            concurrency=max_concurrency,
        )
        tasks = [asyncio.create_task(runner.run(batch)) for batch in batches]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        await runner.stats.print_stats()
        if current_span:
            current_span.set_metric(
                "embeddings.embedder.all_create_requests.time.seconds",
                runner.stats.total_request_time,
            )

    report = runner.report
    report.dimension = runner.dimension
    if batches and report.embedded == 0:
        raise EmbeddingError(
            f"no rows could be embedded ({report.failed} rows in "
            f"{len(report.failures)} failed batches)",
            report.failures,
        )
    if report.is_partial:
        await logger.awarning(
            "embedding finished with failed batches",
            embedded=report.embedded,
            failed=report.failed,
            failed_batches=len(report.failures),
        )
    else:
        await logger.ainfo("embedding finished", embedded=report.embedded)
    return report


def check_dimensions(*content_sets: ContentSet) -> int | None:
    """
    Verifies every embedded row of the given sets has the same vector length.

    Returns:
        int | None: the shared dimension, or None if nothing is embedded.

    Raises:
        DimensionMismatchError: on the first row whose length differs.
    """
    dimension: int | None = None
    for content_set in content_sets:
        for row in content_set.embedded_rows():
            assert row.embedding is not None
            if dimension is None:
                dimension = len(row.embedding)
            elif len(row.embedding) != dimension:
                raise DimensionMismatchError(
                    f"row '{row.id}' in '{content_set.name}' has "
                    f"{len(row.embedding)} dimensions, expected {dimension}"
                )
    return dimension
