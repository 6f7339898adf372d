import asyncio

import pytest
from structlog.testing import capture_logs
from typing_extensions import override

from langalign.aligner.content import ContentSet, RowStatus
from langalign.aligner.embeddings import (
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingResponse,
    ProviderError,
    RetryPolicy,
    Usage,
    batch_indices,
    check_dimensions,
    embed_rows,
)
from langalign.aligner.preprocessing import NormalizeOptions, prepare_rows
from tests.aligner.utils import StubEmbedder, content_set

NO_BACKOFF = RetryPolicy(max_retries=2, base_delay=0.0)

token_documents = [5, 1, 1, 1, 1, 1, 1, 1, 1]
string_documents = [1, 8, 2, 5, 9, 5, 6, 11]


@pytest.mark.parametrize(
    "input,batch_size,token_limit,expected",
    [
        ([], 1, None, []),
        (
            token_documents,
            1,
            None,
            [(0, 1), (1, 2), (2, 3), (3, 4), (4, 5), (5, 6), (6, 7), (7, 8), (8, 9)],
        ),
        (token_documents, 3, None, [(0, 3), (3, 6), (6, 9)]),
        (token_documents, 5, None, [(0, 5), (5, 9)]),
        (token_documents, 5, 6, [(0, 2), (2, 7), (7, 9)]),
        # an oversized first text travels alone
        (token_documents, 5, 2, [(0, 1), (1, 3), (3, 5), (5, 7), (7, 9)]),
        (string_documents, 5, 20, [(0, 4), (4, 7), (7, 8)]),
    ],
)
def test_batch_indices(
    input: list[int],
    batch_size: int,
    token_limit: int | None,
    expected: list[tuple[int, int]],
):
    assert batch_indices(input, batch_size, token_limit) == expected


def prepared(name: str, *texts: str) -> ContentSet:
    rows = content_set(name, *[(f"{name[0].upper()}{i}", t) for i, t in enumerate(texts)])
    prepare_rows(rows, NormalizeOptions(), min_length=1, max_length=1000)
    return rows


async def test_rows_are_split_into_batches():
    rows = prepared("reference", "alpha", "bravo", "charlie", "delta", "echo")
    embedder = StubEmbedder()

    report = await embed_rows(rows, embedder, batch_size=2, max_concurrency=1)

    assert [len(call) for call in embedder.calls] == [2, 2, 1]
    assert report.embedded == 5
    assert report.batches == 3
    assert report.dimension == 8
    assert all(row.status == RowStatus.EMBEDDED for row in rows)


async def test_batch_size_is_capped_by_embedder_limit():
    rows = prepared("reference", "alpha", "bravo", "charlie")
    embedder = StubEmbedder(max_batch=1)

    await embed_rows(rows, embedder, batch_size=50, max_concurrency=1)

    assert [len(call) for call in embedder.calls] == [1, 1, 1]


async def test_concurrency_is_bounded():
    texts = [f"text {i}" for i in range(8)]
    rows = prepared("reference", *texts)
    embedder = StubEmbedder(delays={t: 0.01 for t in texts})

    await embed_rows(rows, embedder, batch_size=1, max_concurrency=3)

    assert embedder.max_in_flight == 3
    assert len(embedder.calls) == 8


async def test_batches_start_in_submission_order():
    rows = prepared("reference", "alpha", "bravo", "charlie", "delta")
    embedder = StubEmbedder()

    await embed_rows(rows, embedder, batch_size=1, max_concurrency=1)

    assert embedder.calls == [["alpha"], ["bravo"], ["charlie"], ["delta"]]


async def test_results_are_written_back_by_row_not_completion_order():
    # the first batch finishes last
    rows = prepared("reference", "slow one", "fast two", "fast three")
    embedder = StubEmbedder(delays={"slow one": 0.05})

    await embed_rows(rows, embedder, batch_size=1, max_concurrency=3)

    for row in rows:
        assert row.embedding == embedder.vector_for(row.normalized_content)


async def test_ineligible_rows_are_not_sent():
    rows = content_set("reference", ("R1", "hello"), ("R2", "<br/>"))
    prepare_rows(rows, NormalizeOptions(), min_length=3, max_length=100)
    embedder = StubEmbedder()

    report = await embed_rows(rows, embedder, batch_size=10, max_concurrency=1)

    assert embedder.calls == [["hello"]]
    assert report.skipped == 1
    assert rows.by_id()["R2"].embedding is None


async def test_failed_batch_is_retried():
    rows = prepared("reference", "alpha", "bravo")
    embedder = StubEmbedder(failing={"bravo"}, fail_times=2)

    report = await embed_rows(
        rows, embedder, batch_size=1, max_concurrency=1, retry=NO_BACKOFF
    )

    assert embedder.calls == [["alpha"], ["bravo"], ["bravo"], ["bravo"]]
    assert report.embedded == 2
    assert report.failures == []


async def test_exhausted_retries_mark_rows_failed():
    rows = prepared("target", "alpha", "bravo", "charlie")
    embedder = StubEmbedder(failing={"bravo"})

    report = await embed_rows(
        rows, embedder, batch_size=1, max_concurrency=2, retry=NO_BACKOFF
    )

    assert report.is_partial
    assert report.embedded == 2
    assert report.failed == 1
    [failure] = report.failures
    assert failure.content_set == "target"
    assert failure.row_ids == ["T1"]
    assert failure.attempts == 3
    assert "quota exceeded" in failure.error
    bravo = rows.by_id()["T1"]
    assert bravo.status == RowStatus.EMBEDDING_FAILED
    assert bravo.embedding is None
    assert [row.id for row in rows.embedded_rows()] == ["T0", "T2"]


async def test_no_successful_rows_raises():
    rows = prepared("reference", "alpha", "bravo")
    embedder = StubEmbedder(failing={"alpha", "bravo"})

    with pytest.raises(EmbeddingError) as exc_info:
        await embed_rows(
            rows, embedder, batch_size=1, max_concurrency=1, retry=NO_BACKOFF
        )

    assert len(exc_info.value.failures) == 2


async def test_nothing_to_embed_is_not_an_error():
    rows = content_set("reference", ("R1", "<br/>"))
    prepare_rows(rows, NormalizeOptions(), min_length=3, max_length=100)

    report = await embed_rows(rows, StubEmbedder(), batch_size=1, max_concurrency=1)

    assert report.embedded == 0
    assert report.skipped == 1


async def test_one_failed_set_does_not_fail_the_run():
    reference = prepared("reference", "alpha")
    target = prepared("target", "bravo")
    embedder = StubEmbedder(failing={"bravo"})

    report = await embed_rows(
        [reference, target], embedder, batch_size=5, max_concurrency=2, retry=NO_BACKOFF
    )

    assert report.embedded == 1
    assert report.failures[0].content_set == "target"


async def test_dimension_mismatch_is_fatal():
    reference = prepared("reference", "alpha")
    target = prepared("target", "bravo")
    embedder = StubEmbedder(vectors={"alpha": [1.0, 0.0], "bravo": [1.0, 0.0, 0.0]})

    with pytest.raises(DimensionMismatchError):
        await embed_rows(
            [reference, target], embedder, batch_size=5, max_concurrency=1
        )


class ShortResponseEmbedder(StubEmbedder):
    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        self.calls.append(list(documents))
        return EmbeddingResponse(
            embeddings=[[1.0, 0.0]], usage=Usage(prompt_tokens=0, total_tokens=0)
        )


async def test_malformed_response_counts_as_failure():
    rows = prepared("reference", "alpha", "bravo")
    embedder = ShortResponseEmbedder()

    with pytest.raises(EmbeddingError) as exc_info:
        await embed_rows(
            rows, embedder, batch_size=2, max_concurrency=1, retry=NO_BACKOFF
        )

    assert len(embedder.calls) == 3
    assert "expected 2 embeddings, got 1" in exc_info.value.failures[0].error


async def test_slow_batch_times_out():
    rows = prepared("reference", "alpha", "bravo")
    embedder = StubEmbedder(delays={"bravo": 5.0})
    retry = RetryPolicy(max_retries=0, base_delay=0.0, request_timeout=0.05)

    report = await embed_rows(
        rows, embedder, batch_size=1, max_concurrency=2, retry=retry
    )

    assert report.embedded == 1
    assert "timed out" in report.failures[0].error


async def test_cancellation_propagates():
    rows = prepared("reference", "alpha", "bravo")
    embedder = StubEmbedder(delays={"alpha": 5.0, "bravo": 5.0})

    task = asyncio.create_task(
        embed_rows(rows, embedder, batch_size=1, max_concurrency=2)
    )
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert rows.embedded_rows() == []


async def test_invalid_limits_raise():
    rows = prepared("reference", "alpha")
    with pytest.raises(ValueError):
        await embed_rows(rows, StubEmbedder(), batch_size=0, max_concurrency=1)


def test_check_dimensions():
    reference = content_set("reference", ("R1", "a"))
    target = content_set("target", ("T1", "b"), ("T2", "c"))
    for row, vector in zip(
        [*reference, *target], [[1.0, 0.0], [0.0, 1.0], [0.5, 0.5]], strict=True
    ):
        row.embedding = vector
        row.status = RowStatus.EMBEDDED

    assert check_dimensions(reference, target) == 2

    target.rows[1].embedding = [1.0]
    with pytest.raises(DimensionMismatchError, match="'T2'"):
        check_dimensions(reference, target)


async def test_test_connection():
    assert await StubEmbedder().test_connection()
    assert not await StubEmbedder(failing={"Test connection"}).test_connection()


async def test_unexpected_provider_exceptions_are_wrapped():
    class Exploding(StubEmbedder):
        @override
        async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
            raise ConnectionError("connection reset")

    with pytest.raises(ProviderError, match="ConnectionError: connection reset"):
        await Exploding().embed_batch(["alpha"])


async def test_progress_is_logged_per_batch():
    rows = prepared("reference", "alpha", "bravo", "charlie")

    with capture_logs() as logs:
        await embed_rows(
            rows, StubEmbedder(), batch_size=2, max_concurrency=1, show_progress=True
        )

    progress = [entry for entry in logs if entry["event"] == "embedding progress"]
    assert [(e["completed"], e["batches"]) for e in progress] == [(1, 2), (2, 2)]
    assert progress[-1]["embedded"] == 3


async def test_retries_back_off_exponentially():
    rows = prepared("reference", "alpha")
    embedder = StubEmbedder(failing={"alpha"})
    retry = RetryPolicy(max_retries=3, base_delay=0.01, max_delay=0.03)

    with capture_logs() as logs:
        with pytest.raises(EmbeddingError):
            await embed_rows(
                rows, embedder, batch_size=1, max_concurrency=1, retry=retry
            )

    waits = [e["retry_in"] for e in logs if e["event"] == "batch failed, retrying"]
    assert waits == pytest.approx([0.01, 0.02, 0.03])
    assert len(embedder.calls) == 4


class Unreachable(StubEmbedder):
    @override
    async def setup(self) -> None:
        raise ConnectionError("connection refused")


async def test_test_connection_reports_failed_setup():
    embedder = Unreachable()
    assert not await embedder.test_connection()
    assert embedder.calls == []


async def test_failed_setup_raises_embedding_error():
    rows = prepared("reference", "alpha")

    with pytest.raises(EmbeddingError, match="ConnectionError: connection refused"):
        await embed_rows(rows, Unreachable(), batch_size=1, max_concurrency=1)
