import asyncio
import hashlib
import math
from collections.abc import Mapping, Sequence

from typing_extensions import override

from langalign.aligner.content import ContentSet
from langalign.aligner.embeddings import (
    Embedder,
    EmbeddingResponse,
    ProviderError,
    Usage,
)


def unit(score: float) -> list[float]:
    """A 2d unit vector whose cosine similarity with [1, 0] is `score`."""
    return [score, math.sqrt(1 - score * score)]


def hashed_vector(text: str, dimensions: int = 8) -> list[float]:
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return [(b - 128) / 128 for b in digest[:dimensions]]


class StubEmbedder(Embedder):
    """
    Deterministic embedder for tests.

    Vectors come from `vectors` (keyed by normalized text) or from a hash of
    the text. Texts listed in `failing` make every batch containing them fail;
    `fail_times` limits how many times that happens before the batch passes.
    """

    def __init__(
        self,
        vectors: Mapping[str, Sequence[float]] | None = None,
        failing: set[str] | None = None,
        fail_times: int | None = None,
        delays: Mapping[str, float] | None = None,
        max_batch: int = 2048,
        dimensions: int = 8,
    ):
        self.vectors = dict(vectors or {})
        self.failing = failing or set()
        self.fail_times = fail_times
        self.delays = dict(delays or {})
        self.max_batch = max_batch
        self.dimensions = dimensions
        self.calls: list[list[str]] = []
        self.failures = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @override
    def _max_texts_per_batch(self) -> int:
        return self.max_batch

    def vector_for(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        return hashed_vector(text, self.dimensions)

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        self.calls.append(list(documents))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = max((self.delays.get(d, 0.0) for d in documents), default=0.0)
            await asyncio.sleep(delay)
            if self.failing.intersection(documents) and (
                self.fail_times is None or self.failures < self.fail_times
            ):
                self.failures += 1
                raise ProviderError("quota exceeded")
            return EmbeddingResponse(
                embeddings=[self.vector_for(d) for d in documents],
                usage=Usage(prompt_tokens=len(documents), total_tokens=len(documents)),
            )
        finally:
            self.in_flight -= 1


def content_set(name: str, *records: tuple[str, str]) -> ContentSet:
    return ContentSet.from_records(
        name, [{"id": id_, "content": content} for id_, content in records]
    )
