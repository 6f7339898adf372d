import re
from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal

import ijson  # type: ignore
from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    import openai
    import tiktoken
    from openai import AsyncAPIResponse, resources, types


from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    ProviderError,
    Usage,
    logger,
)

MODEL_CONTEXT_LENGTH = {
    "text-embedding-ada-002": 8191,
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
}

# OpenAI counts roughly 4 bytes of UTF-8 per token against the request limit
TOKENS_PER_BYTE = 0.25
MAX_TOKENS_PER_REQUEST = 300_000
MAX_TEXTS_PER_REQUEST = 2048

STREAM_BUF_SIZE = 64 * 1024

CONTEXT_LENGTH_REGEX = re.compile(
    r"This model's maximum context length is (\d+) tokens"
)


class ResponseWithRead:
    """Gives a streamed OpenAI response the `read(n)` ijson expects."""

    def __init__(self, response: "AsyncAPIResponse[types.CreateEmbeddingResponse]"):
        self.iter = response.iter_bytes(STREAM_BUF_SIZE)

    async def read(self, n: int) -> bytes:
        if n == 0:
            return b""
        return await anext(self.iter, b"")


async def read_embedding_stream(source: Any) -> EmbeddingResponse:
    """
    Collects the vectors and token usage of an embeddings response without
    building the whole JSON document in memory. `source` is anything with an
    async `read(n)`.
    """
    vectors: list[list[float]] = []
    usage = {"prompt_tokens": 0, "total_tokens": 0}
    vector: list[float] = []
    async for prefix, event, value in ijson.parse_async(
        source, use_float=True, buf_size=STREAM_BUF_SIZE
    ):
        match prefix, event:
            case "data.item.embedding", "start_array":
                vector = []
            case "data.item.embedding", "end_array":
                vectors.append(vector)
            case "data.item.embedding.item", "number":
                vector.append(value)
            case ("usage.prompt_tokens" | "usage.total_tokens"), "number":
                usage[prefix.removeprefix("usage.")] = value
            case _:
                pass
    return EmbeddingResponse(embeddings=vectors, usage=Usage(**usage))


def describe_api_error(error: "openai.APIError") -> str:
    """A short reason for a failed request, used in the batch failure."""
    import openai

    if isinstance(error, openai.RateLimitError):
        return f"rate limited or out of quota: {error.message}"
    if isinstance(error, openai.BadRequestError):
        found = CONTEXT_LENGTH_REGEX.search(error.message)
        if found:
            return f"text exceeds the model context length of {found.group(1)} tokens"
    if isinstance(error, openai.APIStatusError):
        return f"HTTP {error.status_code}: {error.message}"
    return f"{type(error).__name__}: {error.message}"


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API (or an OpenAI compatible endpoint through
    `base_url`) to embed content rows.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings.
        dimensions (int | None): Optional dimensions for the embeddings.
        api_key_name (str): Environment variable that holds the key.
    """

    implementation: Literal["openai"]
    model: str = "text-embedding-3-small"
    dimensions: int | None = None
    api_key_name: str | None = "OPENAI_API_KEY"
    base_url: str | None = None

    @cached_property
    def _requested_dimensions(self) -> "int | openai.NotGiven":
        # Note: deferred import to avoid import overhead
        import openai

        if self.model == "text-embedding-ada-002":
            if self.dimensions not in (None, 1536):
                raise ValueError("dimensions must be 1536 for text-embedding-ada-002")
            return openai.NOT_GIVEN
        return self.dimensions if self.dimensions is not None else openai.NOT_GIVEN

    @cached_property
    def _client(self) -> "resources.AsyncEmbeddingsWithStreamingResponse":
        import openai

        # retries are handled per batch by the embedding runner
        return openai.AsyncOpenAI(
            base_url=self.base_url, api_key=self._api_key, max_retries=0
        ).embeddings.with_streaming_response

    @cached_property
    def _encoder(self) -> "tiktoken.Encoding | None":
        # Note: deferred import to avoid import overhead
        import tiktoken

        try:
            return tiktoken.encoding_for_model(self.model)
        except KeyError:
            logger.warning(f"no tokenizer for model {self.model}, texts not truncated")
            return None

    @override
    def _max_texts_per_batch(self) -> int:
        return MAX_TEXTS_PER_REQUEST

    @override
    def _max_tokens_per_batch(self) -> int:
        return MAX_TOKENS_PER_REQUEST

    @override
    def token_count(self, document: str) -> float:
        return len(document.encode("utf-8")) * TOKENS_PER_BYTE

    @override
    async def prepare_documents(self, documents: list[str]) -> list[str]:
        """Truncates texts that are longer than the model's context window."""
        context_length = MODEL_CONTEXT_LENGTH.get(self.model)
        if context_length is None:
            return documents
        encoder = self._encoder
        if encoder is None:
            return documents

        prepared: list[str] = []
        for document in documents:
            tokens = encoder.encode(document)
            if len(tokens) > context_length:
                await logger.awarning(
                    "text truncated to the model context length",
                    tokens=len(tokens),
                    context_length=context_length,
                )
                document = encoder.decode(tokens[:context_length])
            prepared.append(document)
        return prepared

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        import openai

        try:
            async with self._client.create(
                input=documents,
                model=self.model,
                dimensions=self._requested_dimensions,
                encoding_format="float",
            ) as streaming_response:
                return await read_embedding_stream(
                    ResponseWithRead(streaming_response)
                )
        except openai.APIError as e:
            raise ProviderError(describe_api_error(e)) from e
