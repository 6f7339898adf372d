import os
from typing import Any, Literal

from pydantic import BaseModel
from typing_extensions import override

from ..embeddings import (
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
    logger,
)


class Ollama(BaseModel, BaseURLMixin, Embedder):
    """
    Embedder that uses a local or remote Ollama server.

    Attributes:
        implementation (Literal["ollama"]): The literal identifier for this
            implementation.
        model (str): The name of the Ollama model used for embeddings.
        options (dict): Additional ollama-specific runtime options
        keep_alive (str): How long to keep the model loaded after the request
        pull_missing_model (bool): Pull the model on setup if the server lacks it
    """

    implementation: Literal["ollama"]
    model: str = "nomic-embed-text"
    base_url: str | None = None
    options: dict[str, Any] | None = None
    keep_alive: str | None = None
    pull_missing_model: bool = True

    @override
    def _max_texts_per_batch(self) -> int:
        # Note: the chosen default is arbitrary - Ollama doesn't place a limit
        return int(os.getenv("LANGALIGN_OLLAMA_MAX_TEXTS_PER_BATCH", default="2048"))

    @override
    async def setup(self):
        # Note: deferred import to avoid import overhead
        import ollama

        if not self.pull_missing_model:
            return
        client = ollama.AsyncClient(host=self.base_url)
        try:
            await client.show(self.model)
        except ollama.ResponseError as e:
            if "not found" in e.error:
                await logger.awarning(
                    f"pulling ollama model '{self.model}', this may take a while"
                )
                await client.pull(self.model)
            else:
                raise

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        # Note: deferred import to avoid import overhead
        import ollama

        response = await ollama.AsyncClient(host=self.base_url).embed(
            model=self.model,
            input=documents,
            options=self.options,
            keep_alive=self.keep_alive,
        )
        prompt_tokens = response.get("prompt_eval_count") or 0
        usage = Usage(prompt_tokens=prompt_tokens, total_tokens=prompt_tokens)
        return EmbeddingResponse(
            embeddings=[list(e) for e in response["embeddings"]], usage=usage
        )
