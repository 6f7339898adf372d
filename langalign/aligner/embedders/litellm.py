from typing import Any, Literal

from pydantic import BaseModel
from typing_extensions import override

from ..embeddings import (
    ApiKeyMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
    logger,
)


class LiteLLM(ApiKeyMixin, BaseModel, Embedder):
    """
    Embedder that uses LiteLLM, which reaches Gemini, Vertex AI, Cohere,
    Mistral, Bedrock and others through a single API.

    Attributes:
        implementation (Literal["litellm"]): The literal identifier for this
            implementation.
        model (str): The provider-prefixed model name, e.g.
            "gemini/text-embedding-004".
        api_key_name (str): The API key name.
        extra_options (dict): Additional litellm-specific options
    """

    implementation: Literal["litellm"]
    model: str = "gemini/text-embedding-004"
    api_key_name: str | None = None
    extra_options: dict[str, Any] = {}

    @override
    def _max_texts_per_batch(self) -> int:
        # Note: deferred import to avoid import overhead
        import litellm

        _, custom_llm_provider, _, _ = litellm.get_llm_provider(self.model)  # type: ignore
        match custom_llm_provider:
            case "gemini":
                return 100  # batchEmbedContents accepts at most 100 requests
            case "cohere" | "bedrock":
                return 96  # see https://docs.cohere.com/v1/reference/embed#request.body.texts
            case "openai" | "azure" | "huggingface":
                return 2048
            case "mistral" | "voyage":
                return 128
            case "vertex_ai":
                return 250
            case _:
                logger.warning(
                    f"unknown provider '{custom_llm_provider}', falling back to conservative max texts per batch"  # noqa: E501
                )
                return 5

    @override
    async def call_embed_api(self, documents: list[str]) -> EmbeddingResponse:
        # Note: deferred import to avoid import overhead
        import litellm

        # Without `suppress_debug_info`, LiteLLM writes its provider list to stdout
        litellm.suppress_debug_info = True
        api_key = None if self.api_key_name is None else self._api_key
        response = await litellm.aembedding(  # type: ignore
            model=self.model,
            input=documents,
            api_key=api_key,
            **self.extra_options,
        )
        usage = (
            Usage(
                prompt_tokens=response.usage.prompt_tokens,
                total_tokens=response.usage.total_tokens,
            )
            if response.usage is not None
            else Usage(prompt_tokens=0, total_tokens=0)
        )
        return EmbeddingResponse(
            embeddings=[d["embedding"] for d in response["data"]], usage=usage
        )
