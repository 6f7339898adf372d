from .litellm import LiteLLM
from .ollama import Ollama
from .openai import OpenAI

__all__ = ["LiteLLM", "Ollama", "OpenAI"]
