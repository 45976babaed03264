from sidecar.services.llm.base import BaseLLMProvider, LLMProvider, LLMProviderError
from sidecar.services.llm.ollama_provider import OllamaProvider
from sidecar.services.llm.openai_provider import OpenAIProvider
from sidecar.services.pipeline_config import LLMConfig


def create_llm_provider(config: LLMConfig) -> LLMProvider:
    if config.provider == "ollama":
        return OllamaProvider(config.ollama_url, config.ollama_model, timeout=config.timeout)
    if config.provider == "openai":
        if not config.openai_api_key:
            raise LLMProviderError("OpenAI provider selected but no API key configured")
        return OpenAIProvider(
            config.openai_api_key,
            config.openai_model,
            config.openai_base_url,
            timeout=config.timeout,
        )
    raise LLMProviderError(f"Unknown LLM provider '{config.provider}'")


__all__ = [
    "BaseLLMProvider",
    "LLMProvider",
    "LLMProviderError",
    "OllamaProvider",
    "OpenAIProvider",
    "create_llm_provider",
]
