from __future__ import annotations

import time

import requests

from sidecar.services.llm.base import BaseLLMProvider, LLMProviderError


class OllamaProvider(BaseLLMProvider):
    """LLM provider for local Ollama models."""

    def __init__(self, base_url: str, model: str, timeout: int = 120) -> None:
        super().__init__(logger_name="sidecar.llm.ollama", timeout=timeout)
        self._base_url = base_url.rstrip("/")
        self._model = model

    @property
    def base_url(self) -> str:
        return self._base_url

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
    ) -> str:
        request_body = {
            "model": self._model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature},
        }
        if system_prompt:
            request_body["system"] = system_prompt

        start_time = time.perf_counter()
        try:
            response = requests.post(
                f"{self._base_url}/api/generate",
                json=request_body,
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError(f"Failed to reach Ollama at {self._base_url}") from exc

        if response.status_code == 404:
            raise LLMProviderError(f"Ollama model '{self._model}' is not pulled")
        if response.status_code != 200:
            raise LLMProviderError(f"Ollama error: {response.status_code}")

        data = response.json()
        self._logger.debug(
            "Ollama %s answered in %.2fs", self._model, time.perf_counter() - start_time
        )
        return data.get("response", "").strip()
