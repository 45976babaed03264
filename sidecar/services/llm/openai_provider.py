from __future__ import annotations

import time

import requests

from sidecar.services.llm.base import BaseLLMProvider, LLMProviderError


class OpenAIProvider(BaseLLMProvider):
    """Chat-completions provider for OpenAI and compatible servers (LM Studio, vLLM)."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = "https://api.openai.com",
        timeout: int = 120,
    ) -> None:
        super().__init__(logger_name="sidecar.llm.openai", timeout=timeout)
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    @property
    def model(self) -> str:
        return self._model

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            return response.text[:200]
        error = payload.get("error") if isinstance(payload, dict) else None
        if isinstance(error, dict):
            return str(error.get("message", ""))[:200]
        return str(error or "")[:200]

    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
    ) -> str:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        start_time = time.perf_counter()
        try:
            response = requests.post(
                f"{self._base_url}/v1/chat/completions",
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"model": self._model, "messages": messages, "temperature": temperature},
                timeout=timeout,
            )
        except requests.RequestException as exc:
            raise LLMProviderError(f"Failed to reach {self._base_url}") from exc

        if response.status_code != 200:
            raise LLMProviderError(
                f"Chat completion failed ({response.status_code}): {self._error_detail(response)}"
            )

        choices = response.json().get("choices") or []
        if not choices:
            raise LLMProviderError("Chat completion returned no choices")
        self._logger.debug(
            "%s answered in %.2fs", self._model, time.perf_counter() - start_time
        )
        return str(choices[0].get("message", {}).get("content") or "").strip()
