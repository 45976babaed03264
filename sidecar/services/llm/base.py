from __future__ import annotations

import logging
from abc import ABC, abstractmethod


class LLMProviderError(RuntimeError):
    pass


class LLMProvider(ABC):
    @abstractmethod
    def prompt(self, prompt: str) -> str:
        """Send a raw prompt and return the response text."""
        raise NotImplementedError

    @abstractmethod
    def answer_question(self, question: str, context: str) -> str:
        raise NotImplementedError

    @abstractmethod
    def evaluate_mention(self, phrase: str, transcript: str) -> tuple[bool, str]:
        """Return whether ``phrase`` is discussed in ``transcript`` and a one-line briefing."""
        raise NotImplementedError


class BaseLLMProvider(LLMProvider):
    """Base implementation with shared prompts and response handling.

    Subclasses only need to implement _call_api() for their specific API client.
    """

    # Shared prompts - single source of truth
    PROMPTS = {
        "answer_question": (
            "Answer the question using only the meeting transcript excerpts below. "
            "Each line starts with its timestamp; cite timestamps when useful. "
            "If the excerpts do not contain the answer, say so.\n\n"
            "Excerpts:\n{context}\n\n"
            "Question: {question}"
        ),
        "answer_question_system": (
            "You are a concise meeting assistant. Answer in plain text."
        ),
        "evaluate_mention": (
            "A user asked to be alerted when the following note comes up in a live meeting.\n"
            "Note: {phrase}\n\n"
            "Recent transcript:\n{transcript}\n\n"
            "Is the note's subject being discussed? Reply on one line with either "
            "'YES: <one sentence briefing of what was said>' or 'NO'."
        ),
    }

    # Upper bound for mention checks during a live meeting
    MENTION_TIMEOUT = 30

    def __init__(self, logger_name: str = "sidecar.llm", timeout: int = 120) -> None:
        self._logger = logging.getLogger(logger_name)
        self._timeout = timeout

    @abstractmethod
    def _call_api(
        self,
        prompt: str,
        temperature: float = 0.2,
        timeout: int = 120,
        system_prompt: str | None = None,
    ) -> str:
        """Make an API call and return the raw response text.

        Args:
            prompt: The user prompt to send
            temperature: Sampling temperature (0.0-1.0)
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt

        Returns:
            The response text content
        """
        raise NotImplementedError

    def prompt(self, prompt: str) -> str:
        return self._call_api(prompt, temperature=0.2, timeout=self._timeout)

    def answer_question(self, question: str, context: str) -> str:
        prompt = self.PROMPTS["answer_question"].format(context=context, question=question)
        return self._call_api(
            prompt,
            temperature=0.2,
            timeout=self._timeout,
            system_prompt=self.PROMPTS["answer_question_system"],
        ).strip()

    def evaluate_mention(self, phrase: str, transcript: str) -> tuple[bool, str]:
        prompt = self.PROMPTS["evaluate_mention"].format(phrase=phrase, transcript=transcript)
        content = self._call_api(
            prompt, temperature=0.0, timeout=min(self._timeout, self.MENTION_TIMEOUT)
        ).strip()
        first_line = content.splitlines()[0].strip() if content else ""
        if not first_line.upper().startswith("YES"):
            return False, ""
        briefing = first_line[3:].lstrip(" :-").strip()
        return True, briefing
