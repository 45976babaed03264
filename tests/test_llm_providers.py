"""Tests for the HTTP LLM providers and the provider factory, with requests mocked."""

import pytest
import requests

from sidecar.services.llm import LLMProviderError, OllamaProvider, OpenAIProvider, create_llm_provider
from sidecar.services.pipeline_config import LLMConfig


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class RecordingPost:
    """Stands in for ``requests.post``; replies from a list of responses or exceptions."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def post(monkeypatch):
    def install(*replies):
        fake = RecordingPost(*replies)
        monkeypatch.setattr(requests, "post", fake)
        return fake

    return install


def chat_reply(content):
    return FakeResponse(payload={"choices": [{"message": {"role": "assistant", "content": content}}]})


class TestOpenAIProvider:
    def test_answer_question_sends_system_and_user_messages(self, post):
        fake = post(chat_reply("  The budget was approved at 02:10.  "))
        provider = OpenAIProvider("sk-test", "gpt-4o-mini", "http://llm.local/", timeout=45)

        answer = provider.answer_question("Was the budget approved?", "[02:10] budget approved")

        assert answer == "The budget was approved at 02:10."
        url, kwargs = fake.calls[0]
        assert url == "http://llm.local/v1/chat/completions"
        assert kwargs["headers"] == {"Authorization": "Bearer sk-test"}
        assert kwargs["timeout"] == 45
        body = kwargs["json"]
        assert body["model"] == "gpt-4o-mini"
        assert [m["role"] for m in body["messages"]] == ["system", "user"]
        assert "[02:10] budget approved" in body["messages"][1]["content"]

    def test_raw_prompt_has_no_system_message(self, post):
        fake = post(chat_reply("ok"))
        assert OpenAIProvider("sk-test", "m").prompt("hello") == "ok"
        assert [m["role"] for m in fake.calls[0][1]["json"]["messages"]] == ["user"]

    def test_error_message_is_surfaced(self, post):
        post(FakeResponse(401, {"error": {"message": "Incorrect API key provided"}}))
        with pytest.raises(LLMProviderError, match="401.*Incorrect API key"):
            OpenAIProvider("bad", "m").prompt("hi")

    def test_non_json_error_body(self, post):
        post(FakeResponse(502, None, text="Bad Gateway"))
        with pytest.raises(LLMProviderError, match="Bad Gateway"):
            OpenAIProvider("sk-test", "m").prompt("hi")

    def test_connection_failure(self, post):
        post(requests.ConnectionError("refused"))
        with pytest.raises(LLMProviderError, match="Failed to reach"):
            OpenAIProvider("sk-test", "m", "http://nowhere").prompt("hi")

    def test_empty_choices(self, post):
        post(FakeResponse(payload={"choices": []}))
        with pytest.raises(LLMProviderError, match="no choices"):
            OpenAIProvider("sk-test", "m").prompt("hi")

    def test_mention_check_is_capped_and_parsed(self, post):
        fake = post(chat_reply("YES: the team agreed to move the launch to May\nextra"))
        provider = OpenAIProvider("sk-test", "m", timeout=120)

        mentioned, briefing = provider.evaluate_mention("launch date", "[01:00] we move launch to May")

        assert mentioned is True
        assert briefing == "the team agreed to move the launch to May"
        assert fake.calls[0][1]["timeout"] == OpenAIProvider.MENTION_TIMEOUT
        assert fake.calls[0][1]["json"]["temperature"] == 0.0


class TestOllamaProvider:
    def test_generate_request(self, post):
        fake = post(FakeResponse(payload={"response": " Hiring is on hold. \n"}))
        provider = OllamaProvider("http://localhost:11434/", "llama3.2", timeout=60)

        answer = provider.answer_question("What about hiring?", "[05:00] hiring paused")

        assert answer == "Hiring is on hold."
        url, kwargs = fake.calls[0]
        assert url == "http://localhost:11434/api/generate"
        assert kwargs["timeout"] == 60
        body = kwargs["json"]
        assert body["model"] == "llama3.2"
        assert body["stream"] is False
        assert body["system"] == OllamaProvider.PROMPTS["answer_question_system"]

    def test_no_mention(self, post):
        post(FakeResponse(payload={"response": "NO"}))
        provider = OllamaProvider("http://localhost:11434", "llama3.2")
        assert provider.evaluate_mention("pricing", "[00:05] hello everyone") == (False, "")

    def test_missing_model(self, post):
        post(FakeResponse(404, {"error": "model not found"}))
        with pytest.raises(LLMProviderError, match="not pulled"):
            OllamaProvider("http://localhost:11434", "mistral").prompt("hi")

    def test_server_error_and_unreachable(self, post):
        post(FakeResponse(500, {"error": "boom"}), requests.Timeout("timed out"))
        provider = OllamaProvider("http://localhost:11434", "llama3.2")
        with pytest.raises(LLMProviderError, match="Ollama error: 500"):
            provider.prompt("hi")
        with pytest.raises(LLMProviderError, match="Failed to reach Ollama"):
            provider.prompt("hi")


class TestProviderFactory:
    def test_ollama_is_the_default(self):
        provider = create_llm_provider(LLMConfig(ollama_url="http://gpu-box:11434", timeout=30))
        assert isinstance(provider, OllamaProvider)
        assert provider.base_url == "http://gpu-box:11434"

    def test_openai_needs_a_key(self):
        with pytest.raises(LLMProviderError, match="API key"):
            create_llm_provider(LLMConfig(provider="openai"))

    def test_openai_with_key(self, post):
        fake = post(chat_reply("fine"))
        provider = create_llm_provider(
            LLMConfig(provider="openai", openai_api_key="sk-test", openai_model="gpt-4o", timeout=15)
        )
        assert isinstance(provider, OpenAIProvider)
        assert provider.model == "gpt-4o"
        provider.prompt("hi")
        assert fake.calls[0][1]["timeout"] == 15

    def test_unknown_provider(self):
        with pytest.raises(LLMProviderError, match="Unknown LLM provider"):
            create_llm_provider(LLMConfig(provider="claude"))
