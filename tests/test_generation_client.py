"""Tests for the generation client."""

import time

import httpx
import openai
import pytest
from langchain_core.language_models.fake_chat_models import FakeListChatModel
from langchain_core.runnables import RunnableLambda

from scriptsmith.errors import FatalGenerationError, RetryableGenerationError
from scriptsmith.generation import GenerationClient, extract_json, get_llm
from scriptsmith.rate_limit import RateLimiter

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(error_class, status_code):
    return error_class(
        f"HTTP {status_code}",
        response=httpx.Response(status_code, request=REQUEST),
        body=None,
    )


def raising_factory(error):
    """LLM factory whose model raises ``error`` when invoked."""

    def raise_error(_messages):
        raise error

    return lambda **kwargs: RunnableLambda(raise_error)


class TestExtractJson:
    """Tests for pulling JSON out of model responses."""

    def test_bare_json(self):
        """Test a plain JSON response."""
        assert extract_json('{"chunks": []}') == {"chunks": []}

    def test_fenced_json(self):
        """Test JSON inside a fenced block."""
        assert extract_json('Sure!\n```json\n{"a": 1}\n```\nDone.') == {"a": 1}

    def test_json_in_prose(self):
        """Test JSON surrounded by prose."""
        assert extract_json('The plan is {"a": {"b": 2}} as requested.') == {"a": {"b": 2}}

    def test_no_json(self):
        """Test prose without JSON."""
        with pytest.raises(ValueError):
            extract_json("I could not make a plan.")


class TestGetLlm:
    """Tests for the LLM factory."""

    def test_client_retries_disabled(self, monkeypatch):
        """Test that the chat model does not retry on its own."""
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        llm = get_llm(temperature=0.3, max_tokens=100, timeout=30, model="gpt-4o-mini")

        assert llm.max_retries == 0
        assert llm.temperature == 0.3
        assert llm.model_name == "gpt-4o-mini"


class TestGenerationClient:
    """Tests for GenerationClient.generate."""

    def test_generate_formats_prompt(self):
        """Test a successful call."""
        captured = {}

        def factory(**kwargs):
            captured.update(kwargs)
            return FakeListChatModel(responses=["The tide comes in."])

        client = GenerationClient(llm_factory=factory, model_name="gpt-test")

        result = client.generate(
            system="You write about {topic}.",
            human="Write about {topic}.",
            variables={"topic": "tides"},
            temperature=0.3,
            max_tokens=500,
            timeout=20,
            stage="chunk",
        )

        assert result.text == "The tide comes in."
        assert result.model == "gpt-test"
        assert captured == {"temperature": 0.3, "max_tokens": 500, "timeout": 20, "model": "gpt-test"}
        assert client.rate_limiter.status()["active"] == 0
        assert client.rate_limiter.status()["requests_in_window"] == 1

    def test_model_override(self):
        """Test that a per-call model replaces the client's default."""
        captured = {}

        def factory(**kwargs):
            captured.update(kwargs)
            return FakeListChatModel(responses=["The tide goes out."])

        client = GenerationClient(llm_factory=factory, model_name="gpt-test")

        result = client.generate(system="s", human="h", model="gpt-premium")

        assert captured["model"] == "gpt-premium"
        assert result.model == "gpt-premium"

    def test_slot_wait_bounded_by_timeout(self):
        """Test that a saturated limiter gives up within the call timeout."""
        limiter = RateLimiter(requests_per_minute=10, max_concurrency=1)
        assert limiter.acquire(timeout=0)
        client = GenerationClient(
            llm_factory=lambda **kwargs: FakeListChatModel(responses=["unused"]),
            rate_limiter=limiter,
        )

        started = time.monotonic()
        with pytest.raises(RetryableGenerationError, match="rate limit slot"):
            client.generate(system="s", human="h", timeout=0.05)

        assert time.monotonic() - started < 5
        limiter.release()

    def test_empty_output_is_fatal(self):
        """Test that a blank completion is rejected."""
        client = GenerationClient(llm_factory=lambda **kwargs: FakeListChatModel(responses=["   "]))

        with pytest.raises(FatalGenerationError):
            client.generate(system="s", human="h")

    @pytest.mark.parametrize(
        "error",
        [
            openai.APITimeoutError(request=REQUEST),
            openai.APIConnectionError(request=REQUEST),
            status_error(openai.RateLimitError, 429),
            status_error(openai.InternalServerError, 503),
        ],
    )
    def test_retryable_errors(self, error):
        """Test failures worth retrying."""
        client = GenerationClient(llm_factory=raising_factory(error))

        with pytest.raises(RetryableGenerationError):
            client.generate(system="s", human="h")

        assert client.rate_limiter.status()["active"] == 0

    @pytest.mark.parametrize(
        "error,status_code",
        [
            (status_error(openai.BadRequestError, 400), 400),
            (status_error(openai.AuthenticationError, 401), 401),
        ],
    )
    def test_fatal_errors(self, error, status_code):
        """Test failures that will not succeed on retry."""
        client = GenerationClient(llm_factory=raising_factory(error))

        with pytest.raises(FatalGenerationError) as exc_info:
            client.generate(system="s", human="h")

        assert exc_info.value.details["status_code"] == status_code
