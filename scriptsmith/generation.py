"""Client for the external text-generation service.

Every generation call in Scriptsmith (planning, outlines and chunks) goes
through ``GenerationClient.generate``, which builds a LangChain prompt chain,
applies the client's rate limiter and maps OpenAI failures onto the
retryable/fatal error split used by the retry policy.
"""

import json
import logging
import re
from typing import Any, Callable, Dict, Optional

import openai
from langchain_core.language_models import BaseChatModel
from langchain_core.prompts import ChatPromptTemplate
from langchain_openai import ChatOpenAI

from .config import GENERATION_ACQUIRE_TIMEOUT_SECONDS, LLM_MODEL_NAME, LLM_REQUEST_TIMEOUT_SECONDS
from .errors import FatalGenerationError, RetryableGenerationError
from .metrics import record_token_usage, track_generation_call
from .models import GenerationResult, GenerationUsage
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

# HTTP statuses that are worth retrying besides 5xx
_RETRYABLE_STATUS_CODES = (408, 409, 429)

LLMFactory = Callable[..., BaseChatModel]


def get_llm(
    temperature: float = 0.7,
    max_tokens: Optional[int] = None,
    timeout: Optional[float] = None,
    model: Optional[str] = None,
) -> ChatOpenAI:
    """Get a configured LLM instance.

    Args:
        temperature: The temperature setting for the LLM.
        max_tokens: Maximum tokens in the completion.
        timeout: Request timeout in seconds.
        model: Model name, defaults to the OPENAI_MODEL setting.

    Returns:
        Configured ChatOpenAI instance.

    Note:
        Client-side retries are disabled; failed calls are retried by
        requeueing the whole job.
    """
    return ChatOpenAI(
        model=model or LLM_MODEL_NAME,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
        max_retries=0,
    )


def extract_json(text: str) -> Any:
    """Parse a JSON document out of a model response.

    Accepts bare JSON, JSON inside a fenced code block, or JSON surrounded
    by prose (the outermost ``{...}`` span is used).

    Raises:
        ValueError: If no JSON document can be parsed.
    """
    candidate = text.strip()
    match = _FENCED_BLOCK.search(candidate)
    if match:
        candidate = match.group(1).strip()

    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        start = candidate.find("{")
        end = candidate.rfind("}")
        if start == -1 or end <= start:
            raise ValueError("No JSON object found in response")
        return json.loads(candidate[start : end + 1])


def _usage_from_response(response: Any) -> GenerationUsage:
    usage = getattr(response, "usage_metadata", None) or {}
    return GenerationUsage(
        input_tokens=usage.get("input_tokens", 0),
        output_tokens=usage.get("output_tokens", 0),
        total_tokens=usage.get("total_tokens", 0),
    )


class GenerationClient:
    """Calls the text-generation service through a LangChain chat model.

    Example:
        client = GenerationClient(rate_limiter=RateLimiter())
        result = client.generate(
            system="You are a scriptwriter.",
            human="Write an intro about {topic}.",
            variables={"topic": "tides"},
            temperature=0.7,
        )
    """

    def __init__(
        self,
        llm_factory: Optional[LLMFactory] = None,
        rate_limiter: Optional[RateLimiter] = None,
        model_name: str = LLM_MODEL_NAME,
    ):
        """Initialize the client.

        Args:
            llm_factory: Callable taking ``temperature``, ``max_tokens``,
                ``timeout`` and ``model`` keyword arguments and returning a
                chat model. Defaults to ``get_llm``.
            rate_limiter: Limiter owned by this client. A default limiter is
                created when omitted.
            model_name: Model to request.
        """
        self._llm_factory = llm_factory or get_llm
        self.rate_limiter = rate_limiter or RateLimiter()
        self.model_name = model_name

    def generate(
        self,
        system: str,
        human: str,
        variables: Optional[Dict[str, Any]] = None,
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        stage: str = "generation",
        model: Optional[str] = None,
    ) -> GenerationResult:
        """Run one prompt against the service.

        Args:
            system: System message template.
            human: Human message template.
            variables: Template variables.
            temperature: Sampling temperature.
            max_tokens: Completion token ceiling.
            timeout: Request timeout in seconds (defaults to
                LLM_REQUEST_TIMEOUT_SECONDS). Waiting for a rate limit slot
                never takes longer than this either.
            stage: Pipeline stage label for metrics (planning, outline, chunk).
            model: Model override for this call; defaults to the client's model.

        Returns:
            GenerationResult with the text, token usage and model name.

        Raises:
            RetryableGenerationError: On timeouts, connection failures, rate
                limits and server errors.
            FatalGenerationError: On rejected requests or empty output.
        """
        if timeout is None:
            timeout = LLM_REQUEST_TIMEOUT_SECONDS

        model = model or self.model_name

        prompt = ChatPromptTemplate.from_messages([("system", system), ("human", human)])
        llm = self._llm_factory(
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            model=model,
        )
        chain = prompt | llm

        acquire_timeout = min(GENERATION_ACQUIRE_TIMEOUT_SECONDS, timeout)
        with self.rate_limiter.slot(timeout=acquire_timeout), track_generation_call(stage):
            try:
                response = chain.invoke(variables or {})
            except openai.APITimeoutError as e:
                raise RetryableGenerationError(f"Generation request timed out after {timeout:.0f}s") from e
            except openai.APIConnectionError as e:
                raise RetryableGenerationError(f"Could not reach generation service: {e}") from e
            except openai.APIStatusError as e:
                if e.status_code >= 500 or e.status_code in _RETRYABLE_STATUS_CODES:
                    raise RetryableGenerationError(
                        f"Generation service returned {e.status_code}",
                        details={"status_code": e.status_code},
                    ) from e
                raise FatalGenerationError(
                    f"Generation request rejected with {e.status_code}",
                    details={"status_code": e.status_code},
                ) from e

        text = response.content if isinstance(response.content, str) else ""
        if not text.strip():
            raise FatalGenerationError("Generation service returned empty output")

        usage = _usage_from_response(response)
        record_token_usage(usage.input_tokens, usage.output_tokens)
        served_by = (getattr(response, "response_metadata", None) or {}).get("model_name") or model
        logger.debug(f"Generated {len(text)} characters ({usage.total_tokens} tokens) with {served_by}")

        return GenerationResult(text=text, usage=usage, model=served_by)
