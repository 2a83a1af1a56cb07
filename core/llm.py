"""
LABBUDDY INTELLIGENCE - LLM Interface for the Assistant Collaborators

Two call shapes over LiteLLM:
- generate(): structured output, validated against a msgspec Struct
- complete_text(): free-form text (assistant replies, descriptions)

Design:
- JSON Mode (Prompt) -> Output -> msgspec.decode
- msgspec.json.schema() supplies the ground-truth schema for the prompt
- Provider-agnostic via LiteLLM (the key is read from the environment)

Architecture:
    RecommendationService / AssistantService
        |
        v
    StructuredLLM.generate(prompt, schema=T) | complete_text(prompt)
        |
        v
    [RateLimitGuard - sliding window throttling]
        |
        v
    litellm.completion(...)
        |
        v
    [strip code fences] -> [msgspec.json.decode() - strict validation]
        |
        v
    Return T (tenacity retries on ResponseFormatError)

Every failure surfaces as a CollaboratorError subclass. Callers decide
the fallback; nothing here touches the graph.
"""
import json
import time
import logging
from collections import deque
from threading import Lock
from typing import Any, Dict, List, Optional, Type, TypeVar

import litellm
import msgspec
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=msgspec.Struct)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class CollaboratorError(Exception):
    """An external collaborator (LLM, persistence) failed."""
    pass


class LLMError(CollaboratorError):
    """Base exception for LLM failures."""
    pass


class ResponseFormatError(LLMError):
    """Raised when LLM output is not valid JSON for the required schema."""
    pass


class RateLimitError(LLMError):
    """Raised when rate limited by the provider."""
    pass


# =============================================================================
# RATE LIMIT GUARD (Proactive Throttling)
# =============================================================================

class RateLimitGuard:
    """
    Sliding-window throttle for requests and tokens per minute.

    Waits before a call that would exceed either budget, and honours a
    retry-after deadline set from a 429. Thread-safe: the Starlette routes
    run the blocking LLM calls in a worker thread.

    Usage:
        guard = RateLimitGuard(rpm_limit=50, tpm_limit=30000)
        guard.wait_if_needed(estimated_tokens=800)
        # ... make API call ...
        guard.record_usage(tokens=750)
    """

    def __init__(
        self,
        rpm_limit: int = 50,
        tpm_limit: int = 30000,
        safety_margin: float = 0.8,
    ):
        self.rpm_limit = max(1, int(rpm_limit * safety_margin))
        self.tpm_limit = max(1, int(tpm_limit * safety_margin))

        self._requests: deque = deque()     # request timestamps
        self._tokens: deque = deque()       # (timestamp, token_count)
        self._lock = Lock()
        self._retry_after_until: float = 0.0

    def _cleanup_old_entries(self, now: float) -> None:
        cutoff = now - 60.0
        while self._requests and self._requests[0] < cutoff:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] < cutoff:
            self._tokens.popleft()

    def _current_tpm(self) -> int:
        return sum(count for _, count in self._tokens)

    def _wait_seconds(self, now: float, estimated_tokens: int) -> float:
        if now < self._retry_after_until:
            return self._retry_after_until - now

        wait = 0.0
        if len(self._requests) >= self.rpm_limit:
            wait = max(wait, 60.0 - (now - self._requests[0]) + 0.1)

        projected = self._current_tpm() + estimated_tokens
        if projected >= self.tpm_limit and self._tokens:
            to_free = projected - self.tpm_limit + 1
            freed = 0
            wait_until = now
            for ts, count in self._tokens:
                freed += count
                wait_until = ts + 60.0
                if freed >= to_free:
                    break
            wait = max(wait, wait_until - now + 0.1)
        return wait

    def wait_if_needed(self, estimated_tokens: int = 1000) -> float:
        """
        Block until a call of estimated_tokens fits the budget.

        Returns:
            Seconds waited (0 if no wait was needed)
        """
        with self._lock:
            now = time.time()
            self._cleanup_old_entries(now)
            wait = self._wait_seconds(now, estimated_tokens)

        if wait > 0:
            logger.info(f"Rate limit: waiting {wait:.1f}s")
            time.sleep(wait)
        return max(wait, 0.0)

    def record_usage(self, tokens: int) -> None:
        """Record a completed request and its token usage."""
        with self._lock:
            now = time.time()
            self._requests.append(now)
            self._tokens.append((now, tokens))

    def set_retry_after(self, seconds: float) -> None:
        """Set retry-after from a 429 response."""
        with self._lock:
            self._retry_after_until = time.time() + seconds
        logger.warning(f"Rate limit hit, retry-after: {seconds}s")

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = time.time()
            self._cleanup_old_entries(now)
            return {
                "rpm_used": len(self._requests),
                "rpm_limit": self.rpm_limit,
                "tpm_used": self._current_tpm(),
                "tpm_limit": self.tpm_limit,
                "retry_after_remaining": max(0.0, self._retry_after_until - now),
            }


_rate_limit_guard: Optional[RateLimitGuard] = None
_rate_limit_lock = Lock()


def get_rate_limit_guard() -> RateLimitGuard:
    """Get or create the global rate limit guard (limits from settings)."""
    global _rate_limit_guard
    with _rate_limit_lock:
        if _rate_limit_guard is None:
            from infrastructure.config import get_settings
            settings = get_settings()
            _rate_limit_guard = RateLimitGuard(
                rpm_limit=settings.rate_limit_rpm,
                tpm_limit=settings.rate_limit_tpm,
            )
        return _rate_limit_guard


def reset_rate_limit_guard() -> None:
    """Reset the global rate limit guard (for testing)."""
    global _rate_limit_guard
    with _rate_limit_lock:
        _rate_limit_guard = None


# =============================================================================
# STRUCTURED LLM
# =============================================================================

class StructuredLLM:
    """
    A wrapper around LiteLLM for the assistant collaborators.

    Usage:
        llm = StructuredLLM(model="anthropic/claude-sonnet-4-20250514")

        result = llm.generate(
            system_prompt="You suggest nodes for a research mind map.",
            user_prompt="Suggest 3 nodes related to 'Transformers'",
            schema=RecommendationsResponse,
        )

        text = llm.complete_text(user_prompt="Describe ImageNet in 2 sentences.")
    """

    def __init__(
        self,
        model: str = "anthropic/claude-sonnet-4-20250514",
        temperature: float = 0.7,
        max_tokens: int = 1000,
    ):
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

        litellm.set_verbose = False

    def _get_schema_prompt(self, schema: Type[msgspec.Struct]) -> str:
        return json.dumps(msgspec.json.schema(schema), indent=2)

    def _build_system_prompt(self, base_prompt: str, schema: Type[msgspec.Struct]) -> str:
        schema_json = self._get_schema_prompt(schema)

        return f"""{base_prompt}

# OUTPUT CONTRACT
Respond with a single JSON object and nothing else.

Your output must strictly adhere to this JSON Schema:
```json
{schema_json}
```

RULES:
1. Output ONLY valid JSON - no markdown, no explanation, no preamble.
2. All required fields must be present.
3. Do not include any text before or after the JSON object.
"""

    @staticmethod
    def clean_response(content: str) -> str:
        """Strip a surrounding markdown code fence from a JSON reply."""
        content = (content or "").strip()

        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]

        if content.endswith("```"):
            content = content[:-3]

        return content.strip()

    def _estimate_tokens(self, *parts: str) -> int:
        """Rough input size for rate limiting (4 chars per token)."""
        return max(100, sum(len(p) for p in parts) // 4)

    def _complete(
        self,
        messages: List[Dict[str, str]],
        max_tokens: Optional[int],
        json_mode: bool,
    ) -> str:
        """
        Call the provider and return the reply text.

        Raises:
            RateLimitError: Provider returned 429
            LLMError: Any other provider or network failure
        """
        guard = get_rate_limit_guard()
        estimated = self._estimate_tokens(*(m["content"] for m in messages))
        guard.wait_if_needed(estimated)

        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": max_tokens or self.max_tokens,
            "drop_params": True,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        try:
            response = litellm.completion(**kwargs)
        except litellm.RateLimitError as e:
            retry_after = getattr(e, "retry_after", None)
            if retry_after:
                guard.set_retry_after(float(retry_after))
            raise RateLimitError(f"Rate limited: {e}") from e
        except Exception as e:
            raise LLMError(f"LLM call failed: {e}") from e

        usage = getattr(response, "usage", None)
        guard.record_usage(getattr(usage, "prompt_tokens", None) or estimated)

        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError) as e:
            raise LLMError(f"LLM returned no choices: {e}") from e
        return content or ""

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(ResponseFormatError),
        reraise=True,
    )
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: Type[T],
        max_tokens: Optional[int] = None,
    ) -> T:
        """
        Generate a structured response matching the provided schema.

        Args:
            system_prompt: Role, context and instructions
            user_prompt: The specific request
            schema: A msgspec.Struct subclass defining the expected output
            max_tokens: Override of the instance default

        Returns:
            An instance of the schema type

        Raises:
            ResponseFormatError: Output still invalid after 3 attempts
            RateLimitError: Rate limited by provider
            LLMError: The provider call failed
        """
        content = self._complete(
            [
                {"role": "system", "content": self._build_system_prompt(system_prompt, schema)},
                {"role": "user", "content": user_prompt},
            ],
            max_tokens=max_tokens,
            json_mode=True,
        )
        cleaned = self.clean_response(content)

        try:
            return msgspec.json.decode(cleaned.encode("utf-8"), type=schema)
        except msgspec.ValidationError as e:
            logger.warning(f"{schema.__name__} failed validation: {e}")
            raise ResponseFormatError(f"Schema validation failed: {e}") from e
        except msgspec.DecodeError as e:
            logger.warning(f"{schema.__name__} reply is not JSON: {e}")
            raise ResponseFormatError(f"JSON decode failed: {e}") from e

    def complete_text(
        self,
        user_prompt: str,
        system_prompt: Optional[str] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """
        Free-form completion.

        Raises:
            RateLimitError: Rate limited by provider
            LLMError: The provider call failed
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})
        return self._complete(messages, max_tokens=max_tokens, json_mode=False)


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_llm_instance: Optional[StructuredLLM] = None


def get_llm() -> StructuredLLM:
    """
    Get the global LLM instance.

    Model, temperature and token limit come from settings
    (LABBUDDY_LLM_MODEL, LABBUDDY_LLM_TEMPERATURE, LABBUDDY_LLM_MAX_TOKENS).
    LiteLLM requires the provider prefix (anthropic/, openai/, ...).
    """
    global _llm_instance
    if _llm_instance is None:
        from infrastructure.config import get_settings
        settings = get_settings()
        _llm_instance = StructuredLLM(
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )
    return _llm_instance


def set_llm(llm: Optional[StructuredLLM]) -> None:
    """
    Set the global LLM instance.

    Useful for testing with fake LLMs or different configurations.
    """
    global _llm_instance
    _llm_instance = llm


def reset_llm() -> None:
    """Reset the global LLM instance (forces re-initialization on next get_llm())."""
    global _llm_instance
    _llm_instance = None
