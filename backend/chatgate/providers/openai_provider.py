from typing import List, Sequence

import openai
from openai import AsyncOpenAI
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential_jitter

from chatgate.core.config import Settings
from chatgate.errors import CapabilityUnavailable
from chatgate.providers.base import Provider
from chatgate.schemas import ChatMessage

TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)

_breakers: dict[str, CircuitBreaker] = {}
_clients: dict[tuple, AsyncOpenAI] = {}


def get_breaker(settings: Settings) -> CircuitBreaker:
    """One circuit breaker per upstream base URL."""
    key = settings.UPSTREAM_BASE_URL or ""
    if key not in _breakers:
        _breakers[key] = CircuitBreaker(
            fail_max=settings.CB_FAIL_MAX,
            reset_timeout=settings.CB_RESET_TIMEOUT,
            name=f"upstream:{key}",
        )
    return _breakers[key]


def get_client(settings: Settings) -> AsyncOpenAI:
    """One client, and so one connection pool, per upstream base URL and key."""
    # local OpenAI-compatible servers usually accept any key
    api_key = settings.UPSTREAM_API_KEY or "not-needed"
    key = (settings.UPSTREAM_BASE_URL or "", api_key, settings.UPSTREAM_TIMEOUT_SECONDS)
    if key not in _clients:
        _clients[key] = AsyncOpenAI(
            base_url=settings.UPSTREAM_BASE_URL,
            api_key=api_key,
            timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
            max_retries=0,
        )
    return _clients[key]


class OpenAIProvider(Provider):
    """Forwards generation to an upstream OpenAI-compatible server."""

    name = "openai"

    def __init__(self, settings: Settings, instructions: str = ""):
        self.settings = settings
        self.instructions = instructions
        self.model = settings.UPSTREAM_MODEL or settings.MODEL_ID
        self.breaker = get_breaker(settings)
        self._client = get_client(settings)

    def _to_openai_messages(self, messages: Sequence[ChatMessage]) -> List[dict]:
        out = [{"role": m.role, "content": m.content} for m in messages]
        if self.instructions and not any(m.role == "system" for m in messages):
            out.insert(0, {"role": "system", "content": self.instructions})
        return out

    @retry(
        wait=wait_exponential_jitter(multiplier=0.5, max=6),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        reraise=True,
    )
    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        try:
            with self.breaker.calling():
                resp = await self._client.chat.completions.create(
                    model=self.model,
                    messages=self._to_openai_messages(messages),
                    stream=False,
                )
        except CircuitBreakerError as e:
            raise CapabilityUnavailable("Upstream generation service is temporarily unavailable") from e
        if not resp.choices:
            return ""
        return resp.choices[0].message.content or ""
