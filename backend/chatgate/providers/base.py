import time
from typing import Sequence, Tuple

from chatgate.schemas import ChatMessage


class Provider:
    """
    A generation capability: given the ordered conversation, produce text.
    Providers are not token-streaming; streaming is simulated on top of the
    complete result.
    """

    name = "base"

    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        raise NotImplementedError

    async def generate_with_timing(self, messages: Sequence[ChatMessage]) -> Tuple[str, float]:
        """Returns (text, seconds spent producing it)."""
        start = time.perf_counter()
        text = await self.generate(messages)
        return text, time.perf_counter() - start


class CapabilitySource:
    """Hands out a ready Provider or raises CapabilityUnavailable."""

    async def acquire(self) -> Provider:
        raise NotImplementedError
