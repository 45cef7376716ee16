import time
import unicodedata
from typing import Optional, Sequence

from chatgate.schemas import ChatMessage, UsageRecord

CHARS_PER_TOKEN = 4.0
TOKENS_PER_WORD_RATIO = 0.75


def estimate_tokens(text: str) -> int:
    """
    Rough token count: the larger of chars/4 and words/0.75, truncated.
    Taking the max errs on the side of over-counting usage.

    Characters are counted after NFC normalization, so a decomposed accent
    counts once. Multi-codepoint emoji (ZWJ sequences, flags) still count
    per code point.
    """
    if not text:
        return 0
    char_based = len(unicodedata.normalize("NFC", text)) / CHARS_PER_TOKEN
    word_based = len(text.split()) / TOKENS_PER_WORD_RATIO
    return int(max(char_based, word_based))


def estimate_message_tokens(messages: Sequence[ChatMessage]) -> int:
    return estimate_tokens(" ".join(m.content for m in messages))


class UsageAccumulator:
    """
    Collects token counts and timings for one request and produces a single
    UsageRecord. Completion latency is measured from the first fragment.
    """

    def __init__(self, prompt_tokens: int, prompt_latency: float = 0.0):
        self.prompt_tokens = prompt_tokens
        self.prompt_latency = max(0.0, prompt_latency)
        self.completion_tokens = 0
        self._first_fragment_at: Optional[float] = None
        self._record: Optional[UsageRecord] = None

    @classmethod
    def for_messages(cls, messages: Sequence[ChatMessage], prompt_latency: float = 0.0) -> "UsageAccumulator":
        return cls(estimate_message_tokens(messages), prompt_latency)

    def add_fragment(self, fragment: str) -> int:
        """Count a fragment of completion text; returns the running total."""
        if self._record is not None:
            raise RuntimeError("usage already finalized")
        if self._first_fragment_at is None:
            self._first_fragment_at = time.perf_counter()
        self.completion_tokens += estimate_tokens(fragment)
        return self.completion_tokens

    def finalize(self) -> UsageRecord:
        if self._record is None:
            elapsed = 0.0
            if self._first_fragment_at is not None:
                elapsed = time.perf_counter() - self._first_fragment_at
            self._record = UsageRecord(
                prompt_tokens=self.prompt_tokens,
                completion_tokens=self.completion_tokens,
                prompt_latency=self.prompt_latency,
                completion_latency=elapsed,
            )
        return self._record
