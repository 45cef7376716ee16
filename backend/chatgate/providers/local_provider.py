from typing import Callable, List, Sequence

from starlette.concurrency import run_in_threadpool

from chatgate.providers.base import Provider
from chatgate.schemas import ChatMessage

GenerateFn = Callable[[List[dict], str], str]


def echo_model(messages: List[dict], instructions: str) -> str:
    """Deterministic stand-in model: answers with the latest user turn."""
    for m in reversed(messages):
        if m["role"] == "user" and m["content"].strip():
            return f"You said: {m['content'].strip()}"
    return "How can I help you today?"


class LocalProvider(Provider):
    """
    Runs an in-process, blocking generate function on the threadpool so the
    event loop keeps serving other connections meanwhile.
    """

    name = "local"

    def __init__(self, generate_fn: GenerateFn = echo_model, instructions: str = ""):
        self._generate_fn = generate_fn
        self.instructions = instructions

    def _to_plain_messages(self, messages: Sequence[ChatMessage]) -> List[dict]:
        return [{"role": m.role, "content": m.content} for m in messages]

    async def generate(self, messages: Sequence[ChatMessage]) -> str:
        return await run_in_threadpool(self._generate_fn, self._to_plain_messages(messages), self.instructions)
