import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Annotated, Any, AsyncIterator, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from chatgate.errors import INTERNAL_ERROR_MESSAGE, ErrorType
from chatgate.observability import STREAM_FRAMES
from chatgate.schemas import ErrorPayload, UsageRecord
from chatgate.services.tokens import UsageAccumulator

logger = structlog.get_logger()

DONE_MARKER = "[DONE]"

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


class DeltaFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["delta"] = "delta"
    content: str
    is_first: bool
    completion_tokens: int = 0  # running total including this fragment


class FinalFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["final"] = "final"
    usage: UsageRecord


class DoneFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["done"] = "done"


class ErrorFrame(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["error"] = "error"
    error: ErrorPayload


StreamFrame = Annotated[Union[DeltaFrame, FinalFrame, DoneFrame, ErrorFrame], Field(discriminator="kind")]


class StreamStateError(RuntimeError):
    pass


class StreamPhase(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    FINISHED = "finished"
    DONE = "done"
    ERRORED = "errored"


class FrameSequencer:
    """
    Tracks where a stream is and rejects frames that would break the order
    delta* final done (or delta* error).
    """

    def __init__(self):
        self.phase = StreamPhase.PENDING
        self.deltas = 0

    @property
    def terminated(self) -> bool:
        return self.phase in (StreamPhase.DONE, StreamPhase.ERRORED)

    def admit(self, frame: StreamFrame) -> StreamFrame:
        if self.terminated:
            raise StreamStateError(f"stream already {self.phase.value}, got {frame.kind}")

        if frame.kind == "delta":
            if self.phase not in (StreamPhase.PENDING, StreamPhase.STREAMING):
                raise StreamStateError("delta after final")
            if frame.is_first != (self.phase == StreamPhase.PENDING):
                raise StreamStateError("is_first must be set on the first delta only")
            self.phase = StreamPhase.STREAMING
            self.deltas += 1
        elif frame.kind == "final":
            if self.phase == StreamPhase.FINISHED:
                raise StreamStateError("duplicate final frame")
            self.phase = StreamPhase.FINISHED
        elif frame.kind == "done":
            if self.phase != StreamPhase.FINISHED:
                raise StreamStateError("done before final")
            self.phase = StreamPhase.DONE
        else:
            self.phase = StreamPhase.ERRORED

        STREAM_FRAMES.labels(frame.kind).inc()
        return frame


def split_fragments(text: str) -> List[str]:
    """
    Split on single spaces, keeping the separator on every fragment but the
    last so that "".join(fragments) == text.
    """
    words = text.split(" ")
    last = len(words) - 1
    return [w if i == last else f"{w} " for i, w in enumerate(words)]


def _sse_format(data: Dict[str, Any]) -> str:
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


class StreamingEncoder:
    """
    Turns an already-generated completion into an OpenAI-style event stream,
    one word-boundary fragment per chunk with a short pause in between.
    """

    def __init__(
        self,
        model: str,
        *,
        chunk_delay: float = 0.05,
        stream_id: Optional[str] = None,
        created: Optional[int] = None,
        server_state=None,
    ):
        self.model = model
        self.chunk_delay = chunk_delay
        self.stream_id = stream_id or f"chatcmpl-{uuid.uuid4().hex}"
        self.created = created or int(time.time())
        self.server_state = server_state
        self.sequencer = FrameSequencer()

    async def frames(self, text: str, usage: UsageAccumulator) -> AsyncIterator[StreamFrame]:
        fragments = split_fragments(text)
        for index, fragment in enumerate(fragments):
            running = usage.add_fragment(fragment)
            yield self.sequencer.admit(
                DeltaFrame(content=fragment, is_first=index == 0, completion_tokens=running)
            )
            if index < len(fragments) - 1 and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

        yield self.sequencer.admit(FinalFrame(usage=usage.finalize()))
        yield self.sequencer.admit(DoneFrame())

    def _chunk(self, delta: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
        return {
            "id": self.stream_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
        }

    def encode(self, frame: StreamFrame) -> str:
        if isinstance(frame, DeltaFrame):
            delta = {"role": "assistant", "content": frame.content} if frame.is_first else {"content": frame.content}
            return _sse_format(self._chunk(delta))
        if isinstance(frame, FinalFrame):
            data = self._chunk({}, finish_reason="stop")
            data["usage"] = {
                "prompt_tokens": frame.usage.prompt_tokens,
                "completion_tokens": frame.usage.completion_tokens,
                "total_tokens": frame.usage.total_tokens,
                "prompt_time": frame.usage.prompt_latency,
                "completion_time": frame.usage.completion_latency,
            }
            return _sse_format(data)
        if isinstance(frame, DoneFrame):
            return f"data: {DONE_MARKER}\n\n"
        if isinstance(frame, ErrorFrame):
            return _sse_format({"error": frame.error.model_dump()})
        raise TypeError(f"unknown frame {frame!r}")

    async def stream(self, text: str, usage: UsageAccumulator) -> AsyncIterator[str]:
        """
        Wire-level body. A failure after generation yields one error frame and
        ends the stream; a client disconnect cancels this generator.
        """
        try:
            async for frame in self.frames(text, usage):
                yield self.encode(frame)
        except Exception:
            logger.exception("Error during streaming", stream_id=self.stream_id)
            try:
                frame = self.sequencer.admit(
                    ErrorFrame(error=ErrorPayload(message=INTERNAL_ERROR_MESSAGE, type=ErrorType.INTERNAL_ERROR.value))
                )
                error_chunk = self.encode(frame)
            except Exception:
                logger.debug("error_frame_dropped", stream_id=self.stream_id)
                return
            yield error_chunk
            return

        if self.server_state is not None and self.server_state.draining:
            logger.info("stream_completed_while_draining", stream_id=self.stream_id)
        logger.debug("stream_completed", stream_id=self.stream_id, fragments=self.sequencer.deltas)
