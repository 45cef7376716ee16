"""Tests for the event-stream encoder and frame ordering."""

import asyncio
import json

import httpx
import pytest

from chatgate.schemas import ChatMessage, ErrorPayload, UsageRecord
from chatgate.services.streaming import (
    DONE_MARKER,
    DeltaFrame,
    DoneFrame,
    ErrorFrame,
    FinalFrame,
    FrameSequencer,
    StreamingEncoder,
    StreamPhase,
    StreamStateError,
    split_fragments,
)
from chatgate.services.tokens import UsageAccumulator, estimate_message_tokens, estimate_tokens
from chatgate.tests.utils.server import PAYLOAD, completions_url, make_manager
from chatgate.tests.utils.sse import parse_sse

MESSAGES = [ChatMessage(role="user", content="Tell me something")]
TEXT = "The capital of France is Paris."


async def collect(agen):
    return [item async for item in agen]


def make_encoder(**kwargs) -> StreamingEncoder:
    kwargs.setdefault("chunk_delay", 0.0)
    return StreamingEncoder("test-model", stream_id="chatcmpl-test", created=1699000000, **kwargs)


class TestSplitFragments:
    def test_reassembles_byte_for_byte(self):
        for text in [TEXT, "one", "", "double  space", " leading", "trailing ", "multi\nline text"]:
            assert "".join(split_fragments(text)) == text

    def test_trailing_space_on_all_but_last(self):
        assert split_fragments("a b c") == ["a ", "b ", "c"]

    def test_empty_text_is_one_empty_fragment(self):
        assert split_fragments("") == [""]


class TestFrameSequencer:
    def test_happy_path(self):
        seq = FrameSequencer()
        seq.admit(DeltaFrame(content="a ", is_first=True))
        seq.admit(DeltaFrame(content="b", is_first=False))
        seq.admit(FinalFrame(usage=UsageRecord(prompt_tokens=1, completion_tokens=2)))
        seq.admit(DoneFrame())
        assert seq.phase == StreamPhase.DONE
        assert seq.terminated

    def test_delta_after_final_rejected(self):
        seq = FrameSequencer()
        seq.admit(DeltaFrame(content="a", is_first=True))
        seq.admit(FinalFrame(usage=UsageRecord(prompt_tokens=1, completion_tokens=1)))
        with pytest.raises(StreamStateError):
            seq.admit(DeltaFrame(content="b", is_first=False))

    def test_first_flag_enforced(self):
        seq = FrameSequencer()
        with pytest.raises(StreamStateError):
            seq.admit(DeltaFrame(content="a", is_first=False))
        seq.admit(DeltaFrame(content="a", is_first=True))
        with pytest.raises(StreamStateError):
            seq.admit(DeltaFrame(content="b", is_first=True))

    def test_done_requires_final(self):
        seq = FrameSequencer()
        seq.admit(DeltaFrame(content="a", is_first=True))
        with pytest.raises(StreamStateError):
            seq.admit(DoneFrame())

    def test_nothing_after_error(self):
        seq = FrameSequencer()
        seq.admit(ErrorFrame(error=ErrorPayload(message="x", type="internal_error")))
        with pytest.raises(StreamStateError):
            seq.admit(DeltaFrame(content="a", is_first=True))


class TestFrames:
    @pytest.mark.asyncio
    async def test_frame_order_and_flags(self):
        encoder = make_encoder()
        usage = UsageAccumulator.for_messages(MESSAGES, prompt_latency=0.1)
        frames = await collect(encoder.frames(TEXT, usage))

        kinds = [f.kind for f in frames]
        assert kinds == ["delta"] * len(split_fragments(TEXT)) + ["final", "done"]

        deltas = [f for f in frames if f.kind == "delta"]
        assert [d.is_first for d in deltas] == [True] + [False] * (len(deltas) - 1)
        assert "".join(d.content for d in deltas) == TEXT

    @pytest.mark.asyncio
    async def test_running_token_count_and_usage(self):
        encoder = make_encoder()
        usage = UsageAccumulator.for_messages(MESSAGES, prompt_latency=0.1)
        frames = await collect(encoder.frames(TEXT, usage))

        deltas = [f for f in frames if f.kind == "delta"]
        running = 0
        for d in deltas:
            running += estimate_tokens(d.content)
            assert d.completion_tokens == running

        final = frames[-2]
        assert final.usage.completion_tokens == running
        assert final.usage.prompt_tokens == estimate_message_tokens(MESSAGES)
        assert final.usage.prompt_latency == 0.1
        assert final.usage.completion_latency >= 0

    @pytest.mark.asyncio
    async def test_delay_is_applied_between_fragments(self, monkeypatch):
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        monkeypatch.setattr("chatgate.services.streaming.asyncio.sleep", fake_sleep)
        encoder = make_encoder(chunk_delay=0.05)
        await collect(encoder.frames("a b c", UsageAccumulator(prompt_tokens=1)))
        assert sleeps == [0.05, 0.05]


class TestWireFormat:
    @pytest.mark.asyncio
    async def test_stream_body(self):
        encoder = make_encoder()
        body = "".join(await collect(encoder.stream("Hi there", UsageAccumulator.for_messages(MESSAGES))))

        assert body.endswith(f"data: {DONE_MARKER}\n\n")
        payloads = parse_sse(body)
        assert payloads[-1] == DONE_MARKER

        first = json.loads(payloads[0])
        assert first["id"] == "chatcmpl-test"
        assert first["object"] == "chat.completion.chunk"
        assert first["model"] == "test-model"
        assert first["created"] == 1699000000
        assert first["choices"][0]["delta"] == {"role": "assistant", "content": "Hi "}
        assert first["choices"][0]["finish_reason"] is None

        second = json.loads(payloads[1])
        assert second["choices"][0]["delta"] == {"content": "there"}

        final = json.loads(payloads[2])
        assert final["choices"][0]["delta"] == {}
        assert final["choices"][0]["finish_reason"] == "stop"
        assert set(final["usage"]) == {
            "prompt_tokens",
            "completion_tokens",
            "total_tokens",
            "prompt_time",
            "completion_time",
        }
        assert final["usage"]["total_tokens"] == final["usage"]["prompt_tokens"] + final["usage"]["completion_tokens"]

    @pytest.mark.asyncio
    async def test_non_ascii_is_kept_verbatim(self):
        encoder = make_encoder()
        body = "".join(await collect(encoder.stream("héllo wörld", UsageAccumulator(prompt_tokens=1))))
        assert "héllo " in body

    @pytest.mark.asyncio
    async def test_failure_mid_stream_emits_error_frame_and_stops(self):
        encoder = make_encoder()
        original = encoder.encode

        def flaky(frame):
            if frame.kind == "delta" and not frame.is_first:
                raise ValueError("disk on fire")
            return original(frame)

        encoder.encode = flaky
        payloads = parse_sse("".join(await collect(encoder.stream("one two three", UsageAccumulator(prompt_tokens=1)))))

        assert len(payloads) == 2
        assert json.loads(payloads[0])["choices"][0]["delta"]["content"] == "one "
        error = json.loads(payloads[1])
        assert error == {"error": {"message": "Internal server error occurred", "type": "internal_error"}}
        assert DONE_MARKER not in payloads
        assert encoder.sequencer.phase == StreamPhase.ERRORED

    @pytest.mark.asyncio
    async def test_error_frame_failure_is_swallowed(self):
        encoder = make_encoder()
        original = encoder.encode

        def broken(frame):
            if frame.kind == "delta" and frame.is_first:
                return original(frame)
            raise ValueError("encoder gone")

        encoder.encode = broken
        chunks = await collect(encoder.stream("one two", UsageAccumulator(prompt_tokens=1)))
        assert len(chunks) == 1


class TestDrainingAwareness:
    @pytest.mark.asyncio
    async def test_stream_completes_while_draining(self):
        class Draining:
            draining = True

        encoder = make_encoder(server_state=Draining())
        payloads = parse_sse("".join(await collect(encoder.stream("a b", UsageAccumulator(prompt_tokens=1)))))
        assert payloads[-1] == DONE_MARKER


class TestClientDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_stops_the_encoder(self, monkeypatch):
        admitted = []
        admit = FrameSequencer.admit

        def counting_admit(self, frame):
            admitted.append(frame.kind)
            return admit(self, frame)

        monkeypatch.setattr(FrameSequencer, "admit", counting_admit)

        manager = make_manager(text=" ".join(f"word{i}" for i in range(60)), delay=0.05)
        task = asyncio.create_task(manager.serve())
        await asyncio.wait_for(manager.wait_listening(), timeout=10)
        try:
            async with httpx.AsyncClient(timeout=5, trust_env=False) as client:
                async with client.stream("POST", completions_url(manager), json=PAYLOAD) as response:
                    first = await anext(response.aiter_lines())
                    assert first.startswith("data: ")

            await asyncio.sleep(0.5)
            after_disconnect = len(admitted)
            await asyncio.sleep(1.0)

            assert len(admitted) == after_disconnect
            assert after_disconnect < 10
            assert "final" not in admitted
            assert "done" not in admitted
        finally:
            manager.request_shutdown()
            await asyncio.wait_for(task, timeout=10)
