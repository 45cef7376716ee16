import time
import uuid

import structlog
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from chatgate.api.deps import CapabilitySourceDep, ServerStateDep, SettingsDep
from chatgate.core.config import Settings
from chatgate.errors import GatewayError, GenerationFailed, RequestValidationFailed, error_response
from chatgate.lifecycle import ServerState
from chatgate.middleware.cors import cors_headers
from chatgate.providers.base import CapabilitySource
from chatgate.schemas import CompletionRequest, CompletionResponse, OAChoice, OAMessage, OAUsage
from chatgate.services.streaming import STREAM_HEADERS, StreamingEncoder
from chatgate.services.tokens import UsageAccumulator

router = APIRouter(prefix="/chat", tags=["chat"])
logger = structlog.get_logger()


@router.options("/completions")
async def chat_completions_preflight(settings: SettingsDep):
    return Response(status_code=200, headers=cors_headers(settings.CORS_ALLOW_ORIGIN))


@router.post("/completions")
async def chat_completions(
    payload: CompletionRequest,
    request: Request,
    settings: SettingsDep,
    source: CapabilitySourceDep,
    server_state: ServerStateDep,
):
    request_id = getattr(request.state, "request_id", None)
    logger.info(
        "chat_completion_request",
        model=payload.model,
        messages=len(payload.messages),
        stream=payload.stream,
    )
    try:
        return await _handle_completion(payload, settings, source, server_state)
    except GatewayError as e:
        logger.warning("chat_completion_rejected", type=e.error_type.value, message=e.message, request_id=request_id)
        return error_response(e)
    except Exception:
        # full detail stays in the log, the caller gets a generic message
        logger.exception("Chat completion failed", request_id=request_id)
        return error_response(GenerationFailed())


async def _handle_completion(
    payload: CompletionRequest,
    settings: Settings,
    source: CapabilitySource,
    server_state: ServerState,
):
    if not payload.messages:
        raise RequestValidationFailed("At least one message is required")

    provider = await source.acquire()

    stream = payload.stream
    if stream and not settings.STREAMING_ENABLED:
        logger.info("stream_downgraded", reason="streaming disabled")
        stream = False

    if stream:
        content, prompt_latency = await provider.generate_with_timing(payload.messages)
        usage = UsageAccumulator.for_messages(payload.messages, prompt_latency)
        encoder = StreamingEncoder(
            model=payload.model,
            chunk_delay=settings.STREAM_CHUNK_DELAY_SECONDS,
            server_state=server_state,
        )
        return StreamingResponse(
            encoder.stream(content, usage),
            media_type="text/event-stream",
            headers=STREAM_HEADERS,
        )

    # Non-stream path
    content, prompt_latency = await provider.generate_with_timing(payload.messages)
    usage = UsageAccumulator.for_messages(payload.messages, prompt_latency)
    usage.add_fragment(content)
    record = usage.finalize()

    body = CompletionResponse(
        id=f"chatcmpl-{uuid.uuid4().hex}",
        created=int(time.time()),
        model=payload.model,
        choices=[OAChoice(index=0, message=OAMessage(role="assistant", content=content), finish_reason="stop")],
        usage=OAUsage(
            prompt_tokens=record.prompt_tokens,
            completion_tokens=record.completion_tokens,
            total_tokens=record.total_tokens,
        ),
    )
    logger.info(
        "chat_completion_generated",
        provider=provider.name,
        completion_tokens=record.completion_tokens,
        prompt_latency=round(record.prompt_latency, 4),
    )
    return JSONResponse(content=body.model_dump())
