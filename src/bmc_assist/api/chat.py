"""Assistant endpoint: streams canvas suggestions as server-sent events.

Pipeline per request: rate check (middleware) -> authentication
(dependency) -> body validation -> prompt -> provider stream relayed as SSE
-> usage dispatched off the response path.

Everything before ``StreamingResponse`` is returned may fail with a JSON
``{"error": ...}`` body. Once streaming starts, failures are reported
in-band as a ``{"text": ...}`` frame followed by the ``[DONE]`` sentinel.
"""

import json
import logging
import time
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from ..assistant.completion import CompletionProvider, CompletionStream
from ..assistant.prompts import build_system_prompt
from ..assistant.schemas import ChatRequest
from ..errors import BadRequest, Misconfigured, StreamOpenFailure, StreamRuntimeFailure
from ..observability.logging import set_log_context
from ..observability.metrics import (
    observe_stream_duration,
    record_chat_request,
    record_rejection,
)
from ..security.auth import AuthenticatedUser, get_current_user
from ..usage.recorder import UsageRecorder

logger = logging.getLogger(__name__)

router = APIRouter()

DONE_FRAME = "data: [DONE]\n\n"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: dict) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def get_completion_provider(request: Request) -> CompletionProvider:
    return request.app.state.completion_provider


def get_usage_recorder(request: Request) -> UsageRecorder:
    return request.app.state.usage_recorder


async def parse_chat_request(request: Request) -> ChatRequest:
    """Read and validate the JSON body, raising ``BadRequest`` on any defect."""
    try:
        body = await request.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        try:
            return ChatRequest.model_validate(body)
        except ValidationError as e:
            logger.info("Rejected chat request: %d validation error(s)", e.error_count())

    record_rejection("bad_request")
    raise BadRequest()


async def relay_completion(
    stream: CompletionStream,
    user: Optional[AuthenticatedUser],
    recorder: UsageRecorder,
) -> AsyncIterator[str]:
    """Forward provider fragments as SSE frames, always ending with ``[DONE]``.

    On exit (normal end, failure or client disconnect) the provider stream is
    closed and non-zero usage of an authenticated user is dispatched to the
    recorder without being awaited.
    """
    started = time.monotonic()
    outcome = "streamed"
    finished = False
    try:
        try:
            await stream.open()
            async for fragment in stream.fragments():
                yield sse_frame({"text": fragment})
        except StreamOpenFailure as e:
            outcome = "open_failed"
            logger.error("Failed to open completion stream: %r", e.__cause__)
            yield sse_frame({"text": StreamOpenFailure.message})
        except StreamRuntimeFailure as e:
            # Raised by open() as well when the deadline expires before the provider answers
            outcome = "stream_failed"
            logger.error("Completion stream failed: %s (%r)", e, e.__cause__)
            yield sse_frame({"text": StreamRuntimeFailure.message})

        yield DONE_FRAME
        finished = True
    finally:
        if not finished:
            outcome = "disconnected"
            logger.info("Client disconnected mid-stream; aborting provider stream")

        usage = stream.usage
        if user is not None and usage.total > 0:
            recorder.dispatch(user.id, usage.input_tokens, usage.output_tokens)

        record_chat_request(outcome)
        observe_stream_duration(time.monotonic() - started)
        logger.info(
            "Chat stream %s in %.2fs (tokens in=%d out=%d)",
            outcome, time.monotonic() - started, usage.input_tokens, usage.output_tokens,
        )
        await stream.aclose()


@router.post("/chat")
async def chat(
    request: Request,
    user: Optional[AuthenticatedUser] = Depends(get_current_user),
):
    """Stream an assistant answer for the block being edited."""
    settings = request.app.state.settings
    set_log_context(
        request_id=uuid.uuid4().hex[:12],
        client_key=getattr(request.state, "client_key", None),
    )

    chat_request = await parse_chat_request(request)

    provider = get_completion_provider(request)
    if not provider.configured:
        logger.error("Completion provider API key is not configured")
        record_rejection("misconfigured")
        raise Misconfigured()

    block = chat_request.block_context()
    system_prompt = build_system_prompt(
        block.block_id,
        block.block_title,
        block.current_text,
        block.all_blocks_data,
        chat_request.mode,
    )
    history = chat_request.recent_history(settings.history_max_turns, settings.history_max_chars)

    logger.debug(
        "Opening completion: block=%s mode=%s turns=%d",
        block.block_id, chat_request.mode, len(history),
    )
    stream = provider.stream(system_prompt, history)

    return StreamingResponse(
        relay_completion(stream, user, get_usage_recorder(request)),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
