############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# messages_api.py: Conversation history and message relay endpoints
#
############################################################

"""Message endpoints: history, single-shot send and SSE streaming send."""

import asyncio
import json
from typing import Any, AsyncIterator, Dict, Optional, Set

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from backend.app.api.auth import get_current_user_id, get_services
from backend.app.logging_config import get_logger
from backend.app.services.container import AppServices
from backend.app.services.relay import ErrorCode, SendMessageResult
from backend.app.settings import get_settings

logger = get_logger(__name__)

router = APIRouter()

# HTTP status per relay failure
ERROR_STATUS = {
    ErrorCode.INSUFFICIENT_CREDITS: 402,
    ErrorCode.MACHINE_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Exchanges keep running after an SSE client goes away
_background_exchanges: Set[asyncio.Task] = set()


class SendMessageRequest(BaseModel):
    content: str = Field(..., min_length=1)

    @field_validator("content")
    @classmethod
    def validate_content(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message content required")
        if len(v) > get_settings().message_max_length:
            raise ValueError("Message too long")
        return v


def _sse(event: Dict[str, Any]) -> bytes:
    return f"data: {json.dumps(event)}\n\n".encode()


def result_status(result: SendMessageResult) -> int:
    if result.success:
        return 200
    return ERROR_STATUS.get(result.error_code, 500)


@router.get("")
async def get_messages(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    """Newest-first page of the conversation."""
    messages = await services.relay.get_message_history(user_id, limit=limit, offset=offset)
    return {
        "messages": [
            {
                "id": m.id,
                "role": m.role.value,
                "content": m.content,
                "createdAt": m.created_at.isoformat() if m.created_at else None,
            }
            for m in messages
        ]
    }


@router.delete("")
async def clear_messages(
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> Dict[str, Any]:
    await services.relay.clear_message_history(user_id)
    return {"cleared": True}


@router.post("")
async def send_message(
    body: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> JSONResponse:
    """Relay one message and wait for the whole answer."""
    result = await services.relay.send_message(user_id, body.content)
    return JSONResponse(status_code=result_status(result), content=result.to_dict())


@router.post("/stream")
async def stream_message(
    body: SendMessageRequest,
    user_id: str = Depends(get_current_user_id),
    services: AppServices = Depends(get_services),
) -> StreamingResponse:
    """
    Relay one message and stream the answer as Server-Sent Events.

    Events: stream_start, stream_chunk {content}, then stream_end with the
    usage summary or error {error, errorCode}.
    """
    queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()

    async def on_chunk(text: str) -> None:
        await queue.put({"type": "stream_chunk", "content": text})

    async def run_exchange() -> None:
        try:
            result = await services.relay.send_message(user_id, body.content, on_chunk=on_chunk)
            await queue.put(_final_event(result))
        finally:
            await queue.put(None)

    task = asyncio.create_task(run_exchange())
    _background_exchanges.add(task)
    task.add_done_callback(_background_exchanges.discard)

    async def event_stream() -> AsyncIterator[bytes]:
        yield _sse({"type": "stream_start"})
        while True:
            event = await queue.get()
            if event is None:
                break
            yield _sse(event)
        yield b"data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def _final_event(result: SendMessageResult) -> Dict[str, Any]:
    if result.success:
        return {
            "type": "stream_end",
            "messageId": result.message_id,
            "creditsUsed": result.credits_used,
            "inputTokens": result.input_tokens,
            "outputTokens": result.output_tokens,
        }
    return {
        "type": "error",
        "error": result.error,
        "errorCode": result.error_code.value,
    }
