############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# ws_chat.py: WebSocket chat session endpoint
#
############################################################

"""
WebSocket chat endpoint.

Protocol:
  Client sends JSON:
    { "type": "message", "content": "...", "stream": true }
    { "type": "status" }
    { "type": "ping" }

  Server sends JSON:
    { "type": "status", "status": "running" }
    { "type": "stream_start" }
    { "type": "stream_chunk", "content": "..." }
    { "type": "stream_end", "messageId": 1, "creditsUsed": 1, "inputTokens": 10, "outputTokens": 5 }
    { "type": "message", "content": "...", "messageId": 1, ... }   (stream: false)
    { "type": "error", "error": "...", "errorCode": "machine-error" }
    { "type": "pong" }

Authentication:
  Session token as query param (ws://host/ws?token=...) or the session
  cookie. Unauthenticated connections are closed with code 4001.
"""

import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from backend.app.api.auth import authenticate_websocket, get_ws_services
from backend.app.logging_config import bind_request_context, clear_request_context, get_logger
from backend.app.services.container import AppServices

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])

UNAUTHORIZED_CLOSE_CODE = 4001


class WebSocketSession:
    """Adapts a FastAPI WebSocket to the registry's session protocol."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, data: Dict[str, Any]) -> None:
        await self.websocket.send_json(data)

    async def close(self, code: int = 1000) -> None:
        await self.websocket.close(code=code)


def _error(message: str, error_code: Optional[str] = None) -> Dict[str, Any]:
    event: Dict[str, Any] = {"type": "error", "error": message}
    if error_code:
        event["errorCode"] = error_code
    return event


@router.websocket("/ws")
async def ws_chat(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
):
    """Duplex chat session for one browser tab."""
    await websocket.accept()

    user_id = authenticate_websocket(websocket, token)
    if not user_id:
        logger.warning("ws_unauthorized")
        await websocket.close(code=UNAUTHORIZED_CLOSE_CODE, reason="Unauthorized")
        return

    services = get_ws_services(websocket)
    session = WebSocketSession(websocket)
    await services.registry.register(user_id, session)
    bind_request_context(user_id=user_id)
    logger.info("ws_connected", user_id=user_id)

    try:
        await _send_status(services, session, user_id)

        while True:
            try:
                raw = await websocket.receive_text()
            except WebSocketDisconnect:
                logger.info("ws_disconnected", user_id=user_id)
                return

            try:
                msg = json.loads(raw)
            except json.JSONDecodeError:
                await services.registry.send(session, _error("Invalid JSON"))
                continue
            if not isinstance(msg, dict):
                await services.registry.send(session, _error("Invalid message"))
                continue

            msg_type = msg.get("type", "")

            if msg_type == "ping":
                await services.registry.send(session, {"type": "pong"})
            elif msg_type == "status":
                await _send_status(services, session, user_id)
            elif msg_type == "message":
                await _handle_message(services, session, user_id, msg)
            else:
                await services.registry.send(session, _error(f"Unknown message type: {msg_type}"))
    finally:
        await services.registry.unregister(user_id, session)
        clear_request_context()


async def _send_status(services: AppServices, session: WebSocketSession, user_id: str) -> None:
    try:
        info = await services.controller.status(user_id)
    except Exception:
        logger.exception("ws_status_failed", user_id=user_id)
        await services.registry.send(session, _error("Failed to get machine status", "internal-error"))
        return
    await services.registry.send(session, {"type": "status", "status": info.status.value})


async def _handle_message(
    services: AppServices,
    session: WebSocketSession,
    user_id: str,
    msg: Dict[str, Any],
) -> None:
    content = msg.get("content")
    if not isinstance(content, str) or not content.strip():
        await services.registry.send(session, _error("Message content required"))
        return
    if len(content) > services.settings.message_max_length:
        await services.registry.send(session, _error("Message too long"))
        return

    stream = msg.get("stream", True) is not False

    if not stream:
        result = await services.relay.send_message(user_id, content)
        if result.success:
            await services.registry.send(
                session,
                {
                    "type": "message",
                    "content": result.response,
                    "messageId": result.message_id,
                    "creditsUsed": result.credits_used,
                    "inputTokens": result.input_tokens,
                    "outputTokens": result.output_tokens,
                },
            )
        else:
            await services.registry.send(session, _error(result.error, result.error_code.value))
        return

    async def on_chunk(text: str) -> None:
        await services.registry.send(session, {"type": "stream_chunk", "content": text})

    await services.registry.send(session, {"type": "stream_start"})
    result = await services.relay.send_message(user_id, content, on_chunk=on_chunk)
    if result.success:
        await services.registry.send(
            session,
            {
                "type": "stream_end",
                "messageId": result.message_id,
                "creditsUsed": result.credits_used,
                "inputTokens": result.input_tokens,
                "outputTokens": result.output_tokens,
            },
        )
    else:
        await services.registry.send(session, _error(result.error, result.error_code.value))
