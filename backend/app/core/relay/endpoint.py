############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# endpoint.py: Client for the agent's chat endpoint on a user machine
#
############################################################

"""Data-plane client for the agent running inside a user's machine.

The agent speaks the OpenAI chat-completions dialect. Requests go through
the provider's edge proxy and are pinned to one machine with the
``fly-force-instance-id`` header.
"""

import codecs
import json
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from backend.app.logging_config import get_logger

logger = get_logger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]

# The edge proxy answers 502 while the agent inside the machine is booting
NOT_READY_STATUS = 502

SSE_CONTENT_TYPE = "text/event-stream"


class MachineEndpointError(Exception):
    """The machine endpoint failed in a way that is not worth retrying."""


class MachineNotReady(MachineEndpointError):
    """The machine is up but its agent is not answering yet."""


class MachineCompletion(BaseModel):
    """Completed answer from the agent, parsed at the boundary."""

    content: str
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    model: str


def _usage_tokens(usage: Any) -> tuple:
    """Prompt and completion token counts; absent usage counts as zero.

    Raises:
        MachineEndpointError: a count is not a non-negative integer
    """
    if not isinstance(usage, dict):
        return 0, 0
    counts = []
    for key in ("prompt_tokens", "completion_tokens"):
        value = usage.get(key) or 0
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise MachineEndpointError(f"Machine reported invalid {key}: {value!r}")
        counts.append(int(value))
    return counts[0], counts[1]


def _completion(content: Any, input_tokens: int, output_tokens: int, model: Any) -> MachineCompletion:
    try:
        return MachineCompletion(
            content=content,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=model,
        )
    except ValidationError as e:
        raise MachineEndpointError(f"Machine response is malformed: {e}") from e


def parse_completion(data: Any, default_model: str) -> MachineCompletion:
    """
    Parse a non-streaming chat completion body.

    Raises:
        MachineNotReady: the agent answered with no output
        MachineEndpointError: the body is not a chat completion
    """
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        raise MachineEndpointError("Machine response has no choices")
    if not data["choices"]:
        raise MachineNotReady("Machine returned no output")

    choice = data["choices"][0]
    message = choice.get("message") if isinstance(choice, dict) else None
    if not isinstance(message, dict):
        raise MachineEndpointError("Machine response choice has no message")

    content = message.get("content")
    if not content:
        raise MachineNotReady("Machine returned no output")

    input_tokens, output_tokens = _usage_tokens(data.get("usage"))
    return _completion(content, input_tokens, output_tokens, data.get("model") or default_model)


def _delta_texts(event: Dict[str, Any]) -> List[str]:
    """Text fragments carried by one streaming event."""
    choices = event.get("choices") or []
    if not isinstance(choices, list):
        raise MachineEndpointError("Machine stream event is malformed")

    texts = []
    for choice in choices:
        if not isinstance(choice, dict):
            raise MachineEndpointError("Machine stream event is malformed")
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise MachineEndpointError("Machine stream event is malformed")
        text = delta.get("content")
        if text is not None and not isinstance(text, str):
            raise MachineEndpointError("Machine stream event is malformed")
        if text:
            texts.append(text)
    return texts


async def iter_sse_events(byte_stream: AsyncIterator[bytes]) -> AsyncIterator[Dict[str, Any]]:
    """Decode an OpenAI-style SSE byte stream into JSON events.

    Stops at ``data: [DONE]``. Comment lines and undecodable payloads are
    skipped. Multi-byte characters may be split across network chunks.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    async for chunk_bytes in byte_stream:
        buffer += decoder.decode(chunk_bytes)

        while "\n\n" in buffer or "\r\n\r\n" in buffer:
            if "\r\n\r\n" in buffer:
                message, buffer = buffer.split("\r\n\r\n", 1)
            else:
                message, buffer = buffer.split("\n\n", 1)

            for line in message.split("\n"):
                line = line.strip()
                if not line or line.startswith(":") or not line.startswith("data:"):
                    continue

                data_str = line[5:].strip()
                if data_str == "[DONE]":
                    return
                try:
                    event = json.loads(data_str)
                except json.JSONDecodeError:
                    continue
                if isinstance(event, dict):
                    yield event


class MachineEndpointClient:
    """
    Calls the chat endpoint of a specific user machine.

    One attempt per call; the relay owns the not-ready retry window.
    """

    def __init__(
        self,
        base_url: str,
        machine_secret: Optional[str],
        model: str,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._machine_secret = machine_secret
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout, connect=10.0),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self, machine_id: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "fly-force-instance-id": machine_id,
        }
        if self._machine_secret:
            headers["Authorization"] = f"Bearer {self._machine_secret}"
        return headers

    async def complete(
        self,
        machine_id: str,
        messages: List[Dict[str, str]],
        on_chunk: Optional[ChunkCallback] = None,
    ) -> MachineCompletion:
        """
        Send the conversation to the machine and return its answer.

        With ``on_chunk`` the request is streamed and every content delta is
        handed to the callback as it arrives.

        Raises:
            MachineNotReady: 502 from the edge proxy, or no output at all
            MachineEndpointError: any other failure
        """
        if on_chunk is None:
            return await self._complete_once(machine_id, messages)
        return await self._complete_stream(machine_id, messages, on_chunk)

    async def _complete_once(
        self, machine_id: str, messages: List[Dict[str, str]]
    ) -> MachineCompletion:
        client = await self._get_client()
        payload = {"model": self.model, "messages": messages, "stream": False}
        try:
            response = await client.post(
                "/v1/chat/completions", json=payload, headers=self._headers(machine_id)
            )
        except httpx.HTTPError as e:
            raise MachineEndpointError(f"Machine endpoint unreachable: {e}") from e

        self._check_status(machine_id, response.status_code, response.text)
        try:
            data = response.json()
        except ValueError as e:
            raise MachineEndpointError("Machine returned invalid JSON") from e
        return parse_completion(data, self.model)

    async def _complete_stream(
        self,
        machine_id: str,
        messages: List[Dict[str, str]],
        on_chunk: ChunkCallback,
    ) -> MachineCompletion:
        client = await self._get_client()
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

        parts: List[str] = []
        input_tokens = 0
        output_tokens = 0
        model = self.model

        try:
            async with client.stream(
                "POST",
                "/v1/chat/completions",
                json=payload,
                headers=self._headers(machine_id),
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    self._check_status(machine_id, response.status_code, body)

                # Agents without incremental output answer with one JSON body
                content_type = response.headers.get("content-type", "")
                if not content_type.startswith(SSE_CONTENT_TYPE):
                    await response.aread()
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise MachineEndpointError("Machine returned invalid JSON") from e
                    completion = parse_completion(data, self.model)
                    await on_chunk(completion.content)
                    return completion

                async for event in iter_sse_events(response.aiter_bytes()):
                    if event.get("model"):
                        model = event["model"]
                    if event.get("usage"):
                        input_tokens, output_tokens = _usage_tokens(event["usage"])
                    for text in _delta_texts(event):
                        parts.append(text)
                        await on_chunk(text)
        except httpx.HTTPError as e:
            if not parts:
                raise MachineEndpointError(f"Machine endpoint unreachable: {e}") from e
            raise MachineEndpointError(f"Machine stream interrupted: {e}") from e

        content = "".join(parts)
        if not content:
            raise MachineNotReady("Machine returned no output")

        return _completion(content, input_tokens, output_tokens, model)

    def _check_status(self, machine_id: str, status_code: int, body: str) -> None:
        if status_code < 400:
            return
        if status_code == NOT_READY_STATUS:
            logger.info("machine_endpoint_not_ready", machine_id=machine_id)
            raise MachineNotReady(f"Machine returned {status_code}")
        logger.warning(
            "machine_endpoint_error",
            machine_id=machine_id,
            status=status_code,
            body=body[:500],
        )
        raise MachineEndpointError(f"Machine returned {status_code}")
