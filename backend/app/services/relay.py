############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# relay.py: Credit-gated relay between users and their machines
#
############################################################

"""Streaming relay service.

One exchange:

    credit check -> persist user message -> ensure machine running
    -> build context -> call endpoint (retry while booting)
    -> stream chunks -> persist answer -> commit usage + debit

Credits are only debited once the assistant message is persisted.
"""

import asyncio
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.ledger import CreditLedger
from backend.app.core.machines import MachineLifecycleController, MachineProviderError
from backend.app.core.metrics import ENDPOINT_NOT_READY, record_exchange
from backend.app.core.relay.endpoint import (
    ChunkCallback,
    MachineCompletion,
    MachineEndpointClient,
    MachineEndpointError,
    MachineNotReady,
)
from backend.app.db import crud
from backend.app.db.models import ConversationMessage, MessageRole
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


class ErrorCode(str, Enum):
    """Failure categories reported to the caller."""
    INSUFFICIENT_CREDITS = "insufficient-credits"
    MACHINE_ERROR = "machine-error"
    INTERNAL_ERROR = "internal-error"


class SendMessageResult(BaseModel):
    """Outcome of one exchange, serialized with camelCase keys."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message_id: Optional[int] = Field(default=None, alias="messageId")
    response: Optional[str] = None
    credits_used: int = Field(default=0, alias="creditsUsed")
    input_tokens: int = Field(default=0, alias="inputTokens")
    output_tokens: int = Field(default=0, alias="outputTokens")
    error: Optional[str] = None
    error_code: Optional[ErrorCode] = Field(default=None, alias="errorCode")

    @classmethod
    def failure(cls, error: str, error_code: ErrorCode) -> "SendMessageResult":
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> Dict[str, Any]:
        # Usage figures only describe a completed exchange
        exclude = None if self.success else {"credits_used", "input_tokens", "output_tokens"}
        return self.model_dump(by_alias=True, exclude_none=True, exclude=exclude, mode="json")



class StreamingRelay:
    """Relays user messages to their machine and meters the answers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        controller: MachineLifecycleController,
        ledger: CreditLedger,
        endpoint: MachineEndpointClient,
        settings: Settings,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.session_factory = session_factory
        self.controller = controller
        self.ledger = ledger
        self.endpoint = endpoint
        self.settings = settings
        self._sleep = sleep

    async def send_message(
        self,
        user_id: str,
        content: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> SendMessageResult:
        """
        Run one exchange for a user.

        Args:
            user_id: Opaque user id from the auth collaborator
            content: The user's message
            on_chunk: If given, the answer is streamed and each delta is
                passed here as it arrives; delivery is best-effort

        Returns:
            SendMessageResult; failures are values, never raised
        """
        try:
            result = await self._exchange(user_id, content, on_chunk)
        except Exception:
            logger.exception("relay_exchange_failed", user_id=user_id)
            result = SendMessageResult.failure(
                "Failed to process message", ErrorCode.INTERNAL_ERROR
            )

        if result.success:
            record_exchange(
                "success",
                credits=result.credits_used,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
            )
        else:
            record_exchange(result.error_code.value)
        return result

    async def _exchange(
        self,
        user_id: str,
        content: str,
        on_chunk: Optional[ChunkCallback],
    ) -> SendMessageResult:
        if not await self.ledger.has_enough(user_id):
            logger.info("relay_insufficient_credits", user_id=user_id)
            return SendMessageResult.failure(
                "Insufficient credits", ErrorCode.INSUFFICIENT_CREDITS
            )

        user_message = await self._persist_message(user_id, MessageRole.USER, content)

        try:
            record = await self.controller.start(user_id)
        except MachineProviderError as e:
            logger.error("relay_machine_start_failed", user_id=user_id, error=str(e))
            return SendMessageResult.failure(
                "Failed to start machine", ErrorCode.MACHINE_ERROR
            )
        if not record.remote_machine_id:
            logger.error("relay_machine_missing", user_id=user_id, status=record.status.value)
            return SendMessageResult.failure(
                "Failed to start machine", ErrorCode.MACHINE_ERROR
            )

        context = await self.build_context(user_id, user_message)

        deliver = self._best_effort(user_id, on_chunk) if on_chunk is not None else None
        try:
            completion = await self._complete_with_retry(
                user_id, record.remote_machine_id, context, deliver
            )
        except MachineEndpointError as e:
            logger.error(
                "relay_machine_request_failed",
                user_id=user_id,
                machine_id=record.remote_machine_id,
                error=str(e),
            )
            return SendMessageResult.failure(
                "Failed to process message", ErrorCode.MACHINE_ERROR
            )

        assistant_message = await self._persist_message(
            user_id, MessageRole.ASSISTANT, completion.content
        )
        usage = await self.ledger.commit_usage(
            user_id,
            assistant_message.id,
            completion.input_tokens,
            completion.output_tokens,
            completion.model,
        )
        if not usage.success:
            return SendMessageResult.failure(
                "Insufficient credits", ErrorCode.INSUFFICIENT_CREDITS
            )

        logger.info(
            "relay_exchange_completed",
            user_id=user_id,
            message_id=assistant_message.id,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            credits_used=usage.credits_used,
        )
        return SendMessageResult(
            success=True,
            message_id=assistant_message.id,
            response=completion.content,
            credits_used=usage.credits_used,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )

    async def _persist_message(
        self, user_id: str, role: MessageRole, content: str
    ) -> ConversationMessage:
        async with self.session_factory() as db:
            message = await crud.create_message(db, user_id, role, content)
            await db.commit()
            return message

    async def build_context(
        self, user_id: str, user_message: ConversationMessage
    ) -> List[Dict[str, str]]:
        """Recent history oldest-first, ending with the new user message."""
        async with self.session_factory() as db:
            previous = await crud.get_messages(
                db,
                user_id,
                limit=self.settings.context_message_limit,
                before_id=user_message.id,
            )
        context = [{"role": m.role.value, "content": m.content} for m in reversed(previous)]
        context.append({"role": user_message.role.value, "content": user_message.content})
        return context

    def _best_effort(self, user_id: str, on_chunk: ChunkCallback) -> ChunkCallback:
        async def deliver(text: str) -> None:
            try:
                await on_chunk(text)
            except Exception as e:
                logger.warning("relay_chunk_delivery_failed", user_id=user_id, error=str(e))

        return deliver

    async def _complete_with_retry(
        self,
        user_id: str,
        machine_id: str,
        context: List[Dict[str, str]],
        on_chunk: Optional[ChunkCallback],
    ) -> MachineCompletion:
        """Call the endpoint, retrying only while the agent is still booting.

        Raises:
            MachineNotReady: the ready window was exhausted
            MachineEndpointError: any other endpoint failure
        """
        max_attempts = self.settings.machine_ready_max_attempts
        delay = self.settings.machine_ready_retry_delay
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts):
            try:
                return await self.endpoint.complete(machine_id, context, on_chunk=on_chunk)
            except MachineNotReady as e:
                ENDPOINT_NOT_READY.inc()
                logger.info(
                    "relay_machine_not_ready",
                    user_id=user_id,
                    machine_id=machine_id,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                )
                last_error = e
                if attempt + 1 < max_attempts:
                    await self._sleep(delay)

        raise MachineNotReady(
            f"Machine not ready after {max_attempts} attempts"
        ) from last_error

    # Conversation history

    async def get_message_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[ConversationMessage]:
        """Newest-first page of the user's conversation."""
        async with self.session_factory() as db:
            return await crud.get_messages(db, user_id, limit=limit, offset=offset)

    async def clear_message_history(self, user_id: str) -> int:
        async with self.session_factory() as db:
            removed = await crud.delete_messages(db, user_id)
            await db.commit()
        logger.info("message_history_cleared", user_id=user_id, removed=removed)
        return removed
