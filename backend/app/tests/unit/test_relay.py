############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# test_relay.py: Unit tests for the credit-gated streaming relay
#
############################################################

"""Unit tests for StreamingRelay wired against the fake provider and agent."""

import httpx
import pytest
from sqlalchemy import func, select

from backend.app.db import crud
from backend.app.db.models import ConversationMessage, MessageRole, UsageLog
from backend.app.services import ErrorCode


async def count_rows(session_factory, model, user_id):
    async with session_factory() as db:
        result = await db.execute(
            select(func.count()).select_from(model).where(model.user_id == user_id)
        )
        return result.scalar_one()


def sse_response(*chunks: bytes) -> httpx.Response:
    """Event stream delivered in the given network chunks."""

    async def body():
        for chunk in chunks:
            yield chunk

    return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})



class TestExchange:

    @pytest.mark.asyncio
    async def test_successful_exchange(self, services, machines_api):
        await services.ledger.credit("u1", 10)

        result = await services.relay.send_message("u1", "Hello?")

        assert result.success
        assert result.response == "Hello from the agent"
        assert result.credits_used == 3
        assert result.input_tokens == 1200
        assert result.output_tokens == 400
        assert result.message_id is not None
        assert machines_api.count("create") == 1
        assert (await services.ledger.get_balance("u1")).balance == 7

        history = await services.relay.get_message_history("u1")
        assert [(m.role, m.content) for m in history] == [
            (MessageRole.ASSISTANT, "Hello from the agent"),
            (MessageRole.USER, "Hello?"),
        ]

    @pytest.mark.asyncio
    async def test_result_serializes_camel_case(self, services):
        await services.ledger.credit("u1", 10)
        result = await services.relay.send_message("u1", "Hello?")

        data = result.to_dict()
        assert data["success"] is True
        assert data["creditsUsed"] == 3
        assert data["inputTokens"] == 1200
        assert data["outputTokens"] == 400
        assert "messageId" in data
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_no_credits_short_circuits(self, services, machines_api, agent, session_factory):
        result = await services.relay.send_message("u1", "Hello?")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_CREDITS
        assert result.to_dict()["errorCode"] == "insufficient-credits"
        assert machines_api.calls == []
        assert agent.requests == []
        assert await count_rows(session_factory, ConversationMessage, "u1") == 0

    @pytest.mark.asyncio
    async def test_failure_serializes_without_usage(self, services):
        result = await services.relay.send_message("u1", "Hello?")

        assert result.to_dict() == {
            "success": False,
            "error": "Insufficient credits",
            "errorCode": "insufficient-credits",
        }


    @pytest.mark.asyncio
    async def test_machine_start_failure(self, services, machines_api, agent):
        await services.ledger.credit("u1", 10)
        machines_api.fail_next("create", 500, "capacity")

        result = await services.relay.send_message("u1", "Hello?")

        assert not result.success
        assert result.error_code == ErrorCode.MACHINE_ERROR
        assert agent.requests == []
        assert (await services.ledger.get_balance("u1")).balance == 10

    @pytest.mark.asyncio
    async def test_commit_refused_after_answer(self, services, session_factory):
        # One credit passes the gate but the exchange costs three
        await services.ledger.credit("u1", 1)

        result = await services.relay.send_message("u1", "Hello?")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_CREDITS
        assert (await services.ledger.get_balance("u1")).balance == 1
        assert await count_rows(session_factory, UsageLog, "u1") == 0
        assert await count_rows(session_factory, ConversationMessage, "u1") == 2


class TestNotReadyRetry:

    @pytest.mark.asyncio
    async def test_retries_while_booting(self, services, agent, clock):
        await services.ledger.credit("u1", 10)
        agent.queue(502, 502, 502)

        result = await services.relay.send_message("u1", "Hello?")

        assert result.success
        assert len(agent.requests) == 4
        assert clock.sleeps == [5.0, 5.0, 5.0]
        assert (await services.ledger.get_balance("u1")).balance == 7
        assert len(await services.ledger.history("u1")) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_ready_window(self, services, agent, clock, session_factory):
        await services.ledger.credit("u1", 10)
        agent.queue(*([502] * 12))

        result = await services.relay.send_message("u1", "Hello?")

        assert not result.success
        assert result.error_code == ErrorCode.MACHINE_ERROR
        assert len(agent.requests) == 12
        assert clock.sleeps == [5.0] * 11
        assert (await services.ledger.get_balance("u1")).balance == 10
        assert await count_rows(session_factory, UsageLog, "u1") == 0

        history = await services.relay.get_message_history("u1")
        assert [m.role for m in history] == [MessageRole.USER]

    @pytest.mark.asyncio
    async def test_empty_answer_counts_as_not_ready(self, services, agent, clock):
        await services.ledger.credit("u1", 10)
        agent.queue(httpx.Response(200, json={"choices": []}))

        result = await services.relay.send_message("u1", "Hello?")

        assert result.success
        assert clock.sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_server_error_not_retried(self, services, agent, clock):
        await services.ledger.credit("u1", 10)
        agent.queue(500)

        result = await services.relay.send_message("u1", "Hello?")

        assert not result.success
        assert result.error_code == ErrorCode.MACHINE_ERROR
        assert len(agent.requests) == 1
        assert clock.sleeps == []


class TestContext:

    @pytest.mark.asyncio
    async def test_context_is_recent_history_oldest_first(
        self, services, agent, session_factory, settings
    ):
        await services.ledger.credit("u1", 10)
        async with session_factory() as db:
            for i in range(25):
                role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
                await crud.create_message(db, "u1", role, f"message {i}")
            await crud.create_message(db, "someone-else", MessageRole.USER, "not yours")
            await db.commit()

        await services.relay.send_message("u1", "newest")

        sent = agent.requests[-1]["json"]["messages"]
        limit = settings.context_message_limit
        assert len(sent) == limit + 1
        assert [m["content"] for m in sent[:-1]] == [
            f"message {i}" for i in range(25 - limit, 25)
        ]
        assert sent[-1] == {"role": "user", "content": "newest"}
        assert sent[0]["role"] == ("user" if (25 - limit) % 2 == 0 else "assistant")

    @pytest.mark.asyncio
    async def test_first_message_has_only_itself(self, services, agent):
        await services.ledger.credit("u1", 10)
        await services.relay.send_message("u1", "first")
        assert agent.requests[0]["json"]["messages"] == [{"role": "user", "content": "first"}]


class TestStreaming:

    @pytest.mark.asyncio
    async def test_chunks_forwarded(self, services):
        await services.ledger.credit("u1", 10)
        chunks = []

        async def on_chunk(text):
            chunks.append(text)

        result = await services.relay.send_message("u1", "Hello?", on_chunk=on_chunk)

        assert result.success
        assert chunks == ["Hello", " from", " the agent"]
        assert result.response == "".join(chunks)
        assert result.credits_used == 3

    @pytest.mark.asyncio
    async def test_failing_consumer_does_not_abort_exchange(self, services):
        await services.ledger.credit("u1", 10)

        async def on_chunk(text):
            raise ConnectionError("tab closed")

        result = await services.relay.send_message("u1", "Hello?", on_chunk=on_chunk)

        assert result.success
        assert result.response == "Hello from the agent"
        assert (await services.ledger.get_balance("u1")).balance == 7

    @pytest.mark.asyncio
    async def test_json_answer_on_streaming_path(self, services, agent, clock):
        await services.ledger.credit("u1", 10)
        agent.queue(
            httpx.Response(
                200,
                json={
                    "model": "agent:main",
                    "choices": [{"message": {"role": "assistant", "content": "hello"}}],
                    "usage": {"prompt_tokens": 1200, "completion_tokens": 400},
                },
            )
        )
        chunks = []

        async def on_chunk(text):
            chunks.append(text)

        result = await services.relay.send_message("u1", "Hello?", on_chunk=on_chunk)

        assert result.success
        assert result.response == "hello"
        assert chunks == ["hello"]
        assert result.credits_used == 3
        assert len(agent.requests) == 1
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_multibyte_character_split_between_chunks(self, services, agent):
        await services.ledger.credit("u1", 10)
        raw = 'data: {"choices": [{"delta": {"content": "café ☃"}}]}\n\n'.encode("utf-8")
        cut = raw.index("é".encode("utf-8")) + 1
        agent.queue(sse_response(raw[:cut], raw[cut:], b"data: [DONE]\n\n"))
        chunks = []

        async def on_chunk(text):
            chunks.append(text)

        result = await services.relay.send_message("u1", "Hello?", on_chunk=on_chunk)

        assert result.success
        assert result.response == "café ☃"
        assert chunks == ["café ☃"]

    @pytest.mark.asyncio
    async def test_malformed_stream_event_is_machine_error(self, services, agent, clock):
        await services.ledger.credit("u1", 10)
        agent.queue(sse_response(b'data: {"choices": ["oops"]}\n\n', b"data: [DONE]\n\n"))

        async def on_chunk(text):
            pass

        result = await services.relay.send_message("u1", "Hello?", on_chunk=on_chunk)

        assert not result.success
        assert result.error_code == ErrorCode.MACHINE_ERROR
        assert len(agent.requests) == 1
        assert clock.sleeps == []
        assert (await services.ledger.get_balance("u1")).balance == 10



class TestHistory:

    @pytest.mark.asyncio
    async def test_clear_history(self, services):
        await services.ledger.credit("u1", 10)
        await services.relay.send_message("u1", "Hello?")

        removed = await services.relay.clear_message_history("u1")

        assert removed == 2
        assert await services.relay.get_message_history("u1") == []

    @pytest.mark.asyncio
    async def test_history_paging(self, services, session_factory):
        async with session_factory() as db:
            for i in range(5):
                await crud.create_message(db, "u1", MessageRole.USER, f"m{i}")
            await db.commit()

        page = await services.relay.get_message_history("u1", limit=2, offset=1)
        assert [m.content for m in page] == ["m3", "m2"]
