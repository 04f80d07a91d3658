############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# conftest.py: Pytest configuration and shared test fixtures
#
############################################################

"""Pytest configuration and shared fixtures for SandboxRelay tests."""

import json
import os
import tempfile
from typing import Any, Dict, List, Optional, Tuple

# Settings are cached on first use; pin the test environment before any
# backend module is imported.
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "sandboxrelay-test.db"),
)
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("MACHINE_SECRET", "test-machine-secret")
os.environ.setdefault("ADMIN_USER_IDS", '["admin-user"]')
os.environ.setdefault("MACHINES_APP_NAME", "test-app")
os.environ.setdefault("MACHINES_API_TOKEN", "test-token")
os.environ.setdefault("MACHINE_ENDPOINT_URL", "http://agent.test")
os.environ.setdefault("PUBLIC_BASE_URL", "http://relay.test")
os.environ.setdefault("LOG_FORMAT", "console")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from backend.app.db.base import Base
from backend.app.db.session import create_session_factory
from backend.app.security.sessions import issue_session_token
from backend.app.services.container import build_services
from backend.app.settings import get_settings


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeMachinesApi:
    """In-memory stand-in for the provider's machines API.

    Machines move through transitional states on each GET, so callers have
    to poll just like against the real provider.
    """

    def __init__(self, app_name: str = "test-app"):
        self.prefix = f"/v1/apps/{app_name}/machines"
        self.machines: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, Optional[str]]] = []
        self.boot_polls = 1
        self._failures: List[Tuple[str, int, str]] = []
        self._transitions: Dict[str, List[Any]] = {}
        self._next_id = 0

    def fail_next(self, action: str, status_code: int, body: str = "") -> None:
        """Answer the next ``action`` call with an error."""
        self._failures.append((action, status_code, body))

    def add_machine(
        self,
        name: str,
        state: str = "stopped",
        env: Optional[Dict[str, str]] = None,
        image: str = "registry.test/agent:1",
    ) -> str:
        self._next_id += 1
        machine_id = f"m{self._next_id:04d}"
        self.machines[machine_id] = {
            "id": machine_id,
            "name": name,
            "state": state,
            "region": "iad",
            "instance_id": f"inst-{machine_id}",
            "private_ip": f"fdaa::{self._next_id}",
            "config": {"image": image, "env": dict(env or {})},
        }
        return machine_id

    def count(self, action: str) -> int:
        return sum(1 for a, _ in self.calls if a == action)

    def _transition(self, machine_id: str, via: str, target: str) -> None:
        self.machines[machine_id]["state"] = via
        self._transitions[machine_id] = [target, self.boot_polls]

    def _advance(self, machine_id: str) -> None:
        pending = self._transitions.get(machine_id)
        if not pending:
            return
        pending[1] -= 1
        if pending[1] <= 0:
            self.machines[machine_id]["state"] = pending[0]
            del self._transitions[machine_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        rest = request.url.path[len(self.prefix):].strip("/")
        parts = rest.split("/") if rest else []
        if not parts:
            action = "create" if request.method == "POST" else "list"
        elif len(parts) == 1:
            action = "get" if request.method == "GET" else "delete"
        else:
            action = parts[1]
        machine_id = parts[0] if parts else None
        self.calls.append((action, machine_id))

        for i, (failing_action, status_code, body) in enumerate(self._failures):
            if failing_action == action:
                del self._failures[i]
                return httpx.Response(status_code, text=body)

        if action == "list":
            return httpx.Response(200, json=list(self.machines.values()))

        if action == "create":
            payload = json.loads(request.content)
            if any(m["name"] == payload["name"] for m in self.machines.values()):
                return httpx.Response(
                    409,
                    json={"error": "machine name already taken", "code": "already_exists"},
                )
            new_id = self.add_machine(
                payload["name"],
                state="created",
                env=payload["config"].get("env"),
                image=payload["config"]["image"],
            )
            created = dict(self.machines[new_id])
            self._transition(new_id, "starting", "started")
            return httpx.Response(200, json=created)

        if machine_id not in self.machines:
            return httpx.Response(404, json={"error": "machine not found"})

        if action == "get":
            self._advance(machine_id)
            return httpx.Response(200, json=self.machines[machine_id])
        if action == "start":
            self._transition(machine_id, "starting", "started")
            return httpx.Response(200, json={"previous_state": "stopped"})
        if action == "stop":
            self._transition(machine_id, "stopping", "stopped")
            return httpx.Response(200, json={"ok": True})
        if action == "delete":
            assert request.url.params.get("force") == "true"
            del self.machines[machine_id]
            return httpx.Response(200, content=b"")
        return httpx.Response(404, json={"error": "unknown route"})


class FakeAgentEndpoint:
    """Scripted chat endpoint of a user machine.

    Queued items are answered first (an int is a bare status code, a
    Response is returned as is); afterwards every call succeeds.
    """

    def __init__(self):
        self.script: List[Any] = []
        self.requests: List[Dict[str, Any]] = []
        self.reply_parts = ["Hello", " from", " the agent"]
        self.usage = {"prompt_tokens": 1200, "completion_tokens": 400}
        self.model = "agent:main"

    def queue(self, *items: Any) -> None:
        self.script.extend(items)

    @property
    def reply(self) -> str:
        return "".join(self.reply_parts)

    def handler(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append({"headers": dict(request.headers), "json": payload})

        if self.script:
            item = self.script.pop(0)
            if isinstance(item, httpx.Response):
                return item
            return httpx.Response(item, text="upstream says no")

        if payload.get("stream"):
            return httpx.Response(
                200,
                content=self.sse_body(),
                headers={"content-type": "text/event-stream"},
            )
        return httpx.Response(
            200,
            json={
                "model": self.model,
                "choices": [{"index": 0, "message": {"role": "assistant", "content": self.reply}}],
                "usage": self.usage,
            },
        )

    def sse_body(self) -> bytes:
        events = [
            {"model": self.model, "choices": [{"index": 0, "delta": {"content": part}}]}
            for part in self.reply_parts
        ]
        events.append({"model": self.model, "choices": [], "usage": self.usage})
        body = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
        return body.encode()


@pytest.fixture
def settings():
    """Settings from the pinned test environment."""
    return get_settings()


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a fresh SQLite file with the full schema."""
    db_path = tmp_path / "sandboxrelay.db"
    sync_engine = create_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    yield create_session_factory(engine)
    engine.sync_engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def machines_api():
    return FakeMachinesApi()


@pytest.fixture
def agent():
    return FakeAgentEndpoint()


def make_services(settings, session_factory, machines_api, agent, clock):
    return build_services(
        settings,
        session_factory,
        machines_transport=httpx.MockTransport(machines_api.handler),
        endpoint_transport=httpx.MockTransport(agent.handler),
        sleep=clock.sleep,
        clock=clock,
    )


@pytest_asyncio.fixture
async def services(settings, session_factory, machines_api, agent, clock):
    """Fully wired services against the fakes."""
    app_services = make_services(settings, session_factory, machines_api, agent, clock)
    yield app_services
    await app_services.close()


@pytest.fixture
def app_services(settings, session_factory, machines_api, agent, clock):
    """Services for the HTTP app; the app lifespan closes them."""
    return make_services(settings, session_factory, machines_api, agent, clock)


@pytest.fixture
def client(app_services):
    """TestClient running the full app against the fakes."""
    from fastapi.testclient import TestClient

    from backend.app.main import create_app

    with TestClient(create_app(services=app_services)) as test_client:
        yield test_client


@pytest.fixture
def auth_headers():
    """Build Authorization headers carrying a signed session for a user."""

    def _headers(user_id: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {issue_session_token(user_id)}"}

    return _headers
