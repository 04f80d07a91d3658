############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# container.py: Wiring of the lifetime-scoped service objects
#
############################################################

"""Service container built once per application lifetime."""

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.ledger import CreditLedger
from backend.app.core.machines import MachineLifecycleController, MachinesClient
from backend.app.core.relay import ConnectionRegistry, MachineEndpointClient
from backend.app.db.models import MachineStatus
from backend.app.services.relay import StreamingRelay
from backend.app.settings import Settings


@dataclass
class AppServices:
    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    machines_client: MachinesClient
    endpoint: MachineEndpointClient
    registry: ConnectionRegistry
    controller: MachineLifecycleController
    ledger: CreditLedger
    relay: StreamingRelay

    async def close(self) -> None:
        """Close sessions and HTTP clients."""
        await self.registry.close_all()
        await self.endpoint.close()
        await self.machines_client.close()


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    machines_transport: Optional[httpx.AsyncBaseTransport] = None,
    endpoint_transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> AppServices:
    """
    Build the service graph.

    Machine status changes are pushed to every open session of the user
    through the registry.
    """
    registry = ConnectionRegistry()

    async def broadcast_status(user_id: str, status: MachineStatus) -> None:
        await registry.broadcast(user_id, {"type": "status", "status": status.value})

    machines_client = MachinesClient(
        api_url=settings.machines_api_url,
        app_name=settings.machines_app_name,
        api_token=settings.machines_api_token,
        timeout=settings.machines_api_timeout,
        poll_interval=settings.machine_state_poll_interval,
        state_timeout=settings.machine_state_timeout,
        sleep=sleep,
        clock=clock,
        transport=machines_transport,
    )
    endpoint = MachineEndpointClient(
        base_url=settings.resolved_machine_endpoint_url,
        machine_secret=settings.machine_secret,
        model=settings.machine_model,
        timeout=settings.machine_request_timeout,
        transport=endpoint_transport,
    )
    controller = MachineLifecycleController(
        session_factory, machines_client, settings, on_status_change=broadcast_status
    )
    ledger = CreditLedger(session_factory, settings)
    relay = StreamingRelay(session_factory, controller, ledger, endpoint, settings, sleep=sleep)

    return AppServices(
        settings=settings,
        session_factory=session_factory,
        machines_client=machines_client,
        endpoint=endpoint,
        registry=registry,
        controller=controller,
        ledger=ledger,
        relay=relay,
    )
