############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# client.py: HTTP client for the machine provider's control plane
#
############################################################

"""Client for the VM orchestration provider (Fly Machines API).

Thin wrapper: one method per endpoint, no retries. Retry policy belongs to
the caller because "machine does not exist yet" and "machine is booting"
need different handling.
"""

import asyncio
import json
import time
from typing import Any, Awaitable, Callable, List, Optional

import httpx

from backend.app.core.machines.models import MachineSpec, RemoteMachine
from backend.app.logging_config import get_logger

logger = get_logger(__name__)

SleepFn = Callable[[float], Awaitable[None]]
ClockFn = Callable[[], float]

ALREADY_EXISTS_CODE = "already_exists"


class MachineProviderError(Exception):
    """Any failure talking to the machine provider."""


class RemoteApiError(MachineProviderError):
    """Provider answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str, method: str = "", path: str = ""):
        self.status_code = status_code
        self.body = body
        self.method = method
        self.path = path
        super().__init__(f"Machine provider returned {status_code} for {method} {path}".strip())

    @property
    def error_code(self) -> Optional[str]:
        """Structured error code from a JSON body, when the provider sends one."""
        try:
            data = json.loads(self.body)
        except (TypeError, ValueError):
            return None
        if isinstance(data, dict):
            code = data.get("code") or data.get("error_code")
            if isinstance(code, str):
                return code
        return None

    @property
    def is_already_exists(self) -> bool:
        """True for a create that collided with an existing machine name.

        Prefers the structured code. Older provider versions only put the
        marker in the free-text error, so a substring match is kept as a
        fallback; it is not assumed to be stable.
        """
        if self.status_code != 409:
            return False
        code = self.error_code
        if code is not None:
            return code == ALREADY_EXISTS_CODE
        return ALREADY_EXISTS_CODE in (self.body or "")

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status_code < 500


class MachineStateTimeout(MachineProviderError):
    """A machine did not reach the wanted state in time."""

    def __init__(self, machine_id: str, target_state: str, timeout: float):
        self.machine_id = machine_id
        self.target_state = target_state
        self.timeout = timeout
        super().__init__(
            f"Timeout waiting for machine {machine_id} to reach state {target_state}"
        )


class MachinesClient:
    """
    Async HTTP client for the provider's machines API.

    All calls are scoped to one app and authenticated with a bearer token.
    """

    def __init__(
        self,
        api_url: str,
        app_name: str,
        api_token: Optional[str],
        timeout: float = 30.0,
        poll_interval: float = 1.0,
        state_timeout: float = 60.0,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = f"{api_url.rstrip('/')}/apps/{app_name}"
        self.app_name = app_name
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.state_timeout = state_timeout
        self._api_token = api_token
        self._sleep = sleep
        self._clock = clock
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self._api_token:
                headers["Authorization"] = f"Bearer {self._api_token}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=payload, params=params)
        except httpx.HTTPError as e:
            logger.warning("machines_api_unreachable", method=method, path=path, error=str(e))
            raise MachineProviderError(f"Machine provider unreachable: {e}") from e

        if response.status_code >= 400:
            logger.error(
                "machines_api_error",
                method=method,
                path=path,
                status=response.status_code,
                body=response.text[:500],
            )
            raise RemoteApiError(response.status_code, response.text, method, path)

        # Start/stop/delete answer with an empty body
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise MachineProviderError(f"Invalid JSON from machine provider for {path}") from e

    async def create(self, spec: MachineSpec) -> RemoteMachine:
        """Create (and boot) a machine."""
        data = await self._request("POST", "/machines", spec.to_payload())
        machine = RemoteMachine.from_api(data)
        logger.info("machine_created", machine_id=machine.id, name=machine.name)
        return machine

    async def get(self, machine_id: str) -> RemoteMachine:
        data = await self._request("GET", f"/machines/{machine_id}")
        return RemoteMachine.from_api(data)

    async def start(self, machine_id: str) -> None:
        await self._request("POST", f"/machines/{machine_id}/start")

    async def stop(self, machine_id: str) -> None:
        await self._request("POST", f"/machines/{machine_id}/stop")

    async def delete(self, machine_id: str) -> None:
        """Destroy a machine, even if it is still running."""
        await self._request("DELETE", f"/machines/{machine_id}", params={"force": "true"})
        logger.info("machine_deleted", machine_id=machine_id)

    async def list(self) -> List[RemoteMachine]:
        data = await self._request("GET", "/machines")
        return [RemoteMachine.from_api(item) for item in data or []]

    async def wait_for_state(
        self,
        machine_id: str,
        target_state: str,
        timeout: Optional[float] = None,
    ) -> RemoteMachine:
        """
        Poll until the machine reports ``target_state``.

        Args:
            machine_id: Provider machine id
            target_state: State to wait for (e.g. "started")
            timeout: Seconds before giving up (defaults to state_timeout)

        Returns:
            The machine as last observed in the target state

        Raises:
            MachineStateTimeout: if the state is not reached in time
        """
        timeout = self.state_timeout if timeout is None else timeout
        started = self._clock()

        while self._clock() - started < timeout:
            machine = await self.get(machine_id)
            if machine.state == target_state:
                return machine
            await self._sleep(self.poll_interval)

        logger.warning(
            "machine_state_timeout",
            machine_id=machine_id,
            target_state=target_state,
            timeout=timeout,
        )
        raise MachineStateTimeout(machine_id, target_state, timeout)
