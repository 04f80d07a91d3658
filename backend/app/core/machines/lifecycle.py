############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# lifecycle.py: Per-user machine lifecycle controller
#
############################################################

"""Machine lifecycle controller.

Owns the user -> machine mapping and drives the state machine

    stopped -> starting -> running -> stopping -> stopped
                  |
                  v
                error (next start retries from here)

Every step uses its own short database session; no transaction is held
open across provider calls, which can take up to a minute.
"""

import asyncio
import hashlib
import weakref
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.machines.client import (
    MachineProviderError,
    MachinesClient,
    RemoteApiError,
)
from backend.app.core.machines.models import (
    MachineSpec,
    RemoteMachine,
    RemoteState,
    map_remote_state,
)
from backend.app.core.metrics import record_machine_operation
from backend.app.db import crud
from backend.app.db.models import MachineRecord, MachineStatus
from backend.app.logging_config import get_logger
from backend.app.settings import Settings

logger = get_logger(__name__)

StatusListener = Callable[[str, MachineStatus], Awaitable[None]]

# Statuses that only make sense while a remote machine id is known
_ACTIVE_STATUSES = (MachineStatus.STARTING, MachineStatus.RUNNING, MachineStatus.STOPPING)


@dataclass
class MachineView:
    """Reconciled local record plus the remote machine, if one exists."""

    record: MachineRecord
    remote: Optional[RemoteMachine]


@dataclass
class MachineStatusInfo:
    status: MachineStatus
    remote_machine_id: Optional[str]
    private_address: Optional[str]

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "machineId": self.remote_machine_id,
            "privateIp": self.private_address,
        }


class MachineAdoptionError(MachineProviderError):
    """A name conflict could not be resolved to a machine owned by the user."""


def machine_name_for(user_id: str, prefix: str) -> str:
    """Deterministic, collision-resistant machine name for a user."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]
    return f"{prefix}-{digest}"


class MachineLifecycleController:
    """Drive one user's machine between stopped and running."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: MachinesClient,
        settings: Settings,
        on_status_change: Optional[StatusListener] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.settings = settings
        self.on_status_change = on_status_change
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    def _is_busy(self, user_id: str) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()

    def build_spec(self, user_id: str) -> MachineSpec:
        """Creation request for a user's machine."""
        return MachineSpec(
            name=machine_name_for(user_id, self.settings.machine_name_prefix),
            image=self.settings.machine_image,
            env={
                "USER_ID": user_id,
                "BACKEND_URL": self.settings.public_base_url,
            },
            region=self.settings.machine_region,
            cpu_kind=self.settings.machine_cpu_kind,
            cpus=self.settings.machine_cpus,
            memory_mb=self.settings.machine_memory_mb,
            internal_port=self.settings.machine_internal_port,
        )

    # Persistence helpers

    async def _load_or_create(self, user_id: str) -> MachineRecord:
        async with self.session_factory() as db:
            record = await crud.get_machine_record(db, user_id)
            if record is not None:
                return record
            try:
                record = await crud.create_machine_record(db, user_id)
                await db.commit()
                return record
            except IntegrityError:
                # Lost a creation race; the winner's row is authoritative
                await db.rollback()
                record = await crud.get_machine_record(db, user_id)
                if record is None:
                    raise
                return record

    async def _persist(self, user_id: str, **values) -> MachineRecord:
        async with self.session_factory() as db:
            before = await crud.get_machine_record(db, user_id)
            previous_status = before.status if before is not None else None
            record = await crud.update_machine_record(db, user_id, **values)
            await db.commit()

        if record is not None and "status" in values and record.status != previous_status:
            logger.info(
                "machine_status_changed",
                user_id=user_id,
                previous=previous_status.value if previous_status else None,
                status=record.status.value,
                machine_id=record.remote_machine_id,
            )
            await self._notify(user_id, record.status)
        return record

    async def _notify(self, user_id: str, status: MachineStatus) -> None:
        if self.on_status_change is None:
            return
        try:
            await self.on_status_change(user_id, status)
        except Exception as e:
            logger.warning("machine_status_listener_failed", user_id=user_id, error=str(e))

    # Reconciliation

    async def ensure(self, user_id: str) -> MachineView:
        """
        Load the user's record and reconcile it with the provider.

        Side effects: creates a missing record, clears ids of machines the
        provider no longer knows, adopts the remote state, and heals records
        stuck mid-transition without a machine id. While a lifecycle
        operation holds the user's lock the view is read-only, so it cannot
        race the transition.
        """
        return await self._ensure(user_id, reconcile=not self._is_busy(user_id))

    async def _ensure(self, user_id: str, reconcile: bool = True) -> MachineView:
        record = await self._load_or_create(user_id)

        if record.remote_machine_id:
            machine_id = record.remote_machine_id
            try:
                remote = await self.client.get(machine_id)
            except RemoteApiError as e:
                if not e.is_client_error:
                    # Provider trouble; the machine is not known to be gone
                    logger.warning(
                        "machine_fetch_failed",
                        user_id=user_id,
                        machine_id=machine_id,
                        status=e.status_code,
                    )
                    return MachineView(record=record, remote=None)
                logger.warning(
                    "machine_lost", user_id=user_id, machine_id=machine_id, status=e.status_code
                )
                return await self._forget_machine(user_id, record, reconcile)
            except MachineProviderError as e:
                logger.warning("machine_lost", user_id=user_id, machine_id=machine_id, error=str(e))
                return await self._forget_machine(user_id, record, reconcile)

            if remote.state == RemoteState.DESTROYED:
                logger.info("machine_destroyed_remotely", user_id=user_id, machine_id=machine_id)
                return await self._forget_machine(user_id, record, reconcile)

            mapped = map_remote_state(remote.state)
            if reconcile and mapped != record.status:
                record = await self._persist(user_id, status=mapped)
            return MachineView(record=record, remote=remote)

        if reconcile and record.status in _ACTIVE_STATUSES:
            logger.warning("machine_stuck_state_healed", user_id=user_id, status=record.status.value)
            record = await self._persist(user_id, status=MachineStatus.STOPPED)

        return MachineView(record=record, remote=None)

    async def _forget_machine(
        self, user_id: str, record: MachineRecord, reconcile: bool
    ) -> MachineView:
        if reconcile:
            record = await self._persist(
                user_id, remote_machine_id=None, status=MachineStatus.STOPPED
            )
        return MachineView(record=record, remote=None)

    # Lifecycle operations

    async def start(self, user_id: str) -> MachineRecord:
        """
        Make sure the user's machine is running.

        Idempotent: an already-running machine costs one provider read.

        Raises:
            MachineProviderError: on any provider failure; the record is left
                in the error state
        """
        async with self._lock_for(user_id):
            view = await self._ensure(user_id)
            if view.remote is not None and view.remote.is_running:
                return view.record

            await self._persist(user_id, status=MachineStatus.STARTING)
            try:
                if view.remote is not None:
                    machine = await self._start_existing(user_id, view.remote)
                else:
                    machine = await self._create_or_adopt(user_id)
            except Exception as e:
                logger.error("machine_start_failed", user_id=user_id, error=str(e))
                record_machine_operation("start", "error")
                await self._persist(user_id, status=MachineStatus.ERROR)
                raise

            record = await self._persist(
                user_id,
                remote_machine_id=machine.id,
                status=MachineStatus.RUNNING,
                version=machine.image,
            )
            record_machine_operation("start", "success")
            logger.info("machine_started", user_id=user_id, machine_id=machine.id)
            return record

    async def _start_existing(self, user_id: str, remote: RemoteMachine) -> RemoteMachine:
        if remote.state != RemoteState.STARTING:
            await self.client.start(remote.id)
        return await self.client.wait_for_state(remote.id, RemoteState.STARTED)

    async def _create_or_adopt(self, user_id: str) -> RemoteMachine:
        spec = self.build_spec(user_id)
        try:
            machine = await self.client.create(spec)
        except RemoteApiError as e:
            if not e.is_already_exists:
                raise
            machine = await self._adopt(user_id, spec.name)

        # Known as soon as possible so a crash mid-boot does not orphan it
        await self._persist(user_id, remote_machine_id=machine.id)

        if machine.is_running:
            return machine
        if machine.state in (RemoteState.STOPPED, RemoteState.SUSPENDED):
            await self.client.start(machine.id)
        return await self.client.wait_for_state(machine.id, RemoteState.STARTED)

    async def _adopt(self, user_id: str, name: str) -> RemoteMachine:
        """Resolve a name conflict by taking over the existing machine."""
        for machine in await self.client.list():
            if machine.name != name:
                continue
            owner = machine.env.get("USER_ID")
            if owner is not None and owner != user_id:
                raise MachineAdoptionError(
                    f"Machine {machine.id} named {name} belongs to another user"
                )
            logger.info("machine_adopted", user_id=user_id, machine_id=machine.id)
            return machine
        raise MachineAdoptionError(f"Machine named {name} exists but was not listed")

    async def stop(self, user_id: str) -> MachineRecord:
        """Stop the user's machine; a no-op when nothing is running."""
        async with self._lock_for(user_id):
            return await self._stop_locked(user_id)

    async def _stop_locked(self, user_id: str) -> MachineRecord:
        view = await self._ensure(user_id)
        if view.remote is None or view.record.status == MachineStatus.STOPPED:
            return view.record

        machine_id = view.remote.id
        await self._persist(user_id, status=MachineStatus.STOPPING)
        try:
            await self.client.stop(machine_id)
            await self.client.wait_for_state(machine_id, RemoteState.STOPPED)
        except Exception:
            record_machine_operation("stop", "error")
            raise

        record = await self._persist(user_id, status=MachineStatus.STOPPED)
        record_machine_operation("stop", "success")
        logger.info("machine_stopped", user_id=user_id, machine_id=machine_id)
        return record

    async def upgrade(self, user_id: str) -> MachineRecord:
        """Stop and destroy the machine; the next start creates a fresh one."""
        async with self._lock_for(user_id):
            record = await self._stop_locked(user_id)
            if not record.remote_machine_id:
                return record

            machine_id = record.remote_machine_id
            try:
                await self.client.delete(machine_id)
            except Exception:
                record_machine_operation("upgrade", "error")
                raise

            record = await self._persist(user_id, remote_machine_id=None, version=None)
            record_machine_operation("upgrade", "success")
            logger.info("machine_upgraded", user_id=user_id, machine_id=machine_id)
            return record

    async def status(self, user_id: str) -> MachineStatusInfo:
        view = await self.ensure(user_id)
        return MachineStatusInfo(
            status=view.record.status,
            remote_machine_id=view.record.remote_machine_id,
            private_address=view.remote.private_ip if view.remote else None,
        )
