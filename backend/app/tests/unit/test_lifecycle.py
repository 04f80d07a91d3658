############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# test_lifecycle.py: Unit tests for the machine lifecycle controller
#
############################################################

"""Unit tests for MachineLifecycleController against an in-memory provider."""

import asyncio

import httpx
import pytest

from backend.app.core.machines import (
    MachineAdoptionError,
    MachineLifecycleController,
    MachinesClient,
    MachineStateTimeout,
    RemoteApiError,
    machine_name_for,
)
from backend.app.db import crud
from backend.app.db.models import MachineStatus


@pytest.fixture
def events():
    return []


@pytest.fixture
def controller(session_factory, settings, machines_api, clock, events):
    async def on_status_change(user_id, status):
        events.append((user_id, status))

    client = MachinesClient(
        api_url="https://api.machines.test/v1",
        app_name="test-app",
        api_token="test-token",
        sleep=clock.sleep,
        clock=clock,
        transport=httpx.MockTransport(machines_api.handler),
    )
    return MachineLifecycleController(session_factory, client, settings, on_status_change)


async def set_record(session_factory, user_id, **values):
    async with session_factory() as db:
        if await crud.get_machine_record(db, user_id) is None:
            await crud.create_machine_record(db, user_id)
        await crud.update_machine_record(db, user_id, **values)
        await db.commit()


class TestMachineName:

    def test_deterministic_and_prefixed(self):
        name = machine_name_for("user-1", "agent")
        assert name == machine_name_for("user-1", "agent")
        assert name.startswith("agent-")
        assert len(name) == len("agent-") + 16

    def test_distinct_users_distinct_names(self):
        assert machine_name_for("user-1", "agent") != machine_name_for("user-2", "agent")

    def test_spec_carries_user_and_backend(self, controller):
        spec = controller.build_spec("user-1")
        assert spec.env == {"USER_ID": "user-1", "BACKEND_URL": "http://relay.test"}
        assert spec.name == machine_name_for("user-1", "agent")


class TestStart:

    @pytest.mark.asyncio
    async def test_first_start_creates_machine(self, controller, machines_api, events):
        record = await controller.start("u1")

        assert record.status == MachineStatus.RUNNING
        assert record.remote_machine_id == "m0001"
        assert record.version == "registry.fly.io/sandboxrelay-agent:latest"
        assert machines_api.count("create") == 1
        assert machines_api.machines["m0001"]["config"]["env"]["USER_ID"] == "u1"
        assert events == [("u1", MachineStatus.STARTING), ("u1", MachineStatus.RUNNING)]

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, controller, machines_api):
        await controller.start("u1")
        gets_before = machines_api.count("get")

        record = await controller.start("u1")

        assert record.status == MachineStatus.RUNNING
        assert machines_api.count("create") == 1
        assert machines_api.count("start") == 0
        assert machines_api.count("get") == gets_before + 1

    @pytest.mark.asyncio
    async def test_concurrent_starts_create_once(self, controller, machines_api):
        records = await asyncio.gather(controller.start("u1"), controller.start("u1"))
        assert {r.remote_machine_id for r in records} == {"m0001"}
        assert machines_api.count("create") == 1

    @pytest.mark.asyncio
    async def test_restart_after_stop_reuses_machine(self, controller, machines_api):
        await controller.start("u1")
        await controller.stop("u1")

        record = await controller.start("u1")

        assert record.status == MachineStatus.RUNNING
        assert record.remote_machine_id == "m0001"
        assert machines_api.count("create") == 1
        assert machines_api.count("start") == 1

    @pytest.mark.asyncio
    async def test_failure_leaves_error_then_retries(self, controller, machines_api, events):
        machines_api.fail_next("create", 500, '{"error": "capacity"}')

        with pytest.raises(RemoteApiError):
            await controller.start("u1")
        assert (await controller.status("u1")).status == MachineStatus.ERROR
        assert events[-1] == ("u1", MachineStatus.ERROR)

        record = await controller.start("u1")
        assert record.status == MachineStatus.RUNNING

    @pytest.mark.asyncio
    async def test_boot_timeout_keeps_machine_id(self, controller, machines_api, events):
        machines_api.boot_polls = 10_000

        with pytest.raises(MachineStateTimeout):
            await controller.start("u1")
        assert events[-1] == ("u1", MachineStatus.ERROR)

        info = await controller.status("u1")
        assert info.remote_machine_id == "m0001"
        assert info.status == MachineStatus.STARTING


class TestConflictAdoption:

    @pytest.mark.asyncio
    async def test_adopts_existing_machine_with_same_name(self, controller, machines_api):
        existing = machines_api.add_machine(
            machine_name_for("u1", "agent"), state="stopped", env={"USER_ID": "u1"}
        )

        record = await controller.start("u1")

        assert record.remote_machine_id == existing
        assert record.status == MachineStatus.RUNNING
        assert machines_api.count("list") == 1
        assert len(machines_api.machines) == 1

    @pytest.mark.asyncio
    async def test_refuses_machine_owned_by_someone_else(self, controller, machines_api):
        machines_api.add_machine(
            machine_name_for("u1", "agent"), state="started", env={"USER_ID": "intruder"}
        )

        with pytest.raises(MachineAdoptionError):
            await controller.start("u1")

        info = await controller.status("u1")
        assert info.status == MachineStatus.ERROR
        assert info.remote_machine_id is None


class TestStopAndUpgrade:

    @pytest.mark.asyncio
    async def test_stop(self, controller, events):
        await controller.start("u1")
        record = await controller.stop("u1")

        assert record.status == MachineStatus.STOPPED
        assert record.remote_machine_id == "m0001"
        assert [s for _, s in events][-2:] == [MachineStatus.STOPPING, MachineStatus.STOPPED]

    @pytest.mark.asyncio
    async def test_stop_without_machine_is_noop(self, controller, machines_api):
        record = await controller.stop("u1")
        assert record.status == MachineStatus.STOPPED
        assert machines_api.calls == []

    @pytest.mark.asyncio
    async def test_upgrade_destroys_and_next_start_recreates(self, controller, machines_api):
        await controller.start("u1")

        record = await controller.upgrade("u1")

        assert record.status == MachineStatus.STOPPED
        assert record.remote_machine_id is None
        assert record.version is None
        assert machines_api.machines == {}

        record = await controller.start("u1")
        assert record.remote_machine_id == "m0002"
        assert machines_api.count("create") == 2

    @pytest.mark.asyncio
    async def test_upgrade_without_machine_is_noop(self, controller, machines_api):
        record = await controller.upgrade("u1")
        assert record.remote_machine_id is None
        assert machines_api.count("delete") == 0


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_status_of_new_user(self, controller):
        info = await controller.status("u1")
        assert info.to_dict() == {"status": "stopped", "machineId": None, "privateIp": None}

    @pytest.mark.asyncio
    async def test_status_reports_private_address(self, controller):
        await controller.start("u1")
        info = await controller.status("u1")
        assert info.status == MachineStatus.RUNNING
        assert info.private_address == "fdaa::1"

    @pytest.mark.asyncio
    async def test_remote_destroyed_clears_id(self, controller, machines_api):
        await controller.start("u1")
        machines_api.machines["m0001"]["state"] = "destroyed"

        info = await controller.status("u1")

        assert info.status == MachineStatus.STOPPED
        assert info.remote_machine_id is None

    @pytest.mark.asyncio
    async def test_unknown_machine_clears_id(self, controller, machines_api):
        await controller.start("u1")
        del machines_api.machines["m0001"]

        info = await controller.status("u1")

        assert info.status == MachineStatus.STOPPED
        assert info.remote_machine_id is None

    @pytest.mark.asyncio
    async def test_provider_outage_keeps_record(self, controller, machines_api):
        await controller.start("u1")
        machines_api.fail_next("get", 503, "unavailable")

        info = await controller.status("u1")

        assert info.status == MachineStatus.RUNNING
        assert info.remote_machine_id == "m0001"
        assert info.private_address is None

    @pytest.mark.asyncio
    async def test_remote_state_adopted(self, controller, machines_api):
        await controller.start("u1")
        machines_api.machines["m0001"]["state"] = "stopped"

        info = await controller.status("u1")

        assert info.status == MachineStatus.STOPPED
        assert info.remote_machine_id == "m0001"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "stuck", [MachineStatus.STARTING, MachineStatus.RUNNING, MachineStatus.STOPPING]
    )
    async def test_stuck_state_without_machine_healed(self, controller, session_factory, stuck):
        await set_record(session_factory, "u1", status=stuck, remote_machine_id=None)

        info = await controller.status("u1")

        assert info.status == MachineStatus.STOPPED

    @pytest.mark.asyncio
    async def test_error_state_is_kept(self, controller, session_factory):
        await set_record(session_factory, "u1", status=MachineStatus.ERROR)
        assert (await controller.status("u1")).status == MachineStatus.ERROR


class TestStatusListener:

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_start(
        self, session_factory, settings, machines_api, clock
    ):
        async def broken(user_id, status):
            raise RuntimeError("socket gone")

        client = MachinesClient(
            api_url="https://api.machines.test/v1",
            app_name="test-app",
            api_token="test-token",
            sleep=clock.sleep,
            clock=clock,
            transport=httpx.MockTransport(machines_api.handler),
        )
        controller = MachineLifecycleController(session_factory, client, settings, broken)

        record = await controller.start("u1")
        assert record.status == MachineStatus.RUNNING
