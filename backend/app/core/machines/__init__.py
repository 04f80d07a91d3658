############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Machine control plane package
#
############################################################

"""Remote machine control client and per-user lifecycle controller."""

from backend.app.core.machines.client import (
    MachineProviderError,
    MachinesClient,
    MachineStateTimeout,
    RemoteApiError,
)
from backend.app.core.machines.lifecycle import (
    MachineAdoptionError,
    MachineLifecycleController,
    MachineStatusInfo,
    MachineView,
    machine_name_for,
)
from backend.app.core.machines.models import (
    MachineSpec,
    RemoteMachine,
    RemoteState,
    map_remote_state,
)

__all__ = [
    "MachineAdoptionError",
    "MachineLifecycleController",
    "MachineProviderError",
    "MachineSpec",
    "MachineStateTimeout",
    "MachineStatusInfo",
    "MachineView",
    "MachinesClient",
    "RemoteApiError",
    "RemoteMachine",
    "RemoteState",
    "machine_name_for",
    "map_remote_state",
]
