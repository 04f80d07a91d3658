############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# __init__.py: Data-plane relay package
#
############################################################

"""Machine endpoint client and connection registry."""

from backend.app.core.relay.endpoint import (
    MachineCompletion,
    MachineEndpointClient,
    MachineEndpointError,
    MachineNotReady,
)
from backend.app.core.relay.registry import ConnectionRegistry, DuplexSession

__all__ = [
    "ConnectionRegistry",
    "DuplexSession",
    "MachineCompletion",
    "MachineEndpointClient",
    "MachineEndpointError",
    "MachineNotReady",
]
