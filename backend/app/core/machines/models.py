############################################################
#
# sandboxrelay - On-demand Agent Sandbox Relay
#
# models.py: Remote machine data models and state mapping
#
############################################################

"""Data models for the machine provider's control plane."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backend.app.db.models import MachineStatus


class RemoteState:
    """Machine states reported by the provider."""
    CREATED = "created"
    STARTING = "starting"
    STARTED = "started"
    STOPPING = "stopping"
    STOPPED = "stopped"
    SUSPENDED = "suspended"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


_REMOTE_TO_LOCAL = {
    RemoteState.STARTED: MachineStatus.RUNNING,
    RemoteState.STARTING: MachineStatus.STARTING,
    RemoteState.STOPPING: MachineStatus.STOPPING,
    RemoteState.STOPPED: MachineStatus.STOPPED,
    RemoteState.DESTROYED: MachineStatus.STOPPED,
}


def map_remote_state(state: str) -> MachineStatus:
    """Map a provider state onto the local status; unknown states are errors."""
    return _REMOTE_TO_LOCAL.get(state, MachineStatus.ERROR)


@dataclass
class RemoteMachine:
    """A machine as reported by the provider."""

    id: str
    name: str
    state: str
    region: Optional[str] = None
    instance_id: Optional[str] = None
    private_ip: Optional[str] = None
    image: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "RemoteMachine":
        """Build from the provider's JSON, tolerating absent optional fields."""
        config = data.get("config") or {}
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            state=data.get("state", ""),
            region=data.get("region"),
            instance_id=data.get("instance_id"),
            private_ip=data.get("private_ip"),
            image=config.get("image"),
            env=dict(config.get("env") or {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    @property
    def is_running(self) -> bool:
        return self.state == RemoteState.STARTED


@dataclass
class MachineSpec:
    """Creation request for a user's machine."""

    name: str
    image: str
    env: Dict[str, str] = field(default_factory=dict)
    region: Optional[str] = None
    cpu_kind: str = "shared"
    cpus: int = 1
    memory_mb: int = 256
    internal_port: int = 8080
    auto_destroy: bool = False
    restart_policy: str = "no"
    autostart: bool = True
    autostop: bool = True
    min_machines_running: int = 0

    def to_payload(self) -> Dict[str, Any]:
        """Render as the provider's create-machine request body."""
        services: List[Dict[str, Any]] = [
            {
                "ports": [{"port": 443, "handlers": ["tls", "http"]}],
                "protocol": "tcp",
                "internal_port": self.internal_port,
                "autostart": self.autostart,
                "autostop": self.autostop,
                "min_machines_running": self.min_machines_running,
            }
        ]
        payload: Dict[str, Any] = {
            "name": self.name,
            "config": {
                "image": self.image,
                "env": dict(self.env),
                "auto_destroy": self.auto_destroy,
                "restart": {"policy": self.restart_policy},
                "services": services,
                "guest": {
                    "cpu_kind": self.cpu_kind,
                    "cpus": self.cpus,
                    "memory_mb": self.memory_mb,
                },
            },
        }
        if self.region:
            payload["region"] = self.region
        return payload
