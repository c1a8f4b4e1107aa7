"""Pydantic schemas for Hetzner Cloud API responses.

Only the fields the build pipeline consumes are modelled; everything else the
API returns is ignored.

API Documentation: https://docs.hetzner.cloud/
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

LABEL_KEY = "managed-by"
LABEL_VALUE = "blackbsd-builder"
LABEL_SELECTOR = f"{LABEL_KEY}={LABEL_VALUE}"


class ServerStatus(str, Enum):
    INITIALIZING = "initializing"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    OFF = "off"
    DELETING = "deleting"
    RESCUE = "rescue"
    MIGRATING = "migrating"
    REBUILDING = "rebuilding"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "ServerStatus":
        return cls.UNKNOWN


class ActionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


class Server(BaseModel):
    """Server object from GET /servers and GET /servers/{id}.

    ``public_ipv4`` is flattened from ``public_net.ipv4.ip`` and is ``None``
    until the provider has assigned an address.
    """

    model_config = ConfigDict(extra="ignore")

    id: int = Field(..., description="Numeric server ID")
    name: str = Field(..., description="Server display name")
    status: ServerStatus = Field(ServerStatus.UNKNOWN, description="Lifecycle status")
    public_ipv4: str | None = Field(None, description="Public IPv4 address")
    rescue_enabled: bool = Field(False, description="Rescue system armed for next boot")
    labels: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def flatten_public_net(cls, data: Any) -> Any:
        if isinstance(data, dict) and "public_net" in data:
            data = dict(data)
            ipv4 = (data.pop("public_net") or {}).get("ipv4") or {}
            data.setdefault("public_ipv4", ipv4.get("ip"))
        return data

    @property
    def is_managed(self) -> bool:
        return self.labels.get(LABEL_KEY) == LABEL_VALUE


class ActionError(BaseModel):
    code: str
    message: str


class Action(BaseModel):
    """Asynchronous provider-side unit of work."""

    model_config = ConfigDict(extra="ignore")

    id: int
    command: str = ""
    status: ActionStatus = ActionStatus.RUNNING
    progress: int = 0
    error: ActionError | None = None


class SSHKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    fingerprint: str = ""
    public_key: str = ""


class RescueCredentials(BaseModel):
    """Result of enabling rescue mode.

    ``root_password`` is only returned when no SSH keys were supplied.
    """

    action: Action
    root_password: str | None = None


class CreateServerOpts(BaseModel):
    name: str
    server_type: str
    image: str
    location: str
    ssh_key_ids: list[int] = Field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "server_type": self.server_type,
            "image": self.image,
            "location": self.location,
            "ssh_keys": self.ssh_key_ids,
            "labels": {LABEL_KEY: LABEL_VALUE},
            "start_after_create": True,
        }
