from .client import HetznerClient
from .schemas import (
    LABEL_KEY,
    LABEL_SELECTOR,
    LABEL_VALUE,
    Action,
    ActionStatus,
    CreateServerOpts,
    RescueCredentials,
    Server,
    ServerStatus,
    SSHKey,
)

__all__ = [
    "HetznerClient",
    "LABEL_KEY",
    "LABEL_SELECTOR",
    "LABEL_VALUE",
    "Action",
    "ActionStatus",
    "CreateServerOpts",
    "RescueCredentials",
    "Server",
    "ServerStatus",
    "SSHKey",
]
