from .client import KeyMaterial, SSHClient, load_key, public_key_fingerprint
from .result import CommandResult
from .runner import InteractiveRunner, Runner, run_checked

__all__ = [
    "CommandResult",
    "InteractiveRunner",
    "KeyMaterial",
    "Runner",
    "SSHClient",
    "load_key",
    "public_key_fingerprint",
    "run_checked",
]
