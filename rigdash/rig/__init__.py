from .common import (
    AlreadyConnectingError,
    CommandError,
    CommandTimeout,
    NotConnectedError,
    RadioCapabilities,
    RadioMode,
    RadioState,
    RigConnectionError,
    RigError,
    Supports,
    TransportError,
    parse_dump_caps,
)
from .backend import RigBackend
from .tcp import RigctldBackend
from .mock import MockBackend

__all__ = [
    "AlreadyConnectingError",
    "CommandError",
    "CommandTimeout",
    "NotConnectedError",
    "RadioCapabilities",
    "RadioMode",
    "RadioState",
    "RigConnectionError",
    "RigError",
    "Supports",
    "TransportError",
    "parse_dump_caps",
    "RigBackend",
    "RigctldBackend",
    "MockBackend",
]
