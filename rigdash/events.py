"""
Typed events published by a rig session.

Each event is a frozen dataclass; ``kind`` is its wire name. Subscribers
receive the instances as-is, and the websocket relay sends ``to_dict()``.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import Any, Callable, ClassVar, Dict, Iterator, List, Optional, Union

from .rig.common import RadioCapabilities, RadioMode, RadioState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for all session events."""
    kind: ClassVar[str] = "event"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"type": self.kind}
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, (RadioState, RadioCapabilities)):
                v = v.to_dict()
            elif isinstance(v, RadioMode):
                v = v.value
            out[f.name] = v
        return out


# === Connection lifecycle ===

@dataclass(frozen=True)
class Connected(Event):
    """Session reached CONNECTED after a successful connect."""
    kind: ClassVar[str] = "connected"
    host: str
    port: int
    capabilities: RadioCapabilities
    connected: bool = True


@dataclass(frozen=True)
class ConnectionFailed(Event):
    """A connect attempt failed."""
    kind: ClassVar[str] = "connection_failed"
    host: str
    port: int
    reason: str


@dataclass(frozen=True)
class ConnectionDegraded(Event):
    """A refresh failed; the session is kept but not responding."""
    kind: ClassVar[str] = "connection_degraded"
    reason: str


@dataclass(frozen=True)
class Disconnected(Event):
    """Session torn down."""
    kind: ClassVar[str] = "disconnected"
    reason: str = "user_request"
    connected: bool = False


# === State ===

@dataclass(frozen=True)
class RadioStateChanged(Event):
    """A refresh merged new state into the cache."""
    kind: ClassVar[str] = "radio_state"
    state: RadioState


@dataclass(frozen=True)
class FrequencyChanged(Event):
    kind: ClassVar[str] = "frequency_changed"
    frequency_hz: float


@dataclass(frozen=True)
class ModeChanged(Event):
    kind: ClassVar[str] = "mode_changed"
    mode: RadioMode
    bandwidth_hz: Optional[float] = None


@dataclass(frozen=True)
class PowerChanged(Event):
    kind: ClassVar[str] = "power_changed"
    power_percent: float


@dataclass(frozen=True)
class PttChanged(Event):
    kind: ClassVar[str] = "ptt_changed"
    ptt: bool


# === Polling ===

@dataclass(frozen=True)
class PollingStarted(Event):
    kind: ClassVar[str] = "polling_started"
    interval_ms: int


@dataclass(frozen=True)
class PollingStopped(Event):
    kind: ClassVar[str] = "polling_stopped"


@dataclass(frozen=True)
class PollingError(Event):
    kind: ClassVar[str] = "polling_error"
    reason: str
    consecutive_failures: int


RigEvent = Union[
    Connected, ConnectionFailed, ConnectionDegraded, Disconnected,
    RadioStateChanged, FrequencyChanged, ModeChanged, PowerChanged, PttChanged,
    PollingStarted, PollingStopped, PollingError,
]

Listener = Callable[[Event], None]


class EventBus:
    """Subscription registry for one session's events.

    Delivery is synchronous and in publish order. Events published with no
    subscribers are dropped.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def __len__(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to every listener.

        Returns:
            Number of listeners that received it.
        """
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("event listener failed on %s", event.kind)
                continue
            delivered += 1
        return delivered

    @contextmanager
    def queue(self, maxsize: int = 256) -> Iterator["asyncio.Queue[Event]"]:
        """Subscribe an asyncio queue for the duration of the block.

        When the queue is full new events are dropped for that subscriber
        rather than blocking the publisher.
        """
        q: asyncio.Queue[Event] = asyncio.Queue(maxsize=maxsize)

        def put(event: Event) -> None:
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("event queue full, dropping %s", event.kind)

        unsubscribe = self.subscribe(put)
        try:
            yield q
        finally:
            unsubscribe()
