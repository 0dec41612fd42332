from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from .common import STATE_FIELDS, RadioCapabilities, RadioMode

# call(name, fn) -> awaitable result of fn()
ReadCall = Callable[[str, Callable[[], Awaitable[Any]]], Awaitable[Any]]


class RigBackend:
    """Abstract base class for a rig-control adapter.

    Every method performs exactly one round trip to the rig-control daemon
    (``get_state`` excepted, which fans out over the read primitives) and never
    retries. Retry and timeout policy belongs to the session.
    """

    # True when the adapter can only run one round trip at a time. The session
    # then queues calls itself so a command's deadline starts on the wire.
    serial_link: bool = False

    async def connect(self, host: str, port: int) -> None:
        """Open the link to the daemon.

        Raises:
            RigConnectionError: Bad address, timeout or refused connection.
        """
        raise NotImplementedError

    async def disconnect(self) -> None:
        """Close the link. Safe to call when already closed."""
        raise NotImplementedError

    async def get_frequency(self) -> Optional[float]:
        """Get the current frequency in Hz."""
        raise NotImplementedError

    async def get_mode(self) -> Tuple[Optional[RadioMode], Optional[float]]:
        """Get the current mode and passband.

        Returns:
            Tuple of (mode, passband width in Hz).
        """
        raise NotImplementedError

    async def get_power(self) -> Optional[float]:
        """Get RF power as a percentage (0-100)."""
        raise NotImplementedError

    async def get_ptt(self) -> Optional[bool]:
        """Get PTT state. True while transmitting."""
        raise NotImplementedError

    async def get_info(self) -> Optional[str]:
        """Get the rig model/info string."""
        raise NotImplementedError

    async def set_frequency(self, hz: float) -> None:
        """Set the frequency in Hz."""
        raise NotImplementedError

    async def set_mode(self, mode: RadioMode, bandwidth_hz: Optional[float] = None) -> None:
        """Set the mode and optional passband.

        Args:
            mode: Mode to select.
            bandwidth_hz: Passband width in Hz; rig default when omitted.
        """
        raise NotImplementedError

    async def set_power(self, percent: float) -> None:
        """Set RF power as a percentage (0-100)."""
        raise NotImplementedError

    async def set_ptt(self, enabled: bool) -> None:
        """Key (True) or unkey (False) the transmitter."""
        raise NotImplementedError

    async def get_capabilities(self) -> RadioCapabilities:
        """Describe what the connected rig supports."""
        raise NotImplementedError

    async def get_state(self, call: Optional[ReadCall] = None) -> Dict[str, Any]:
        """Read every state field and return them as a partial RadioState.

        Fields the rig doesn't report are omitted. ``call(name, fn)`` wraps
        each read primitive; the session passes one that applies its command
        deadline. All five reads run to completion before any error is raised.

        Raises:
            CommandError: If any read fails.
        """
        if call is None:
            call = lambda name, fn: fn()
        results = await asyncio.gather(
            call("get_frequency", self.get_frequency),
            call("get_mode", self.get_mode),
            call("get_power", self.get_power),
            call("get_ptt", self.get_ptt),
            call("get_info", self.get_info),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, BaseException):
                raise r
        freq, (mode, bw), power, ptt, model = results
        values = dict(zip(STATE_FIELDS, (freq, mode, bw, power, ptt, model)))
        return {k: v for k, v in values.items() if v is not None}
