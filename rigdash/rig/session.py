from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import RigctldConfig
from ..debug_log import DebugLog
from ..events import (
    Connected,
    ConnectionDegraded,
    ConnectionFailed,
    Disconnected,
    EventBus,
    FrequencyChanged,
    ModeChanged,
    PollingError,
    PollingStarted,
    PollingStopped,
    PowerChanged,
    PttChanged,
    RadioStateChanged,
    RigEvent,
)
from .backend import RigBackend
from .common import (
    AlreadyConnectingError,
    CommandTimeout,
    NotConnectedError,
    RadioCapabilities,
    RadioMode,
    RadioState,
    RigConnectionError,
    RigError,
)
from .mock import MockBackend
from .tcp import RigctldBackend

logger = logging.getLogger(__name__)


class Lifecycle(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DEGRADED = "degraded"


LIVE = (Lifecycle.CONNECTED, Lifecycle.DEGRADED)


@dataclass(frozen=True)
class PendingCommand:
    """An adapter call in flight. Times are event-loop seconds."""
    command: str
    args: Tuple[Any, ...]
    issued_at: float
    deadline: float


class RigSession:
    """Owns one logical connection to a rig-control daemon.

    The session drives the adapter through connect/disconnect, puts a
    deadline on every adapter call, keeps a cached RadioState fresh by
    polling and publishes what changes on ``self.events``.

    Lifecycle::

        DISCONNECTED -> CONNECTING -> CONNECTED <-> DEGRADED
              ^              |            |            |
              +--------------+------------+------------+

    A failed refresh moves CONNECTED to DEGRADED and keeps the last good
    snapshot; the next good refresh moves it back. ``failure_threshold``
    failed refreshes in a row force a disconnect.
    """

    def __init__(
        self,
        backend: RigBackend,
        *,
        events: Optional[EventBus] = None,
        poll_interval_ms: int = 1000,
        command_timeout: float = 1.5,
        connect_timeout: float = 3.0,
        caps_timeout: float = 8.0,
        failure_threshold: int = 5,
        backoff_max_ms: int = 8000,
        max_pending: int = 16,
        auto_poll: bool = True,
        debug: Optional[DebugLog] = None,
    ):
        self.events = events if events is not None else EventBus()
        self.poll_interval_ms = poll_interval_ms
        self.command_timeout = command_timeout
        self.connect_timeout = connect_timeout
        self.caps_timeout = caps_timeout
        self.failure_threshold = failure_threshold
        self.backoff_max_ms = backoff_max_ms
        self.auto_poll = auto_poll
        self.skipped_ticks = 0

        self._backend = backend
        self._debug = debug
        self._lifecycle = Lifecycle.DISCONNECTED
        self._state = RadioState()
        self._caps: Optional[RadioCapabilities] = None
        self._target: Optional[Tuple[str, int]] = None
        self._connecting_to: Optional[Tuple[str, int]] = None
        self._generation = 0
        self._closing = False
        self._consecutive_failures = 0

        self._connect_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._escalation: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._poll_refresh: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()

        self._pending: Dict[int, PendingCommand] = {}
        self._pending_ids = itertools.count(1)
        self._slots = asyncio.Semaphore(max(1, max_pending))
        self._idle = asyncio.Event()
        self._idle.set()
        # One call on the wire at a time for serial adapters
        self._wire: Optional[asyncio.Lock] = asyncio.Lock() if backend.serial_link else None

        # Ordering stamps for optimistic writes vs. refreshes
        self._stamps = itertools.count(1)
        self._written: Dict[str, int] = {}

    @classmethod
    def from_config(
        cls,
        cfg: RigctldConfig,
        *,
        events: Optional[EventBus] = None,
        debug: Optional[DebugLog] = None,
    ) -> "RigSession":
        return cls(
            cls._make_backend(cfg, debug),
            events=events,
            poll_interval_ms=cfg.poll_interval_ms,
            command_timeout=cfg.command_timeout_ms / 1000.0,
            connect_timeout=cfg.connect_timeout_ms / 1000.0,
            caps_timeout=cfg.caps_timeout_ms / 1000.0,
            failure_threshold=cfg.failure_threshold,
            backoff_max_ms=cfg.backoff_max_ms,
            max_pending=cfg.max_pending_commands,
            auto_poll=cfg.auto_poll,
            debug=debug,
        )

    @staticmethod
    def _make_backend(cfg: RigctldConfig, debug: Optional[DebugLog] = None) -> RigBackend:
        if cfg.backend == "mock":
            return MockBackend()
        return RigctldBackend(
            cfg.host,
            cfg.port,
            timeout=cfg.command_timeout_ms / 1000.0,
            connect_timeout=cfg.connect_timeout_ms / 1000.0,
            caps_timeout=cfg.caps_timeout_ms / 1000.0,
            debug=debug,
        )

    # --- read-only views ---

    @property
    def lifecycle(self) -> Lifecycle:
        return self._lifecycle

    @property
    def target(self) -> Optional[Tuple[str, int]]:
        return self._target

    @property
    def is_polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def pending(self) -> List[PendingCommand]:
        return list(self._pending.values())

    def get_state(self) -> RadioState:
        """Return the cached snapshot. Never touches the rig."""
        return self._state

    def get_capabilities(self) -> Optional[RadioCapabilities]:
        return self._caps

    def status(self) -> Dict[str, Any]:
        """JSON-safe summary for the API layer."""
        host, port = self._target if self._target else (None, None)
        return {
            "lifecycle": self._lifecycle.value,
            "state": self._state.to_dict(),
            "target": {"host": host, "port": port} if self._target else None,
            "polling": self.is_polling,
            "poll_interval_ms": self.poll_interval_ms,
            "consecutive_failures": self._consecutive_failures,
            "capabilities": self._caps.to_dict() if self._caps else None,
        }

    # --- connection lifecycle ---

    async def connect(self, host: str, port: int) -> RadioState:
        """Connect to the daemon at ``host:port``.

        An existing session to another target is disconnected first. The
        same target while connected is a no-op.

        Returns:
            The snapshot after the initial refresh.

        Raises:
            AlreadyConnectingError: Another connect is in flight.
            RigConnectionError: The daemon could not be reached or didn't
                answer the initial refresh.
        """
        if self._connect_task is not None and not self._connect_task.done():
            raise AlreadyConnectingError(
                "connect to %s:%s already in progress" % (self._connecting_to or ("?", "?"))
            )
        port = int(port)
        if self._lifecycle in LIVE and not self._closing and self._target == (host, port):
            return self._state
        self._connecting_to = (host, port)
        self._connect_task = asyncio.create_task(self._connect(host, port))
        return await asyncio.shield(self._connect_task)

    async def _connect(self, host: str, port: int) -> RadioState:
        if self._lifecycle in LIVE or self._teardown_task is not None:
            await self._teardown("reconnect")

        self._generation += 1
        self._target = (host, port)
        self._set_lifecycle(Lifecycle.CONNECTING, f"{host}:{port}")
        try:
            await self._call("connect", self._backend.connect, host, port, timeout=self.connect_timeout)
            values = await self._read_all()
        except (RigError, OSError) as e:
            reason = str(e) or type(e).__name__
            await self._release_backend()
            self._set_lifecycle(Lifecycle.DISCONNECTED, reason)
            self._publish(ConnectionFailed(host=host, port=port, reason=reason))
            if isinstance(e, RigConnectionError):
                raise
            raise RigConnectionError(f"connect to {host}:{port} failed: {reason}") from e
        except BaseException:
            self._set_lifecycle(Lifecycle.DISCONNECTED, "connect aborted")
            raise

        try:
            caps = await self._call("get_capabilities", self._backend.get_capabilities, timeout=self.caps_timeout)
        except (RigError, OSError) as e:
            logger.warning("capabilities fetch from %s:%s failed, using defaults: %s", host, port, e)
            caps = RadioCapabilities.default()

        self._consecutive_failures = 0
        self._written.clear()
        self._caps = caps
        self._state = replace(
            self._state,
            connected=True,
            **{k: v for k, v in values.items() if v is not None},
        )
        self._set_lifecycle(Lifecycle.CONNECTED, f"{host}:{port}")
        self._publish(Connected(host=host, port=port, capabilities=caps))
        self._publish(RadioStateChanged(state=self._state))

        if self.auto_poll:
            await self.start_polling()
        return self._state

    async def disconnect(self, reason: str = "user_request") -> None:
        """Tear the session down.

        Polling stops first; adapter calls already in flight are allowed to
        finish (or time out) before the adapter is disconnected. A connect in
        progress is waited for. Safe to call when already disconnected.
        """
        task = self._connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            # The outcome belongs to the connect caller
            await asyncio.wait({task})
        await self._teardown(reason)

    async def close(self) -> None:
        await self.disconnect(reason="shutdown")

    async def _teardown(self, reason: str) -> None:
        task = self._teardown_task
        if task is None or task.done():
            if self._lifecycle not in LIVE:
                return
            task = self._teardown_task = asyncio.create_task(self._do_teardown(reason))
        await asyncio.shield(task)

    async def _do_teardown(self, reason: str) -> None:
        self._closing = True
        try:
            await self.stop_polling()
            await self._drain()
            await self._release_backend()
            self._generation += 1
            self._state = RadioState()
            self._caps = None
            self._consecutive_failures = 0
            self._written.clear()
            self._set_lifecycle(Lifecycle.DISCONNECTED, reason)
            self._publish(Disconnected(reason=reason))
        finally:
            self._closing = False
            self._teardown_task = None

    async def _drain(self) -> None:
        current = asyncio.current_task()
        others = {t for t in self._tasks if t is not current and not t.done()}
        if others:
            await asyncio.wait(others)
        await self._idle.wait()

    async def _release_backend(self) -> None:
        try:
            await asyncio.wait_for(self._backend.disconnect(), timeout=self.command_timeout)
        except (RigError, OSError, asyncio.TimeoutError) as e:
            logger.warning("adapter disconnect failed: %s", e)

    # --- commands ---

    def _require_live(self) -> None:
        if self._closing or self._lifecycle not in LIVE:
            raise NotConnectedError("rig not connected")

    async def set_frequency(self, hz: float) -> RadioState:
        self._require_live()
        hz = float(hz)
        if hz <= 0:
            raise ValueError("frequency must be positive")
        gen = self._generation
        await self._call("set_frequency", self._backend.set_frequency, hz)
        if self._apply_write(gen, frequency_hz=hz):
            self._publish(FrequencyChanged(frequency_hz=hz))
            self._reconcile()
        return self._state

    async def set_mode(self, mode: Any, bandwidth_hz: Optional[float] = None) -> RadioState:
        self._require_live()
        mode = RadioMode.parse(mode)
        fields: Dict[str, Any] = {"mode": mode}
        if bandwidth_hz is not None:
            bandwidth_hz = float(bandwidth_hz)
            if bandwidth_hz <= 0:
                raise ValueError("bandwidth must be positive")
            fields["bandwidth_hz"] = bandwidth_hz
        gen = self._generation
        await self._call("set_mode", self._backend.set_mode, mode, bandwidth_hz)
        if self._apply_write(gen, **fields):
            self._publish(ModeChanged(mode=mode, bandwidth_hz=bandwidth_hz))
            self._reconcile()
        return self._state

    async def set_power(self, percent: float) -> RadioState:
        self._require_live()
        percent = float(percent)
        if not 0 <= percent <= 100:
            raise ValueError("power must be between 0 and 100 percent")
        gen = self._generation
        await self._call("set_power", self._backend.set_power, percent)
        if self._apply_write(gen, power_percent=percent):
            self._publish(PowerChanged(power_percent=percent))
            self._reconcile()
        return self._state

    async def set_ptt(self, enabled: bool) -> RadioState:
        self._require_live()
        enabled = bool(enabled)
        gen = self._generation
        await self._call("set_ptt", self._backend.set_ptt, enabled)
        if self._apply_write(gen, ptt=enabled):
            self._publish(PttChanged(ptt=enabled))
            self._reconcile()
        return self._state

    async def tune(self, duration_ms: int = 1200) -> RadioState:
        """Key the transmitter for ``duration_ms`` so an antenna tuner can work.

        PTT is always released, even if the wait is interrupted.
        """
        self._require_live()
        await self.set_ptt(True)
        try:
            await asyncio.sleep(max(0, duration_ms) / 1000.0)
        finally:
            await self.set_ptt(False)
        return self._state

    def _apply_write(self, generation: int, **fields: Any) -> bool:
        if self._closing or generation != self._generation or self._lifecycle not in LIVE:
            return False
        stamp = next(self._stamps)
        for name in fields:
            self._written[name] = stamp
        self._state = replace(self._state, **fields)
        return True

    def _reconcile(self) -> None:
        self._spawn(self._refresh("reconcile"))

    # --- adapter calls ---

    async def _call(self, command: str, fn: Callable[..., Awaitable[Any]], *args: Any, timeout: Optional[float] = None) -> Any:
        timeout = self.command_timeout if timeout is None else timeout
        async with self._slots, (self._wire or contextlib.nullcontext()):
            # Deadline starts once the call owns the wire
            if self._closing:
                raise NotConnectedError("session is disconnecting")
            now = asyncio.get_running_loop().time()
            pid = next(self._pending_ids)
            self._pending[pid] = PendingCommand(command, args, now, now + timeout)
            self._idle.clear()
            try:
                return await asyncio.wait_for(fn(*args), timeout=timeout)
            except CommandTimeout:
                raise
            except asyncio.TimeoutError:
                raise CommandTimeout(command, timeout) from None
            finally:
                del self._pending[pid]
                if not self._pending:
                    self._idle.set()

    async def _read_all(self) -> Dict[str, Any]:
        return await self._backend.get_state(lambda name, fn: self._call(name, fn))

    # --- refresh & polling ---

    def _is_stale(self, generation: int) -> bool:
        return self._closing or generation != self._generation or self._lifecycle not in LIVE

    async def refresh(self) -> bool:
        """Run one refresh now. Returns True if the cache was updated."""
        self._require_live()
        return await self._refresh("manual")

    async def _refresh(self, source: str) -> bool:
        gen = self._generation
        if self._is_stale(gen):
            return False
        stamp = next(self._stamps)
        try:
            values = await self._read_all()
        except NotConnectedError:
            return False
        except Exception as e:
            if self._is_stale(gen):
                return False
            self._refresh_failed(source, e)
            return False
        if self._is_stale(gen):
            return False
        self._merge(values, stamp)
        return True

    def _merge(self, values: Dict[str, Any], stamp: int) -> None:
        updates: Dict[str, Any] = {}
        for name, value in values.items():
            if value is None:
                continue
            if self._written.get(name, 0) > stamp:
                logger.debug("discarding stale %s from refresh", name)
                continue
            updates[name] = value
        self._consecutive_failures = 0
        self._state = replace(self._state, connected=True, **updates)
        if self._lifecycle is Lifecycle.DEGRADED:
            self._set_lifecycle(Lifecycle.CONNECTED, "refresh succeeded")
        self._publish(RadioStateChanged(state=self._state))

    def _refresh_failed(self, source: str, exc: Exception) -> None:
        self._consecutive_failures += 1
        n = self._consecutive_failures
        reason = str(exc) or type(exc).__name__
        logger.warning("%s refresh failed (%d in a row): %s", source, n, reason)
        if self._lifecycle is Lifecycle.CONNECTED:
            self._set_lifecycle(Lifecycle.DEGRADED, reason)
            self._publish(ConnectionDegraded(reason=reason))
        self._publish(PollingError(reason=reason, consecutive_failures=n))

        if self.failure_threshold and n >= self.failure_threshold:
            if self._escalation is None or self._escalation.done():
                logger.error("%d consecutive refresh failures, disconnecting", n)
                self._escalation = asyncio.create_task(
                    self.disconnect(reason=f"{n} consecutive failures: {reason}")
                )

    async def start_polling(self, interval_ms: Optional[int] = None) -> None:
        """Start the polling loop. No-op if it is already running."""
        self._require_live()
        if interval_ms is not None:
            if int(interval_ms) <= 0:
                raise ValueError("poll interval must be positive")
            self.poll_interval_ms = int(interval_ms)
        if self.is_polling:
            return
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info("polling every %d ms", self.poll_interval_ms)
        self._publish(PollingStarted(interval_ms=self.poll_interval_ms))

    async def stop_polling(self) -> None:
        """Stop scheduling poll ticks. A refresh already running is left alone."""
        task = self._poll_task
        if task is None:
            return
        self._poll_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("polling stopped")
        self._publish(PollingStopped())

    def _poll_delay(self) -> float:
        base = max(1, self.poll_interval_ms) / 1000.0
        if not self._consecutive_failures:
            return base
        backed_off = base * (2 ** min(self._consecutive_failures, 16))
        return max(base, min(backed_off, self.backoff_max_ms / 1000.0))

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_delay())
            if self._closing or self._lifecycle not in LIVE:
                continue
            if self._poll_refresh is not None and not self._poll_refresh.done():
                self.skipped_ticks += 1
                logger.debug("poll tick skipped, previous refresh still pending")
                continue
            self._poll_refresh = self._spawn(self._refresh("poll"))

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("session task failed", exc_info=task.exception())

    # --- bookkeeping ---

    def _set_lifecycle(self, new: Lifecycle, reason: str = "") -> None:
        old = self._lifecycle
        if old is new:
            return
        self._lifecycle = new
        logger.info("rig session %s -> %s%s", old.value, new.value, f" ({reason})" if reason else "")
        if self._debug is not None:
            self._debug.add("lifecycle", old=old.value, new=new.value, reason=reason)

    def _publish(self, event: RigEvent) -> None:
        self.events.publish(event)
