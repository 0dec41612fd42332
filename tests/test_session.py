"""Tests for RigSession: lifecycle, commands, refresh and polling."""
import asyncio
from typing import Dict, Optional

import pytest

from rigdash.config import RigctldConfig
from rigdash.events import EventBus
from rigdash.rig import (
    AlreadyConnectingError,
    CommandError,
    CommandTimeout,
    MockBackend,
    NotConnectedError,
    RadioCapabilities,
    RadioMode,
    RadioState,
    RigBackend,
    RigConnectionError,
    RigctldBackend,
    Supports,
)
from rigdash.rig.session import Lifecycle, RigSession


class FakeBackend(RigBackend):
    """Scriptable adapter. Reads capture their value before waiting on ``read_gate``."""

    def __init__(self):
        self.values = {
            "frequency_hz": 7074000.0,
            "mode": RadioMode.USB,
            "bandwidth_hz": 2400.0,
            "power_percent": 40.0,
            "ptt": False,
            "model": "FAKE-1",
        }
        self.calls = []
        self.connect_error: Optional[Exception] = None
        self.connect_delay = 0.0
        self.read_error: Optional[Exception] = None
        self.failures: Dict[str, Exception] = {}
        self.read_gate: Optional[asyncio.Event] = None
        self.write_delay = 0.0
        self.caps_error: Optional[Exception] = None

    async def connect(self, host, port):
        self.calls.append(("connect", host, port))
        if self.connect_delay:
            await asyncio.sleep(self.connect_delay)
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self):
        self.calls.append(("disconnect",))

    async def _read(self, name):
        self.calls.append(("read", name))
        value = self.values[name]
        if self.read_gate is not None:
            await self.read_gate.wait()
        if self.read_error is not None:
            raise self.read_error
        if name in self.failures:
            raise self.failures[name]
        return value

    async def get_frequency(self):
        return await self._read("frequency_hz")

    async def get_mode(self):
        bw = self.values["bandwidth_hz"]
        return await self._read("mode"), bw

    async def get_power(self):
        return await self._read("power_percent")

    async def get_ptt(self):
        return await self._read("ptt")

    async def get_info(self):
        return await self._read("model")

    async def _write(self, name, field, value):
        self.calls.append((name, value))
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        self.values[field] = value

    async def set_frequency(self, hz):
        await self._write("set_frequency", "frequency_hz", hz)

    async def set_mode(self, mode, bandwidth_hz=None):
        await self._write("set_mode", "mode", mode)
        if bandwidth_hz is not None:
            self.values["bandwidth_hz"] = bandwidth_hz

    async def set_power(self, percent):
        await self._write("set_power", "power_percent", percent)

    async def set_ptt(self, enabled):
        await self._write("set_ptt", "ptt", enabled)

    async def get_capabilities(self):
        if self.caps_error is not None:
            raise self.caps_error
        return RadioCapabilities(levels=("RFPOWER",), modes=("USB", "LSB"), model="FAKE-1",
                                 supports=Supports(set_power=True))


def make_session(backend=None, **kwargs):
    kwargs.setdefault("auto_poll", False)
    session = RigSession(backend or FakeBackend(), **kwargs)
    seen = []
    session.events.subscribe(seen.append)
    return session, seen


def kinds(seen):
    return [e.kind for e in seen]


async def wait_for_lifecycle(session, lifecycle, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while session.lifecycle is not lifecycle:
        assert loop.time() < deadline, f"still {session.lifecycle}"
        await asyncio.sleep(0.01)


# --- connect ---

@pytest.mark.asyncio
async def test_connect_populates_state_and_publishes():
    session, seen = make_session()
    state = await session.connect("rig.local", 4532)

    assert session.lifecycle is Lifecycle.CONNECTED
    assert session.target == ("rig.local", 4532)
    assert state == RadioState(
        connected=True,
        frequency_hz=7074000.0,
        mode=RadioMode.USB,
        bandwidth_hz=2400.0,
        power_percent=40.0,
        ptt=False,
        model="FAKE-1",
    )
    assert session.get_capabilities().supports.set_power is True
    assert kinds(seen) == ["connected", "radio_state"]
    assert seen[0].host == "rig.local" and seen[0].port == 4532
    await session.close()


@pytest.mark.asyncio
async def test_connect_failure_publishes_connection_failed():
    backend = FakeBackend()
    backend.connect_error = RigConnectionError("refused")
    session, seen = make_session(backend)

    with pytest.raises(RigConnectionError):
        await session.connect("127.0.0.1", 4532)

    assert session.lifecycle is Lifecycle.DISCONNECTED
    assert session.get_state() == RadioState()
    assert kinds(seen) == ["connection_failed"]
    assert seen[0].reason == "refused"
    # Partial link is released
    assert ("disconnect",) in backend.calls


@pytest.mark.asyncio
async def test_connect_fails_when_initial_refresh_fails():
    backend = FakeBackend()
    backend.read_error = CommandError(-1, "garbled")
    session, seen = make_session(backend)

    with pytest.raises(RigConnectionError):
        await session.connect("127.0.0.1", 4532)
    assert session.lifecycle is Lifecycle.DISCONNECTED
    assert kinds(seen) == ["connection_failed"]


@pytest.mark.asyncio
async def test_connect_times_out():
    backend = FakeBackend()
    backend.connect_delay = 1.0
    session, seen = make_session(backend, connect_timeout=0.05)

    with pytest.raises(RigConnectionError):
        await session.connect("10.0.0.99", 4532)
    assert session.lifecycle is Lifecycle.DISCONNECTED
    assert kinds(seen) == ["connection_failed"]


@pytest.mark.asyncio
async def test_capabilities_failure_falls_back_to_defaults():
    backend = FakeBackend()
    backend.caps_error = CommandError(-1, "dump_caps unsupported")
    session, seen = make_session(backend)

    await session.connect("127.0.0.1", 4532)
    assert session.lifecycle is Lifecycle.CONNECTED
    assert session.get_capabilities() == RadioCapabilities.default()
    await session.close()


@pytest.mark.asyncio
async def test_connect_same_target_is_noop():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    await session.connect("127.0.0.1", 4532)

    assert [c for c in backend.calls if c[0] == "connect"] == [("connect", "127.0.0.1", 4532)]
    assert kinds(seen) == ["connected", "radio_state"]
    await session.close()


@pytest.mark.asyncio
async def test_connect_other_target_reconnects():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    await session.connect("127.0.0.1", 4533)

    assert session.target == ("127.0.0.1", 4533)
    assert session.lifecycle is Lifecycle.CONNECTED
    assert kinds(seen) == ["connected", "radio_state", "disconnected", "connected", "radio_state"]
    assert seen[2].reason == "reconnect"
    await session.close()


@pytest.mark.asyncio
async def test_overlapping_connect_is_rejected():
    backend = FakeBackend()
    backend.connect_delay = 0.1
    session, seen = make_session(backend)

    first = asyncio.create_task(session.connect("127.0.0.1", 4532))
    await asyncio.sleep(0.01)
    assert session.lifecycle is Lifecycle.CONNECTING

    with pytest.raises(AlreadyConnectingError):
        await session.connect("127.0.0.1", 4533)

    await first
    assert session.target == ("127.0.0.1", 4532)
    await session.close()


@pytest.mark.asyncio
async def test_overlapping_connect_names_the_target_in_flight():
    backend = FakeBackend()
    session, _ = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    # Hold the old session's teardown open with a slow write
    backend.write_delay = 0.1
    write = asyncio.create_task(session.set_ptt(True))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(session.connect("10.0.0.7", 4533))
    await asyncio.sleep(0.01)
    assert session.target == ("127.0.0.1", 4532)

    with pytest.raises(AlreadyConnectingError) as exc:
        await session.connect("127.0.0.1", 4534)
    assert "10.0.0.7:4533" in str(exc.value)

    await write
    await second
    assert session.target == ("10.0.0.7", 4533)
    await session.close()


# --- disconnect ---

@pytest.mark.asyncio
async def test_disconnect_resets_state():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    await session.disconnect()

    assert session.lifecycle is Lifecycle.DISCONNECTED
    assert session.get_state() == RadioState()
    assert session.get_capabilities() is None
    assert kinds(seen)[-1] == "disconnected"
    assert seen[-1].reason == "user_request"
    assert backend.calls[-1] == ("disconnect",)


@pytest.mark.asyncio
async def test_reconnect_after_disconnect_refetches_everything():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    await session.set_frequency(14200000)
    await session.disconnect()

    backend.values["frequency_hz"] = 3573000.0
    backend.values["mode"] = RadioMode.LSB
    state = await session.connect("127.0.0.1", 4532)

    assert session.lifecycle is Lifecycle.CONNECTED
    assert state.frequency_hz == 3573000.0
    assert state.mode is RadioMode.LSB
    assert session.get_capabilities() is not None
    assert kinds(seen).count("connected") == 2
    await session.close()


@pytest.mark.asyncio
async def test_poll_timeout_degrades_and_keeps_snapshot():
    backend = FakeBackend()
    session, seen = make_session(backend, poll_interval_ms=20, command_timeout=0.05)
    await session.connect("127.0.0.1", 4532)
    before = session.get_state()

    backend.read_gate = asyncio.Event()
    await session.start_polling()
    await wait_for_lifecycle(session, Lifecycle.DEGRADED)

    assert "connection_degraded" in kinds(seen)
    assert session.get_state() is before
    assert session.get_state().connected is True

    backend.read_gate.set()
    await session.close()


@pytest.mark.asyncio
async def test_disconnect_when_disconnected_is_noop():
    session, seen = make_session()
    await session.disconnect()
    await session.disconnect()
    assert seen == []


@pytest.mark.asyncio
async def test_disconnect_waits_for_in_flight_command():
    backend = FakeBackend()
    backend.write_delay = 0.05
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    write = asyncio.create_task(session.set_frequency(14074000))
    await asyncio.sleep(0.01)
    assert [p.command for p in session.pending] == ["set_frequency"]

    await session.disconnect()
    await write

    names = [c[0] for c in backend.calls]
    assert names.index("set_frequency") < names.index("disconnect")
    assert session.pending == []
    # The late write does not leak into the reset snapshot
    assert session.get_state() == RadioState()
    assert "frequency_changed" not in kinds(seen)


@pytest.mark.asyncio
async def test_close_stops_polling_and_reports_shutdown():
    session, seen = make_session(auto_poll=True, poll_interval_ms=50)
    await session.connect("127.0.0.1", 4532)
    assert session.is_polling

    await session.close()
    assert not session.is_polling
    assert kinds(seen)[-2:] == ["polling_stopped", "disconnected"]
    assert seen[-1].reason == "shutdown"


# --- commands ---

@pytest.mark.asyncio
async def test_commands_require_live_session():
    session, _ = make_session()
    with pytest.raises(NotConnectedError):
        await session.set_frequency(14074000)
    with pytest.raises(NotConnectedError):
        await session.set_ptt(True)
    with pytest.raises(NotConnectedError):
        await session.start_polling()


@pytest.mark.asyncio
async def test_set_frequency_is_optimistic():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    backend.read_gate = asyncio.Event()
    mark = len(seen)

    state = await session.set_frequency(14074000)
    assert state.frequency_hz == 14074000.0
    assert session.get_state().frequency_hz == 14074000.0
    assert ("set_frequency", 14074000.0) in backend.calls
    # The reconciling refresh is still held at the gate
    await asyncio.sleep(0.01)
    assert kinds(seen[mark:]) == ["frequency_changed"]

    backend.read_gate.set()
    for _ in range(100):
        if "radio_state" in kinds(seen[mark:]):
            break
        await asyncio.sleep(0.01)
    assert kinds(seen[mark:]) == ["frequency_changed", "radio_state"]
    assert session.get_state().frequency_hz == 14074000.0
    await session.close()


@pytest.mark.asyncio
async def test_set_mode_power_ptt():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    await session.set_mode("cw", 500)
    await session.set_power(75)
    state = await session.set_ptt(True)

    assert state.mode is RadioMode.CW
    assert state.bandwidth_hz == 500.0
    assert state.power_percent == 75.0
    assert state.ptt is True
    for kind in ("mode_changed", "power_changed", "ptt_changed"):
        assert kind in kinds(seen)
    await session.close()


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_rig():
    backend = FakeBackend()
    session, _ = make_session(backend)
    await session.connect("127.0.0.1", 4532)
    before = len(backend.calls)

    with pytest.raises(ValueError):
        await session.set_frequency(0)
    with pytest.raises(ValueError):
        await session.set_power(101)
    with pytest.raises(ValueError):
        await session.set_mode("BOGUS")
    with pytest.raises(ValueError):
        await session.set_mode("USB", -5)

    assert len(backend.calls) == before
    await session.close()


@pytest.mark.asyncio
async def test_command_timeout_leaves_state_unchanged():
    backend = FakeBackend()
    backend.write_delay = 1.0
    session, seen = make_session(backend, command_timeout=0.05)
    await session.connect("127.0.0.1", 4532)

    with pytest.raises(CommandTimeout):
        await session.set_frequency(21074000)
    assert session.get_state().frequency_hz == 7074000.0
    assert session.pending == []
    assert "frequency_changed" not in kinds(seen)
    await session.close()


@pytest.mark.asyncio
async def test_tune_always_releases_ptt():
    backend = FakeBackend()
    session, _ = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    state = await session.tune(20)
    assert [c for c in backend.calls if c[0] == "set_ptt"] == [("set_ptt", True), ("set_ptt", False)]
    assert state.ptt is False
    await session.close()


# --- refresh ---

@pytest.mark.asyncio
async def test_refresh_started_before_write_does_not_clobber_it():
    backend = FakeBackend()
    session, _ = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    backend.read_gate = asyncio.Event()
    refresh = asyncio.create_task(session.refresh())
    await asyncio.sleep(0.01)

    await session.set_frequency(21074000)
    backend.read_gate.set()
    assert await refresh is True

    assert session.get_state().frequency_hz == 21074000.0
    await asyncio.sleep(0.02)
    assert session.get_state().frequency_hz == 21074000.0
    await session.close()


@pytest.mark.asyncio
async def test_unsupported_reads_keep_previous_values():
    backend = FakeBackend()
    session, _ = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    backend.values["power_percent"] = None
    backend.values["frequency_hz"] = 3573000.0
    assert await session.refresh() is True

    state = session.get_state()
    assert state.power_percent == 40.0
    assert state.frequency_hz == 3573000.0
    await session.close()


@pytest.mark.asyncio
async def test_refresh_failure_degrades_then_recovers():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    before = session.get_state()
    backend.read_error = CommandError(-6, "link lost")
    assert await session.refresh() is False
    assert session.get_state() is before
    assert session.lifecycle is Lifecycle.DEGRADED
    assert session.consecutive_failures == 1
    # Last good snapshot is kept while degraded
    assert session.get_state().frequency_hz == 7074000.0
    assert session.get_state().connected is True
    assert kinds(seen)[-2:] == ["connection_degraded", "polling_error"]
    assert seen[-1].consecutive_failures == 1

    # Commands are still accepted while degraded
    await session.set_ptt(False)

    backend.read_error = None
    assert await session.refresh() is True
    assert session.lifecycle is Lifecycle.CONNECTED
    assert session.consecutive_failures == 0
    await session.close()


@pytest.mark.asyncio
async def test_one_failed_read_discards_the_whole_refresh():
    backend = FakeBackend()
    session, seen = make_session(backend)
    await session.connect("127.0.0.1", 4532)

    before = session.get_state()
    backend.values["frequency_hz"] = 14074000.0
    backend.values["mode"] = RadioMode.CW
    backend.failures["power_percent"] = CommandError(-1, "level read failed")
    backend.calls.clear()
    assert await session.refresh() is False

    assert session.get_state() is before
    assert session.lifecycle is Lifecycle.DEGRADED
    assert session.get_state().frequency_hz == 7074000.0
    assert session.get_state().mode is RadioMode.USB
    assert kinds(seen)[-2:] == ["connection_degraded", "polling_error"]
    # The sibling reads still ran to completion
    assert {c[1] for c in backend.calls if c[0] == "read"} == {
        "frequency_hz", "mode", "power_percent", "ptt", "model",
    }
    await session.close()


@pytest.mark.asyncio
async def test_failure_threshold_forces_disconnect():
    backend = FakeBackend()
    session, seen = make_session(backend, failure_threshold=2)
    await session.connect("127.0.0.1", 4532)

    backend.read_error = CommandError(-6, "link lost")
    await session.refresh()
    assert session.lifecycle is Lifecycle.DEGRADED
    await session.refresh()

    await wait_for_lifecycle(session, Lifecycle.DISCONNECTED)
    disconnected = [e for e in seen if e.kind == "disconnected"]
    assert len(disconnected) == 1
    assert disconnected[0].reason.startswith("2 consecutive failures")
    assert session.get_state() == RadioState()


@pytest.mark.asyncio
async def test_zero_threshold_never_escalates():
    backend = FakeBackend()
    session, _ = make_session(backend, failure_threshold=0)
    await session.connect("127.0.0.1", 4532)

    backend.read_error = CommandError(-6, "link lost")
    for _ in range(5):
        await session.refresh()
    await asyncio.sleep(0.02)
    assert session.lifecycle is Lifecycle.DEGRADED
    assert session.consecutive_failures == 5
    await session.close()


# --- polling ---

@pytest.mark.asyncio
async def test_polling_picks_up_rig_changes():
    backend = FakeBackend()
    session, seen = make_session(backend, poll_interval_ms=20)
    await session.connect("127.0.0.1", 4532)

    await session.start_polling()
    assert session.is_polling
    backend.values["frequency_hz"] = 10136000.0
    await asyncio.sleep(0.15)
    assert session.get_state().frequency_hz == 10136000.0

    await session.stop_polling()
    assert not session.is_polling
    assert "polling_started" in kinds(seen)
    assert kinds(seen).count("radio_state") >= 2
    assert "polling_stopped" in kinds(seen)
    await session.close()


@pytest.mark.asyncio
async def test_start_polling_twice_is_noop():
    session, seen = make_session(poll_interval_ms=50)
    await session.connect("127.0.0.1", 4532)
    await session.start_polling()
    await session.start_polling()
    assert kinds(seen).count("polling_started") == 1

    await session.stop_polling()
    await session.stop_polling()
    assert kinds(seen).count("polling_stopped") == 1
    await session.close()


@pytest.mark.asyncio
async def test_start_polling_validates_interval():
    session, _ = make_session()
    await session.connect("127.0.0.1", 4532)
    with pytest.raises(ValueError):
        await session.start_polling(0)
    await session.start_polling(250)
    assert session.poll_interval_ms == 250
    await session.close()


@pytest.mark.asyncio
async def test_slow_refresh_skips_ticks_instead_of_stacking():
    backend = FakeBackend()
    session, _ = make_session(backend, poll_interval_ms=20)
    await session.connect("127.0.0.1", 4532)

    backend.read_gate = asyncio.Event()
    backend.calls.clear()
    await session.start_polling()
    await asyncio.sleep(0.15)
    assert session.skipped_ticks >= 1
    # One refresh is held at the gate; skipped ticks issue no reads
    reads = [c for c in backend.calls if c[0] == "read"]
    assert len(reads) == 5
    assert len(session.pending) == 5

    backend.read_gate.set()
    await session.close()


def test_poll_delay_backs_off_while_failing():
    session, _ = make_session(poll_interval_ms=100, backoff_max_ms=1000)
    assert session._poll_delay() == pytest.approx(0.1)
    session._consecutive_failures = 1
    assert session._poll_delay() == pytest.approx(0.2)
    session._consecutive_failures = 2
    assert session._poll_delay() == pytest.approx(0.4)
    session._consecutive_failures = 10
    assert session._poll_delay() == pytest.approx(1.0)


# --- construction ---

def test_from_config_builds_backend():
    bus = EventBus()
    mock_session = RigSession.from_config(RigctldConfig(backend="mock"), events=bus)
    assert isinstance(mock_session._backend, MockBackend)
    assert mock_session.events is bus

    cfg = RigctldConfig(host="shack", port=4600, command_timeout_ms=500, failure_threshold=3)
    tcp_session = RigSession.from_config(cfg)
    assert isinstance(tcp_session._backend, RigctldBackend)
    assert tcp_session._backend.host == "shack"
    assert tcp_session._backend.port == 4600
    assert tcp_session.command_timeout == pytest.approx(0.5)
    assert tcp_session.failure_threshold == 3


@pytest.mark.asyncio
async def test_status_summary():
    session, _ = make_session()
    status = session.status()
    assert status["lifecycle"] == "disconnected"
    assert status["target"] is None
    assert status["capabilities"] is None

    await session.connect("127.0.0.1", 4532)
    status = session.status()
    assert status["lifecycle"] == "connected"
    assert status["target"] == {"host": "127.0.0.1", "port": 4532}
    assert status["state"]["mode"] == "USB"
    assert status["capabilities"]["model"] == "FAKE-1"
    await session.close()


@pytest.mark.asyncio
async def test_mock_backend_session_roundtrip():
    session = RigSession(MockBackend(), auto_poll=False)
    await session.connect("mock", 0)
    await session.set_frequency(3573000)
    await session.set_mode("LSB")
    assert await session.refresh() is True
    state = session.get_state()
    assert state.frequency_hz == 3573000
    assert state.mode is RadioMode.LSB
    assert state.model == "MOCK-IC7300"
    await session.close()
