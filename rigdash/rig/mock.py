from __future__ import annotations
import asyncio
from typing import Optional, Tuple
from .backend import RigBackend
from .common import RadioCapabilities, RadioMode, Supports, TransportError


class MockBackend(RigBackend):
    """In-memory rig simulator.

    Behaves like a well-mannered rigctld: every primitive succeeds once
    connected and set commands take effect immediately.
    """

    def __init__(self, *, latency: float = 0.0, model: str = "MOCK-IC7300"):
        self.latency = latency
        self.model = model
        self.connected = False
        self.frequency_hz: float = 14074000
        self.mode: RadioMode = RadioMode.USB
        self.bandwidth_hz: float = 2800
        self.power_percent: float = 50
        self.ptt: bool = False

    async def _tick(self) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        if not self.connected:
            raise TransportError("mock rig not connected")

    async def connect(self, host: str, port: int) -> None:
        if self.latency:
            await asyncio.sleep(self.latency)
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def get_frequency(self) -> Optional[float]:
        await self._tick()
        return self.frequency_hz

    async def get_mode(self) -> Tuple[Optional[RadioMode], Optional[float]]:
        await self._tick()
        return self.mode, self.bandwidth_hz

    async def get_power(self) -> Optional[float]:
        await self._tick()
        return self.power_percent

    async def get_ptt(self) -> Optional[bool]:
        await self._tick()
        return self.ptt

    async def get_info(self) -> Optional[str]:
        await self._tick()
        return self.model

    async def set_frequency(self, hz: float) -> None:
        await self._tick()
        self.frequency_hz = hz

    async def set_mode(self, mode: RadioMode, bandwidth_hz: Optional[float] = None) -> None:
        await self._tick()
        self.mode = RadioMode.parse(mode)
        if bandwidth_hz is not None:
            self.bandwidth_hz = bandwidth_hz

    async def set_power(self, percent: float) -> None:
        await self._tick()
        self.power_percent = percent

    async def set_ptt(self, enabled: bool) -> None:
        await self._tick()
        self.ptt = bool(enabled)

    async def get_capabilities(self) -> RadioCapabilities:
        await self._tick()
        return RadioCapabilities(
            levels=("AF", "RF", "SQL", "RFPOWER", "MICGAIN", "STRENGTH"),
            funcs=("NB", "NR", "ANF", "TUNER", "VOX"),
            modes=tuple(m.value for m in (
                RadioMode.USB, RadioMode.LSB, RadioMode.CW, RadioMode.CWR,
                RadioMode.AM, RadioMode.FM, RadioMode.RTTY, RadioMode.PKTUSB,
            )),
            vfos=("VFOA", "VFOB", "MEM"),
            model=self.model,
            supports=Supports(set_frequency=True, set_mode=True, set_power=True, set_ptt=True),
        )
