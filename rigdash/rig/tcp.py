from __future__ import annotations
import asyncio
import contextlib
import logging
from typing import Dict, List, Optional, Tuple
from ..debug_log import DebugLog
from .backend import RigBackend
from .common import (
    CommandError,
    CommandTimeout,
    RadioCapabilities,
    RadioMode,
    RigConnectionError,
    TransportError,
    UNSUPPORTED_CODES,
    parse_dump_caps,
)

logger = logging.getLogger(__name__)


class RigctldBackend(RigBackend):
    """Adapter that talks to an external rigctld instance over TCP.

    A single stream is kept open between ``connect`` and ``disconnect``.
    Commands use the extended response protocol (``+`` prefix) so every reply
    is terminated by an ``RPRT`` line, and a lock keeps one round trip on the
    wire at a time so replies line up with requests.
    """

    serial_link = True

    def __init__(
        self,
        host: str = "127.0.0.1",
        port: int = 4532,
        *,
        timeout: float = 1.5,
        connect_timeout: float = 3.0,
        caps_timeout: float = 8.0,
        debug: Optional[DebugLog] = None,
    ):
        """Initialize the rigctld backend.

        Args:
            host: Hostname or IP address of rigctld.
            port: Port number of rigctld.
            timeout: Read deadline for a single reply, in seconds.
            connect_timeout: Deadline for opening the TCP stream.
            caps_timeout: Read deadline for ``dump_caps``, which is slow.
            debug: Optional traffic log.
        """
        self.host = host
        self.port = port
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.caps_timeout = caps_timeout
        self._debug = debug
        self._lock = asyncio.Lock()
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._closed = True

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def connect(self, host: str, port: int) -> None:
        async with self._lock:
            self._drop()
            self.host = host
            self.port = port
            await self._open()
            self._closed = False
        logger.info("connected to rigctld at %s:%s", host, port)

    async def disconnect(self) -> None:
        async with self._lock:
            self._closed = True
            writer = self._writer
            self._drop()
        if writer is not None:
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            logger.info("disconnected from rigctld at %s:%s", self.host, self.port)

    async def _open(self) -> None:
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.connect_timeout
            )
        except asyncio.TimeoutError:
            self._log("rigctld_error", error="connect timeout")
            raise RigConnectionError(
                f"rigctld connect timed out {self.host}:{self.port} after {self.connect_timeout:.1f}s"
            ) from None
        except (OSError, ValueError, OverflowError) as e:
            self._log("rigctld_error", error=str(e))
            raise RigConnectionError(f"rigctld connect failed {self.host}:{self.port}: {e}") from e
        self._reader, self._writer = reader, writer

    def _drop(self) -> None:
        # A stream interrupted mid-reply can't be reused: the leftover lines
        # would be read as the answer to the next command.
        writer = self._writer
        self._reader = None
        self._writer = None
        if writer is not None:
            with contextlib.suppress(Exception):
                writer.close()

    def _log(self, kind: str, **data) -> None:
        if self._debug is not None:
            self._debug.add(kind, **data)

    async def _send(self, cmd: str, timeout: Optional[float] = None) -> Tuple[int, List[str]]:
        """Send one command using the extended response protocol.

        Args:
            cmd: rigctl command string (e.g. 'f', 'M USB 2400').
            timeout: Reply deadline in seconds; defaults to ``self.timeout``.

        Returns:
            Tuple of (RPRT code, list of response lines).

        Raises:
            TransportError: The link is down or dropped during the exchange.
            CommandTimeout: No complete reply before the deadline.
        """
        timeout = self.timeout if timeout is None else timeout
        async with self._lock:
            if self._closed:
                raise TransportError("not connected to rigctld")
            if self._writer is None:
                try:
                    await self._open()
                except RigConnectionError as e:
                    raise TransportError(str(e)) from e
            reader, writer = self._reader, self._writer
            assert reader is not None and writer is not None

            logger.debug("rigctld tx %r", cmd)
            self._log("rigctld_tx", cmd=cmd)
            try:
                writer.write(("+" + cmd + "\n").encode())
                await writer.drain()
                code, lines = await asyncio.wait_for(self._read_reply(reader), timeout=timeout)
            except asyncio.TimeoutError:
                self._drop()
                self._log("rigctld_error", cmd=cmd, error="timeout")
                raise CommandTimeout(cmd, timeout) from None
            except OSError as e:
                self._drop()
                self._log("rigctld_error", cmd=cmd, error=str(e))
                raise TransportError(f"rigctld link lost: {e}") from e
            except asyncio.CancelledError:
                self._drop()
                raise

        logger.debug("rigctld rx %r -> RPRT %s %r", cmd, code, lines)
        self._log("rigctld_rx", cmd=cmd, rprt=code, lines=lines)
        return code, lines

    @staticmethod
    async def _read_reply(reader: asyncio.StreamReader) -> Tuple[int, List[str]]:
        lines: List[str] = []
        while True:
            data = await reader.readline()
            if not data:
                raise ConnectionResetError("rigctld closed the connection")
            s = data.decode(errors="ignore").strip("\r\n")
            if s.startswith("RPRT"):
                try:
                    return int(s.split()[1]), lines
                except (IndexError, ValueError):
                    return -1, lines
            if s:
                lines.append(s)

    async def _query(self, cmd: str, timeout: Optional[float] = None) -> Optional[List[str]]:
        code, lines = await self._send(cmd, timeout=timeout)
        if code == 0:
            return lines
        if code in UNSUPPORTED_CODES:
            return None
        raise CommandError(code, cmd)

    async def _command(self, cmd: str) -> None:
        code, _ = await self._send(cmd)
        if code != 0:
            raise CommandError(code, cmd)

    @staticmethod
    def _kv(lines: List[str]) -> Dict[str, str]:
        out: Dict[str, str] = {}
        for ln in lines:
            if ":" not in ln:
                continue
            k, v = ln.split(":", 1)
            out[k.strip()] = v.strip()
        return out

    @classmethod
    def _value(cls, lines: List[str], *keys: str) -> Optional[str]:
        kv = cls._kv(lines)
        for k in keys:
            if kv.get(k):
                return kv[k]
        # Plain replies carry the bare value on its own line
        bare = [ln.strip() for ln in lines if ":" not in ln and ln.strip()]
        return bare[-1] if bare else None

    @staticmethod
    def _number(val: Optional[str], cmd: str) -> float:
        try:
            return float(val)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise CommandError(-1, f"malformed reply to {cmd!r}: {val!r}") from None

    async def get_frequency(self) -> Optional[float]:
        lines = await self._query("f")
        if lines is None:
            return None
        return self._number(self._value(lines, "Frequency"), "f")

    async def get_mode(self) -> Tuple[Optional[RadioMode], Optional[float]]:
        lines = await self._query("m")
        if lines is None:
            return None, None
        kv = self._kv(lines)
        mode_s = kv.get("Mode")
        pb_s = kv.get("Passband")
        if mode_s is None:
            bare = [ln.strip() for ln in lines if ":" not in ln]
            mode_s = bare[0] if bare else None
            if pb_s is None and len(bare) >= 2:
                pb_s = bare[1]
        try:
            mode = RadioMode.parse(mode_s)
        except ValueError:
            raise CommandError(-1, f"malformed reply to 'm': {mode_s!r}") from None
        pb = self._number(pb_s, "m") if pb_s is not None else None
        return mode, pb

    async def get_power(self) -> Optional[float]:
        lines = await self._query("l RFPOWER")
        if lines is None:
            return None
        level = self._number(self._value(lines, "RFPOWER", "Level Value"), "l RFPOWER")
        return round(max(0.0, min(100.0, level * 100.0)), 1)

    async def get_ptt(self) -> Optional[bool]:
        lines = await self._query("t")
        if lines is None:
            return None
        return int(self._number(self._value(lines, "PTT"), "t")) != 0

    async def get_info(self) -> Optional[str]:
        lines = await self._query(r"\get_info")
        if lines is None:
            return None
        return self._value(lines, "Info") or None

    async def set_frequency(self, hz: float) -> None:
        await self._command(f"F {int(hz)}")

    async def set_mode(self, mode: RadioMode, bandwidth_hz: Optional[float] = None) -> None:
        mode = RadioMode.parse(mode)
        await self._command(f"M {mode.value} {int(bandwidth_hz) if bandwidth_hz else 0}")

    async def set_power(self, percent: float) -> None:
        await self._command(f"L RFPOWER {percent / 100.0:.3f}")

    async def set_ptt(self, enabled: bool) -> None:
        await self._command(f"T {1 if enabled else 0}")

    async def get_capabilities(self) -> RadioCapabilities:
        lines = await self._query(r"\dump_caps", timeout=self.caps_timeout)
        if not lines:
            return RadioCapabilities.default()
        if lines[0].strip() == "dump_caps:":
            lines = lines[1:]
        return parse_dump_caps("\n".join(lines))
