from __future__ import annotations
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class RadioMode(str, Enum):
    """Operating modes as named by hamlib."""
    USB = "USB"
    LSB = "LSB"
    CW = "CW"
    CWR = "CWR"
    RTTY = "RTTY"
    RTTYR = "RTTYR"
    AM = "AM"
    AMN = "AMN"
    AMS = "AMS"
    FM = "FM"
    FMN = "FMN"
    WFM = "WFM"
    PKTLSB = "PKTLSB"
    PKTUSB = "PKTUSB"
    PKTFM = "PKTFM"
    PKTFMN = "PKTFMN"
    PKTAM = "PKTAM"
    ECSSUSB = "ECSSUSB"
    ECSSLSB = "ECSSLSB"
    FAX = "FAX"
    SAM = "SAM"
    SAL = "SAL"
    SAH = "SAH"
    DSB = "DSB"
    CWN = "CWN"
    PSK = "PSK"
    PSKR = "PSKR"
    C4FM = "C4FM"
    DSTAR = "D-STAR"
    IQ = "IQ"

    @classmethod
    def parse(cls, value: Any) -> "RadioMode":
        """Parse a mode name, case-insensitively.

        Raises:
            ValueError: If the name is not a known mode.
        """
        if isinstance(value, cls):
            return value
        s = str(value or "").strip().upper()
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"unknown mode: {value!r}") from None


class RigError(Exception):
    """Base class for rig session errors."""


class RigConnectionError(RigError, ConnectionError):
    """Raised when the rig-control daemon cannot be reached."""


class CommandError(RigError):
    """Raised when the daemon rejects a command or replies with garbage."""
    def __init__(self, code: int = -1, message: str = ""):
        self.code = code
        self.message = message
        super().__init__(f"RPRT {code}: {message}" if message else f"RPRT {code}")


class CommandTimeout(CommandError, TimeoutError):
    """Raised when a command exceeds its deadline."""
    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(-5, f"{command} timed out after {timeout:.2f}s")


class TransportError(CommandError):
    """Raised when the link to the daemon is down."""
    def __init__(self, message: str):
        super().__init__(-6, message)


class NotConnectedError(RigError):
    """Raised when a command is issued without a live session."""


class AlreadyConnectingError(RigError):
    """Raised when a connect attempt overlaps another one."""


# hamlib RPRT codes meaning "this rig can't do that"
RPRT_NOT_IMPLEMENTED = -4
RPRT_NOT_AVAILABLE = -11
UNSUPPORTED_CODES = frozenset({RPRT_NOT_IMPLEMENTED, RPRT_NOT_AVAILABLE})


@dataclass(frozen=True)
class RadioState:
    connected: bool = False
    frequency_hz: Optional[float] = None
    mode: Optional[RadioMode] = None
    bandwidth_hz: Optional[float] = None
    power_percent: Optional[float] = None
    ptt: Optional[bool] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.mode is not None:
            data["mode"] = self.mode.value
        return data


STATE_FIELDS: Tuple[str, ...] = (
    "frequency_hz",
    "mode",
    "bandwidth_hz",
    "power_percent",
    "ptt",
    "model",
)


@dataclass(frozen=True)
class Supports:
    set_frequency: bool = True
    set_mode: bool = True
    set_power: bool = False
    set_ptt: bool = True


@dataclass(frozen=True)
class RadioCapabilities:
    levels: Tuple[str, ...] = ()
    funcs: Tuple[str, ...] = ()
    modes: Tuple[str, ...] = ()
    vfos: Tuple[str, ...] = ()
    model: Optional[str] = None
    supports: Supports = field(default_factory=Supports)

    @classmethod
    def default(cls) -> "RadioCapabilities":
        """Capabilities assumed when the rig can't describe itself."""
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "levels": list(self.levels),
            "funcs": list(self.funcs),
            "modes": list(self.modes),
            "vfos": list(self.vfos),
            "model": self.model,
            "supports": asdict(self.supports),
        }


def _parse_bool_flag(v: str) -> bool:
    """Parse a boolean flag from dump_caps output.

    Args:
        v: Flag character ('Y', 'E', 'N', etc.).

    Returns:
        True if flag is 'Y' or 'E', False otherwise.
    """
    s = (v or "").strip().upper()
    return s in {"Y", "E"}


def _parse_token_list(rest: str) -> list[str]:
    """Parse a whitespace separated token list from dump_caps output.

    Level entries carry a range suffix (``RFPOWER(0..1/0.0039)``) which is
    dropped. Order is kept, duplicates removed.
    """
    rest = (rest or "").strip()
    if not rest or rest.startswith("None"):
        return []
    out: list[str] = []
    seen: set[str] = set()
    for tok in rest.split():
        t = tok.split("(", 1)[0].strip().rstrip(",;:.")
        if not t or t == "None":
            continue
        if t not in seen:
            seen.add(t)
            out.append(t)
    return out


def parse_dump_caps(text: str) -> RadioCapabilities:
    """Parse rig capabilities from ``dump_caps`` output.

    Args:
        text: Output of the ``\\dump_caps`` command.

    Returns:
        A RadioCapabilities instance. Flags missing from the output fall back
        to the defaults of ``Supports``.
    """
    lists: Dict[str, list[str]] = {"levels": [], "funcs": [], "modes": [], "vfos": []}
    flags: Dict[str, bool] = {}
    model: Optional[str] = None

    list_map = {
        "get level": "levels",
        "set level": "levels",
        "get functions": "funcs",
        "set functions": "funcs",
        "mode list": "modes",
        "vfo list": "vfos",
    }
    flag_map = {
        "can set frequency": "set_frequency",
        "can set mode": "set_mode",
        "can set ptt": "set_ptt",
    }
    set_levels: list[str] = []

    for line in (text or "").splitlines():
        s = line.strip()
        if ":" not in s:
            continue
        key, rest = s.split(":", 1)
        key = key.strip().lower()

        if key == "model name":
            model = rest.strip() or None
        elif key in list_map:
            bucket = lists[list_map[key]]
            for tok in _parse_token_list(rest):
                if tok not in bucket:
                    bucket.append(tok)
            if key == "set level":
                set_levels.extend(_parse_token_list(rest))
        elif key in flag_map:
            flags[flag_map[key]] = _parse_bool_flag(rest.strip()[:1])

    supports = Supports(
        set_frequency=flags.get("set_frequency", True),
        set_mode=flags.get("set_mode", True),
        set_power="RFPOWER" in set_levels,
        set_ptt=flags.get("set_ptt", True),
    )
    return RadioCapabilities(
        levels=tuple(lists["levels"]),
        funcs=tuple(lists["funcs"]),
        modes=tuple(lists["modes"]),
        vfos=tuple(lists["vfos"]),
        model=model,
        supports=supports,
    )
