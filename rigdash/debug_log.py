from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Optional


@dataclass
class DebugEvent:
    ts: float
    kind: str
    data: Dict[str, Any]


class DebugLog:
    """Bounded in-memory record of daemon traffic and session transitions."""

    def __init__(self, maxlen: int = 500):
        self._events: Deque[DebugEvent] = deque(maxlen=max(1, maxlen))

    def __len__(self) -> int:
        return len(self._events)

    def add(self, kind: str, **data: Any) -> None:
        self._events.append(DebugEvent(ts=time.time(), kind=kind, data=data))

    def clear(self) -> None:
        self._events.clear()

    def snapshot(self, kind: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            {
                "ts": e.ts,
                "kind": e.kind,
                **e.data,
            }
            for e in list(self._events)
            if kind is None or e.kind == kind
        ]
