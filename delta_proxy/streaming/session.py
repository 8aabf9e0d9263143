from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum

from delta_proxy.streaming.framer import DEFAULT_MAX_BUFFER_BYTES, StreamFramer


class SessionState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass(slots=True)
class StreamSession:
    framer: StreamFramer = field(
        default_factory=lambda: StreamFramer(DEFAULT_MAX_BUFFER_BYTES)
    )
    last_full_content: dict[int, str] = field(default_factory=dict)
    last_activity: float = field(default_factory=time.monotonic)
    state: SessionState = SessionState.OPEN
    records_forwarded: int = 0

    @property
    def done(self) -> bool:
        return self.state == SessionState.CLOSED

    def touch(self) -> None:
        self.last_activity = time.monotonic()

    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity
