from __future__ import annotations

from dataclasses import dataclass
from threading import Lock


@dataclass(slots=True)
class AdmissionConfig:
    max_concurrent_requests: int = 100
    retry_after_seconds: int = 5


class AdmissionTicket:
    """Proof of admission. Releasing it more than once is a no-op."""

    __slots__ = ("_controller", "_released")

    def __init__(self, controller: AdmissionController) -> None:
        self._controller = controller
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        with self._controller._lock:
            if self._released:
                return
            self._released = True
            self._controller._in_flight -= 1


class AdmissionController:
    def __init__(self, config: AdmissionConfig) -> None:
        self._config = config
        self._lock = Lock()
        self._in_flight = 0
        self._rejected_total = 0

    @property
    def retry_after_seconds(self) -> int:
        return self._config.retry_after_seconds

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def try_admit(self) -> AdmissionTicket | None:
        with self._lock:
            if self._in_flight >= max(1, self._config.max_concurrent_requests):
                self._rejected_total += 1
                return None
            self._in_flight += 1
        return AdmissionTicket(self)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "in_flight": self._in_flight,
                "max_concurrent_requests": self._config.max_concurrent_requests,
                "rejected_total": self._rejected_total,
            }
