"""OCPP status resolution across the three status sources.

Each source writes its latest code into its own slot; ``resolve()`` picks
the most trusted slot that is still fresh:

  1. journal        StatusNotification frames actually sent to the backend
  2. session-event  state machine session label, classified
  3. telemetry      SENSOR_OCPP_STATUS (may lag behind)

When nothing is fresh the telemetry value is returned anyway (or 0 if it
was never seen), so resolution never fails.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from ocpp import describe_status

DEFAULT_STALE_SECONDS = 600.0


class StatusSource(str, Enum):
    JOURNAL = "journal"
    SESSION_EVENT = "session-event"
    TELEMETRY = "telemetry"


# Highest trust first
SOURCE_PRIORITY = (StatusSource.JOURNAL, StatusSource.SESSION_EVENT, StatusSource.TELEMETRY)


@dataclass(frozen=True)
class StatusObservation:
    source: StatusSource
    code: int
    observed_at: float


@dataclass(frozen=True)
class ResolvedStatus:
    code: int
    description: str
    source: StatusSource | None = None  # None when no slot has been observed at all


class StatusResolver:
    """Holds the last observation per source and resolves the current status.

    Writers (journal watcher, event listener, telemetry ingestion) and the
    polling tick share one lock covering both code and timestamp.
    """

    def __init__(
        self,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._slots: dict[StatusSource, StatusObservation] = {}

    def observe(self, source: StatusSource, code: int) -> StatusObservation:
        """Record a fresh observation for ``source``."""
        obs = StatusObservation(source=source, code=int(code), observed_at=self._clock())
        with self._lock:
            self._slots[source] = obs
        return obs

    def latest(self, source: StatusSource) -> StatusObservation | None:
        with self._lock:
            return self._slots.get(source)

    def resolve(self) -> ResolvedStatus:
        now = self._clock()
        with self._lock:
            slots = dict(self._slots)

        for source in SOURCE_PRIORITY:
            obs = slots.get(source)
            if obs is not None and now - obs.observed_at < self.stale_seconds:
                return ResolvedStatus(obs.code, describe_status(obs.code), source)

        telemetry = slots.get(StatusSource.TELEMETRY)
        if telemetry is not None:
            return ResolvedStatus(telemetry.code, describe_status(telemetry.code), StatusSource.TELEMETRY)
        return ResolvedStatus(0, describe_status(0))
