"""Mismatch detection and self-healing for the OCPP stack.

The charger sometimes keeps reporting a free connector (Available, Finishing,
...) to the OCPP backend while the control pilot says a car is plugged in and
charging. Once that has lasted ``threshold`` seconds the charging services are
restarted, at most ``max_restarts`` times per mismatch and never more often
than ``cooldown``. After that, if enabled, the whole box is rebooted (again
throttled by ``cooldown``).

A separate safety net reboots when the pilot reports a hardware error code
for ``pilot_error_seconds``, independent of the mismatch logic.

Every component here is driven explicitly once per tick, with time coming
from an injectable clock.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from shared.log import get_logger

from ocpp import indicates_disconnect
from process_control import ProcessControlError
from status import ResolvedStatus

if TYPE_CHECKING:
    from process_control import SystemdControl

logger = get_logger("healing")

Clock = Callable[[], float]


class HealAction(str, Enum):
    STOP_START = "stop_start"
    RESTART = "restart"
    REBOOT = "reboot"
    NOOP = "noop"


@dataclass
class HealAttempt:
    action: HealAction
    detail: str
    error: str | None = None
    at: float = 0.0


@dataclass
class MismatchWindow:
    active: bool = False
    started_at: float | None = None
    restart_count: int = 0

    def open(self, now: float) -> None:
        self.active = True
        self.started_at = now
        self.restart_count = 0

    def reset(self) -> None:
        self.active = False
        self.started_at = None
        self.restart_count = 0

    def record_restart(self, now: float) -> None:
        """Count a successful restart and re-arm the threshold timer."""
        self.restart_count += 1
        self.started_at = now


@dataclass
class RestartThrottle:
    last_restart_at: float | None = None
    last_full_reboot_at: float | None = None


@dataclass
class PilotErrorWindow:
    started_at: float | None = None
    last_reboot_at: float | None = None


def _elapsed(now: float, since: float | None, period: float) -> bool:
    return since is None or now - since >= period


# ──────────────────────────────────────────────────────────────
# Background reboots
# ──────────────────────────────────────────────────────────────


class RebootDispatcher:
    """Runs reboots as background tasks so the tick never waits on them."""

    def __init__(self, control: SystemdControl) -> None:
        self._control = control
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, reason: str, on_error: Callable[[str], None] | None = None) -> asyncio.Task:
        logger.warning("reboot_dispatched", reason=reason)
        task = asyncio.get_running_loop().create_task(self._reboot(reason, on_error))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _reboot(self, reason: str, on_error: Callable[[str], None] | None) -> None:
        try:
            await self._control.reboot()
        except ProcessControlError as exc:
            logger.error("reboot_failed", reason=reason, error=str(exc))
            if on_error is not None:
                on_error(str(exc))

    async def drain(self) -> None:
        """Wait for outstanding reboot tasks."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


# ──────────────────────────────────────────────────────────────
# Mismatch detector
# ──────────────────────────────────────────────────────────────


class MismatchDetector:
    """Tracks how long the pilot and the OCPP status have disagreed."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self.window = MismatchWindow()

    @property
    def active(self) -> bool:
        return self.window.active

    def update(self, pilot_connected: bool, status: ResolvedStatus, pilot_desc: str = "") -> bool:
        now = self._clock()
        if pilot_connected and indicates_disconnect(status.code):
            if not self.window.active:
                self.window.open(now)
                logger.warning(
                    "ocpp_mismatch_detected",
                    pilot=pilot_desc,
                    ocpp_code=status.code,
                    ocpp=status.description,
                    source=status.source.value if status.source else None,
                )
        elif self.window.active:
            started = self.window.started_at or now
            logger.info("ocpp_mismatch_cleared", duration_s=round(now - started, 1))
            self.window.reset()
        return self.window.active


# ──────────────────────────────────────────────────────────────
# Healing controller
# ──────────────────────────────────────────────────────────────


class HealingController:
    """Bounded restart/reboot sequence driven by the mismatch window.

    Clear → MismatchActive → (restart)* → reboot (if enabled) → Clear
    """

    def __init__(
        self,
        control: SystemdControl,
        dispatcher: RebootDispatcher,
        services: Sequence[str],
        dependencies: Sequence[str] = (),
        threshold: float = 60,
        cooldown: float = 600,
        max_restarts: int = 3,
        full_reboot: bool = False,
        clock: Clock = time.time,
        on_attempt: Callable[[HealAttempt], None] | None = None,
    ) -> None:
        self._control = control
        self._dispatcher = dispatcher
        self.services = list(services)
        self.dependencies = list(dependencies)
        self.threshold = threshold
        self.cooldown = cooldown
        self.max_restarts = max_restarts
        self.full_reboot = full_reboot
        self._clock = clock
        self._on_attempt = on_attempt
        self.throttle = RestartThrottle()
        self.last_attempt: HealAttempt | None = None
        self._exhausted_noted = False

    def _restarts_left(self, window: MismatchWindow) -> bool:
        return self.max_restarts == 0 or window.restart_count < self.max_restarts

    async def tick(self, window: MismatchWindow) -> HealAttempt | None:
        """Act on the window if every condition holds; returns the attempt made, if any."""
        if not window.active or window.started_at is None:
            self._exhausted_noted = False
            return None

        now = self._clock()
        if now - window.started_at < self.threshold:
            return None
        if not _elapsed(now, self.throttle.last_restart_at, self.cooldown):
            return None

        if self._restarts_left(window):
            return await self._attempt_restart(window, now)

        if not self.full_reboot:
            if not self._exhausted_noted:
                self._exhausted_noted = True
                return self._record(HealAttempt(
                    HealAction.NOOP,
                    f"{window.restart_count} restarts did not clear the mismatch; full reboot disabled",
                    at=now,
                ))
            return None

        if _elapsed(now, self.throttle.last_full_reboot_at, self.cooldown):
            return self._escalate(now, f"mismatch persists after {window.restart_count} restarts")
        return None

    async def _attempt_restart(self, window: MismatchWindow, now: float) -> HealAttempt:
        await self._check_dependencies()

        # Stamped for failed attempts too, so a failure waits out the cooldown.
        self.throttle.last_restart_at = now
        number = window.restart_count + 1
        limit = self.max_restarts or "unlimited"
        logger.warning(
            "ocpp_restart_attempt",
            attempt=number,
            max_restarts=limit,
            mismatch_s=round(now - (window.started_at or now)),
            services=self.services,
        )

        action, error = await self._restart_services()
        if error is None:
            window.record_restart(now)
            return self._record(HealAttempt(action, f"restart {number}/{limit} of {', '.join(self.services)}", at=now))

        if self.full_reboot and _elapsed(now, self.throttle.last_full_reboot_at, self.cooldown):
            return self._escalate(now, f"restart {number} failed, rebooting", error=error)

        return self._record(HealAttempt(action, f"restart {number}/{limit} failed", error=error, at=now))

    async def _restart_services(self) -> tuple[HealAction, str | None]:
        try:
            for name in reversed(self.services):
                await self._control.stop_service(name)
            for name in self.services:
                await self._control.start_service(name)
            return HealAction.STOP_START, None
        except ProcessControlError as exc:
            logger.warning("stop_start_failed", error=str(exc))

        try:
            for name in self.services:
                await self._control.restart_service(name)
            return HealAction.RESTART, None
        except ProcessControlError as exc:
            logger.error("restart_failed", error=str(exc))
            return HealAction.RESTART, str(exc)

    async def _check_dependencies(self) -> None:
        for name in self.dependencies:
            try:
                if not await self._control.is_active(name):
                    logger.warning("dependency_inactive", unit=name)
            except Exception:
                logger.exception("dependency_check_failed", unit=name)

    def _escalate(self, now: float, detail: str, error: str | None = None) -> HealAttempt:
        self.throttle.last_full_reboot_at = now
        attempt = self._record(HealAttempt(HealAction.REBOOT, detail, error=error, at=now))
        self._dispatcher.dispatch("ocpp_mismatch", on_error=self._reboot_failed)
        return attempt

    def _reboot_failed(self, error: str) -> None:
        self._record(HealAttempt(HealAction.REBOOT, "reboot failed", error=error, at=self._clock()))

    def _record(self, attempt: HealAttempt) -> HealAttempt:
        self.last_attempt = attempt
        logger.info(
            "heal_attempt",
            action=attempt.action.value,
            detail=attempt.detail,
            error=attempt.error,
        )
        if self._on_attempt is not None:
            try:
                self._on_attempt(attempt)
            except Exception:
                logger.exception("heal_attempt_callback_failed")
        return attempt


# ──────────────────────────────────────────────────────────────
# Pilot error safety net
# ──────────────────────────────────────────────────────────────


class PilotErrorSafetyNet:
    """Reboots when the pilot stays in ``fault_code`` for ``duration`` seconds."""

    def __init__(
        self,
        dispatcher: RebootDispatcher,
        fault_code: int = 14,
        duration: float = 300,
        enabled: bool = True,
        clock: Clock = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self.fault_code = fault_code
        self.duration = duration
        self.enabled = enabled
        self._clock = clock
        self.window = PilotErrorWindow()

    def tick(self, pilot_code: int) -> bool:
        """Returns True on the tick a reboot was dispatched."""
        if not self.enabled:
            return False

        now = self._clock()
        if pilot_code != self.fault_code:
            if self.window.started_at is not None:
                logger.info("pilot_error_cleared", duration_s=round(now - self.window.started_at, 1))
                self.window.started_at = None
            return False

        if self.window.started_at is None:
            self.window.started_at = now
            logger.warning("pilot_error_detected", code=pilot_code, reboot_after_s=self.duration)

        if now - self.window.started_at < self.duration:
            return False
        if not _elapsed(now, self.window.last_reboot_at, self.duration):
            return False

        logger.error("pilot_error_reboot", code=pilot_code, duration_s=round(now - self.window.started_at))
        self._dispatcher.dispatch("pilot_error")
        self.window.last_reboot_at = now
        self.window.started_at = None
        return True
