"""Charger commands received from Home Assistant.

Lock and charging enable go through the firmware's POSIX message queues,
exactly like the touch screen and app do. Max current and halo brightness
are plain config rows. On CPB1 (Commander 2) hardware the lock is a config
row too.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import posix_ipc

from shared.log import get_logger

from charger_db import ChargerDatabase

logger = get_logger("commands")

LOGIN_QUEUE = "/WALLBOX_MYWALLBOX_WALLBOX_LOGIN"
STATEMACHINE_QUEUE = "/WALLBOX_MYWALLBOX_WALLBOX_STATEMACHINE"
QUEUE_MESSAGE_SIZE = 1024
QUEUE_SEND_TIMEOUT_SECONDS = 5.0

CONFIG_LOCK_CHARGER_TYPES = frozenset({"CPB1"})

MAX_CHARGING_CURRENT_RANGE = (6, 32)
HALO_BRIGHTNESS_RANGE = (0, 100)

QueueSender = Callable[[str, str], None]


class CommandError(Exception):
    """A command payload was invalid or could not be delivered."""


def send_to_queue(name: str, message: str) -> None:
    """Send one NUL-padded event to an existing firmware message queue."""
    data = message.encode()
    if len(data) > QUEUE_MESSAGE_SIZE:
        raise CommandError(f"message too long for {name}: {len(data)} bytes")
    try:
        queue = posix_ipc.MessageQueue(name)
    except posix_ipc.Error as exc:
        raise CommandError(f"open {name}: {exc}") from exc
    try:
        queue.send(data.ljust(QUEUE_MESSAGE_SIZE, b"\x00"), timeout=QUEUE_SEND_TIMEOUT_SECONDS)
    except posix_ipc.Error as exc:
        raise CommandError(f"send to {name}: {exc}") from exc
    finally:
        queue.close()


def parse_int(payload: object, bounds: tuple[int, int] | None = None) -> int:
    """Accept 1, "1", "16.0" and similar; reject everything else."""
    if isinstance(payload, bool):
        return int(payload)
    try:
        value = int(float(str(payload).strip()))
    except (TypeError, ValueError, OverflowError):
        raise CommandError(f"not a number: {payload!r}") from None
    if bounds is not None and not bounds[0] <= value <= bounds[1]:
        raise CommandError(f"{value} outside {bounds[0]}..{bounds[1]}")
    return value


def parse_flag(payload: object) -> int:
    value = parse_int(payload)
    if value not in (0, 1):
        raise CommandError(f"expected 0 or 1, got {payload!r}")
    return value


class ChargerCommands:
    def __init__(
        self,
        db: ChargerDatabase,
        charger_type: str = "",
        send: QueueSender = send_to_queue,
    ) -> None:
        self._db = db
        self.charger_type = charger_type
        self._send = send

    async def _queue(self, name: str, message: str) -> None:
        await asyncio.to_thread(self._send, name, message)
        logger.info("queue_event_sent", queue=name, event=message.split("#", 1)[0])

    async def set_locked(self, payload: object) -> None:
        lock = parse_flag(payload)
        config = await self._db.read_config()
        if lock == config.lock:
            return

        if self.charger_type in CONFIG_LOCK_CHARGER_TYPES:
            await self._db.set_lock(lock)
        elif lock == 1:
            await self._queue(LOGIN_QUEUE, "EVENT_REQUEST_LOCK")
        else:
            user_id = await self._db.user_id()
            await self._queue(LOGIN_QUEUE, f"EVENT_REQUEST_LOGIN#{user_id}.000000")

    async def set_charging_enable(self, payload: object) -> None:
        enable = parse_flag(payload)
        config = await self._db.read_config()
        if enable == config.charging_enable:
            return
        # user action 1 resumes, 2 pauses
        action = 1 if enable == 1 else 2
        await self._queue(STATEMACHINE_QUEUE, f"EVENT_REQUEST_USER_ACTION#{action}.000000")

    async def set_max_charging_current(self, payload: object) -> None:
        await self._db.set_max_charging_current(parse_int(payload, MAX_CHARGING_CURRENT_RANGE))

    async def set_halo_brightness(self, payload: object) -> None:
        await self._db.set_halo_brightness(parse_int(payload, HALO_BRIGHTNESS_RANGE))
