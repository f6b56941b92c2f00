"""Redis pub/sub listener for charger events.

Channels:
  /wbx/telemetry/events                      sensor samples → WallboxData
  /wbx/charger_state_machine/events          session updates → resolver
  /wbx/charging_regulation/in/session        session updates → resolver
  /wbx/domain_bus/event/CHARGER_STATUS_CHANGED  cached only
"""

from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any

from redis.exceptions import RedisError

from shared.log import get_logger

from ocpp import classify_session_state
from status import StatusResolver, StatusSource
from wallbox import WallboxData

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger("event-listener")

TELEMETRY_CHANNEL = "/wbx/telemetry/events"
SESSION_CHANNELS = (
    "/wbx/charger_state_machine/events",
    "/wbx/charging_regulation/in/session",
)
CHARGER_STATUS_CHANNEL = "/wbx/domain_bus/event/CHARGER_STATUS_CHANGED"
CHANNELS = (TELEMETRY_CHANNEL, *SESSION_CHANNELS, CHARGER_STATUS_CHANNEL)

SESSION_UPDATE_MESSAGE_ID = "EVENT_SESSION_UPDATE"
LAST_STATUS_KEY = "bridge:last_ocpp_status"


def _load(payload: str, kind: str) -> dict[str, Any] | None:
    try:
        event = json.loads(payload)
    except ValueError as exc:
        logger.warning("event_decode_failed", kind=kind, error=str(exc))
        return None
    if not isinstance(event, dict):
        logger.warning("event_decode_failed", kind=kind, error="not an object")
        return None
    return event


def _section(parent: dict[str, Any], key: str, kind: str) -> dict[str, Any] | None:
    value = parent.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        logger.warning("event_decode_failed", kind=kind, error=f"{key} is not an object")
        return None
    return value


class WallboxEventListener:
    """Dispatches pub/sub messages into the data layer and the resolver."""

    def __init__(
        self,
        redis_client: Redis | None,
        data: WallboxData,
        resolver: StatusResolver,
    ) -> None:
        self._redis = redis_client
        self._data = data
        self._resolver = resolver
        self._unmapped_sensors: set[str] = set()
        self.last_session_state: str = ""

    async def run(self) -> None:
        """Subscribe and dispatch until the connection drops or the task is cancelled."""
        if self._redis is None:
            logger.error("event_listener_exited", reason="no_redis")
            return

        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(*CHANNELS)
            logger.info("event_listener_subscribed", channels=list(CHANNELS))
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                await self.dispatch(message["channel"], message["data"])
        except RedisError as exc:
            logger.warning("event_listener_exited", reason="redis_error", error=str(exc))
        finally:
            await pubsub.aclose()

    async def dispatch(self, channel: str, payload: str) -> None:
        if channel == TELEMETRY_CHANNEL:
            self.process_telemetry(payload)
        elif channel in SESSION_CHANNELS:
            self.process_session_update(payload)
        elif channel == CHARGER_STATUS_CHANNEL:
            await self.process_charger_status(payload)

    def process_telemetry(self, payload: str) -> int:
        """Apply every mapped sensor of a telemetry event; returns how many were applied."""
        event = _load(payload, "telemetry")
        if event is None:
            return 0

        body = _section(event, "body", "telemetry")
        if body is None:
            return 0
        sensors = body.get("sensors") or []
        if not isinstance(sensors, list):
            logger.warning("event_decode_failed", kind="telemetry", error="sensors is not a list")
            return 0

        applied = 0
        for sensor in sensors:
            if not isinstance(sensor, dict):
                continue
            sensor_id = sensor.get("id")
            if not isinstance(sensor_id, str):
                continue
            try:
                value = float(sensor.get("value", 0))
            except (TypeError, ValueError):
                continue
            if not math.isfinite(value):
                logger.warning("telemetry_value_invalid", sensor_id=sensor_id, value=str(value))
                continue
            if self._data.update_telemetry(sensor_id, value):
                applied += 1
            elif sensor_id not in self._unmapped_sensors:
                self._unmapped_sensors.add(sensor_id)
                logger.debug("telemetry_sensor_unmapped", sensor_id=sensor_id)
        return applied

    def process_session_update(self, payload: str) -> int | None:
        """Classify a session update; returns the code pushed to the resolver, if any."""
        event = _load(payload, "session")
        if event is None:
            return None
        header = _section(event, "header", "session")
        if header is None or header.get("message_id") != SESSION_UPDATE_MESSAGE_ID:
            return None

        body = _section(event, "body", "session")
        session = _section(body, "session", "session") if body is not None else None
        if session is None:
            return None
        state = session.get("state") or ""
        if not isinstance(state, str) or not state:
            return None

        self.last_session_state = state
        code = classify_session_state(state)
        if code is None:
            logger.warning("session_state_unmapped", state=state)
            return None

        self._resolver.observe(StatusSource.SESSION_EVENT, code)
        logger.debug("session_status", state=state, code=int(code))
        return int(code)

    async def process_charger_status(self, payload: str) -> None:
        # The session events are fresher, so this channel never overrides the status.
        if _load(payload, "charger_status") is None or self._redis is None:
            return
        try:
            await self._redis.set(LAST_STATUS_KEY, payload)
        except RedisError as exc:
            logger.warning("charger_status_cache_failed", error=str(exc))
