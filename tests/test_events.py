"""Pub/sub event dispatch into the data layer and the resolver."""
from __future__ import annotations

import asyncio
import json

from events import (
    CHARGER_STATUS_CHANNEL,
    LAST_STATUS_KEY,
    SESSION_CHANNELS,
    TELEMETRY_CHANNEL,
    WallboxEventListener,
)
from status import StatusResolver, StatusSource
from wallbox import WallboxData


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str) -> None:
        self.values[key] = value


def session_event(state: str, message_id: str = "EVENT_SESSION_UPDATE") -> str:
    return json.dumps({
        "header": {"message_id": message_id, "source": "charger_state_machine"},
        "body": {"session": {"state": state, "in_session": True}},
    })


def telemetry_event(*sensors: tuple[str, float]) -> str:
    return json.dumps({
        "header": {"message_id": "EVENT_TELEMETRY"},
        "body": {"sensors": [{"id": sid, "value": value} for sid, value in sensors]},
    })


def make_listener(clock, redis=None):
    resolver = StatusResolver(clock=clock)
    data = WallboxData(None, resolver)
    return resolver, data, WallboxEventListener(redis, data, resolver)


def test_session_update_is_classified(clock):
    resolver, _, listener = make_listener(clock)
    assert listener.process_session_update(session_event("Connected 5")) == 5
    assert resolver.latest(StatusSource.SESSION_EVENT).code == 5
    assert listener.last_session_state == "Connected 5"


def test_unmapped_session_label_is_dropped(clock):
    resolver, _, listener = make_listener(clock)
    resolver.observe(StatusSource.TELEMETRY, 3)

    assert listener.process_session_update(session_event("bogus-state")) is None
    assert resolver.latest(StatusSource.SESSION_EVENT) is None
    assert resolver.resolve().source == StatusSource.TELEMETRY


def test_other_message_ids_are_ignored(clock):
    resolver, _, listener = make_listener(clock)
    assert listener.process_session_update(session_event("Ready", message_id="EVENT_OTHER")) is None
    assert resolver.latest(StatusSource.SESSION_EVENT) is None


def test_empty_state_and_bad_json_are_ignored(clock):
    resolver, _, listener = make_listener(clock)
    assert listener.process_session_update(session_event("")) is None
    assert listener.process_session_update("{not json") is None
    assert listener.process_session_update("[]") is None
    assert resolver.latest(StatusSource.SESSION_EVENT) is None


def test_telemetry_event_updates_snapshot(clock):
    resolver, data, listener = make_listener(clock)
    applied = listener.process_telemetry(telemetry_event(
        ("SENSOR_CONTROL_PILOT_STATUS", 193),
        ("SENSOR_OCPP_STATUS", 1),
        ("SENSOR_WIFI_SIGNAL_STRENGTH", -55),
    ))

    assert applied == 2
    assert data.control_pilot_code() == 193
    assert resolver.latest(StatusSource.TELEMETRY).code == 1


def test_dispatch_routes_by_channel(clock):
    redis = FakeRedis()
    resolver, data, listener = make_listener(clock, redis)

    async def scenario():
        await listener.dispatch(SESSION_CHANNELS[1], session_event("Charging 1"))
        await listener.dispatch(TELEMETRY_CHANNEL, telemetry_event(("SENSOR_STATE_MACHINE", 193)))
        await listener.dispatch(CHARGER_STATUS_CHANNEL, json.dumps({"body": {"ocpp_status": 1}}))

    asyncio.run(scenario())

    assert resolver.latest(StatusSource.SESSION_EVENT).code == 3
    assert data.telemetry["state_machine"] == 193
    # cached, but never used as a status source
    assert LAST_STATUS_KEY in redis.values
    assert resolver.resolve().code == 3


def test_non_object_sections_are_dropped(clock):
    resolver, data, listener = make_listener(clock)

    assert listener.process_telemetry(json.dumps({"body": "oops"})) == 0
    assert listener.process_telemetry(json.dumps({"body": {"sensors": {"id": "x"}}})) == 0
    assert listener.process_session_update(json.dumps({"header": ["x"]})) is None
    assert listener.process_session_update(json.dumps({
        "header": {"message_id": "EVENT_SESSION_UPDATE"},
        "body": {"session": "Charging 1"},
    })) is None
    assert listener.process_session_update(json.dumps({
        "header": {"message_id": "EVENT_SESSION_UPDATE"},
        "body": {"session": {"state": 5}},
    })) is None
    assert not data.has_telemetry
    assert resolver.latest(StatusSource.SESSION_EVENT) is None


def test_malformed_sensor_entries_are_skipped(clock):
    _, data, listener = make_listener(clock)
    event = json.dumps({"body": {"sensors": [
        "SENSOR_OCPP_STATUS",
        {"id": ["SENSOR_OCPP_STATUS"], "value": 1},
        {"id": "SENSOR_STATE_MACHINE", "value": "n/a"},
        {"id": "SENSOR_CONTROL_PILOT_STATUS", "value": 193},
    ]}})

    assert listener.process_telemetry(event) == 1
    assert data.telemetry == {"control_pilot_status": 193}


def test_non_finite_telemetry_values_are_dropped(clock):
    resolver, data, listener = make_listener(clock)
    # json.dumps writes NaN and Infinity literals, which json.loads accepts
    applied = listener.process_telemetry(telemetry_event(
        ("SENSOR_OCPP_STATUS", float("nan")),
        ("SENSOR_CONTROL_PILOT_STATUS", float("inf")),
        ("SENSOR_STATE_MACHINE", 193),
    ))

    assert applied == 1
    assert "ocpp_status" not in data.telemetry
    assert data.control_pilot_code() == 0
    assert resolver.latest(StatusSource.TELEMETRY) is None
