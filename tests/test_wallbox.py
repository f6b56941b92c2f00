"""Pilot predicates of the data layer, telemetry vs legacy fallback."""
from __future__ import annotations

import asyncio

from redis.exceptions import ConnectionError as RedisConnectionError

from status import StatusResolver, StatusSource
from wallbox import WallboxData


class FakeRedis:
    def __init__(self, hashes: dict[str, dict[str, str]] | None = None, fail: bool = False) -> None:
        self.hashes = hashes or {}
        self.fail = fail

    async def hmget(self, key: str, fields: list[str]) -> list[str | None]:
        if self.fail:
            raise RedisConnectionError("connection refused")
        return [self.hashes.get(key, {}).get(f) for f in fields]


def make_data(clock, redis=None, policy="charging") -> WallboxData:
    return WallboxData(redis, StatusResolver(clock=clock), pilot_policy=policy)


def test_refresh_snapshot_reads_legacy_hashes(clock):
    redis = FakeRedis({
        "state": {"session.state": str(0xC1), "ctrlPilot": str(0xC2), "S2open": "0"},
        "m2w": {"tms.charger_status": "1"},
    })
    data = make_data(clock, redis)

    assert asyncio.run(data.refresh_snapshot()) is True
    assert data.legacy.control_pilot == 0xC2
    assert data.legacy.session_state == 0xC1
    assert data.legacy.charger_status == 1


def test_refresh_snapshot_keeps_previous_state_on_error(clock):
    redis = FakeRedis({"state": {"ctrlPilot": str(0xB1)}, "m2w": {"tms.charger_status": "2"}})
    data = make_data(clock, redis)
    asyncio.run(data.refresh_snapshot())

    redis.fail = True
    assert asyncio.run(data.refresh_snapshot()) is False
    assert data.legacy.control_pilot == 0xB1


def test_missing_hash_fields_default_to_zero(clock):
    data = make_data(clock, FakeRedis())
    asyncio.run(data.refresh_snapshot())
    assert data.legacy.control_pilot == 0
    assert not data.cable_connected()


def test_legacy_charging_pilot(clock):
    data = make_data(clock, FakeRedis({"state": {"ctrlPilot": str(0xC1)}, "m2w": {"tms.charger_status": "1"}}))
    asyncio.run(data.refresh_snapshot())

    assert not data.has_telemetry
    assert data.cable_connected()
    assert data.pilot_charging_active()
    assert data.pilot_connected()
    assert data.control_pilot_status() == f"{0xC1}: Charging 1"


def test_legacy_cable_disconnected_statuses(clock):
    for status in ("0", "6"):
        data = make_data(clock, FakeRedis({"state": {"ctrlPilot": str(0xC1)}, "m2w": {"tms.charger_status": status}}))
        asyncio.run(data.refresh_snapshot())
        assert not data.cable_connected()
        assert not data.pilot_connected()


def test_telemetry_takes_over_once_seen(clock):
    data = make_data(clock)
    assert data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 194)

    assert data.has_telemetry
    assert data.control_pilot_code() == 194
    assert data.cable_connected()
    assert data.pilot_charging_active()
    assert data.control_pilot_status() == "194: Charging 2"


def test_telemetry_connected_but_not_charging(clock):
    data = make_data(clock)
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 178)

    assert data.cable_connected()
    assert not data.pilot_charging_active()
    assert not data.pilot_connected()


def test_cable_policy_ignores_charging_state(clock):
    data = make_data(clock, policy="cable")
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 178)
    assert data.pilot_connected()


def test_telemetry_ready_is_not_connected(clock):
    data = make_data(clock, policy="cable")
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 161)
    assert not data.cable_connected()
    assert not data.pilot_connected()


def test_unknown_telemetry_codes_use_status_text(clock):
    data = make_data(clock)
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 182)  # "Paused"
    assert data.cable_connected()
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 163)  # "Disconnected"
    assert not data.cable_connected()


def test_pilot_fault_code_follows_pilot(clock):
    data = make_data(clock)
    data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", 14)
    assert data.pilot_fault_code() == 14
    assert data.control_pilot_status() == "14: Error"


def test_ocpp_status_sensor_feeds_telemetry_slot(clock):
    resolver = StatusResolver(clock=clock)
    data = WallboxData(None, resolver)
    data.update_telemetry("SENSOR_OCPP_STATUS", 3.0)

    assert resolver.latest(StatusSource.TELEMETRY).code == 3
    assert resolver.resolve().source == StatusSource.TELEMETRY


def test_unmapped_sensor_is_rejected(clock):
    data = make_data(clock)
    assert not data.update_telemetry("SENSOR_WIFI_SIGNAL_STRENGTH", -60)
    assert not data.has_telemetry


def test_non_finite_values_are_ignored(clock):
    redis = FakeRedis({
        "state": {"ctrlPilot": "nan"},
        "m2w": {"tms.charger_status": "1", "tms.line1.power_watt.value": "inf"},
    })
    data = make_data(clock, redis)
    asyncio.run(data.refresh_snapshot())

    assert data.legacy.control_pilot == 0
    assert data.legacy.line_power == (0.0, 0.0, 0.0)
    assert not data.update_telemetry("SENSOR_OCPP_STATUS", float("nan"))
    assert not data.update_telemetry("SENSOR_CONTROL_PILOT_STATUS", float("-inf"))
    assert not data.has_telemetry


def test_charging_power_uses_meter_telemetry(clock):
    redis = FakeRedis({"m2w": {"tms.line2.power_watt.value": "1000", "tms.line2.current_amp.value": "4.5"}})
    data = make_data(clock, redis)
    asyncio.run(data.refresh_snapshot())
    data.update_telemetry("SENSOR_INTERNAL_METER_VOLTAGE_L1", 230.0)
    data.update_telemetry("SENSOR_INTERNAL_METER_CURRENT_L1", 16.0)

    assert data.charging_power(1) == 3680.0
    # no meter values for L2, legacy line power stays in use
    assert data.charging_power(2) == 1000.0
    assert data.charging_current(2) == 4.5
    assert data.total_charging_power() == 4680.0


def test_effective_status_prefers_session_state(clock):
    redis = FakeRedis({
        "state": {"session.state": str(0xB4)},
        "m2w": {"tms.charger_status": "1"},
    })
    data = make_data(clock, redis)
    asyncio.run(data.refresh_snapshot())

    assert data.effective_status() == "Connected waiting car"
    assert data.state_machine_state() == "180: Connected 4"

    data.update_telemetry("SENSOR_STATE_MACHINE", 193)
    assert data.effective_status() == "Charging"
    assert data.state_machine_state() == "193: Charging"


def test_effective_status_out_of_range(clock):
    data = make_data(clock, FakeRedis({"m2w": {"tms.charger_status": "99"}}))
    asyncio.run(data.refresh_snapshot())
    assert data.effective_status() == "Unknown"


def test_added_energy_prefers_active_session(clock, db):
    db.config.active_session_energy_total = 1500.0
    data = WallboxData(None, StatusResolver(clock=clock), db=db)
    asyncio.run(data.refresh_snapshot())

    data.update_telemetry("SENSOR_INTERNAL_METER_ENERGY", 9000.0)
    assert data.added_energy() == 1500.0


def test_added_energy_from_meter_rearms_between_sessions(clock):
    data = make_data(clock)
    data.update_telemetry("SENSOR_STATE_MACHINE", 161)
    data.update_telemetry("SENSOR_INTERNAL_METER_ENERGY", 1000.0)
    assert data.added_energy() == 0.0

    data.update_telemetry("SENSOR_STATE_MACHINE", 193)
    data.update_telemetry("SENSOR_INTERNAL_METER_ENERGY", 1250.0)
    assert data.added_energy() == 250.0

    data.update_telemetry("SENSOR_STATE_MACHINE", 161)
    data.update_telemetry("SENSOR_INTERNAL_METER_ENERGY", 1300.0)
    assert data.added_energy() == 0.0
    data.update_telemetry("SENSOR_STATE_MACHINE", 194)
    data.update_telemetry("SENSOR_INTERNAL_METER_ENERGY", 1310.0)
    assert data.added_energy() == 10.0


def test_config_refresh_error_keeps_previous_config(clock, db):
    db.config.lock = 1
    db.config.available_current = 16
    data = WallboxData(FakeRedis(), StatusResolver(clock=clock), db=db)
    asyncio.run(data.refresh_snapshot())
    assert data.config.lock == 1
    assert data.available_current() == 16

    db.fail = True
    db.config.lock = 0
    assert asyncio.run(data.refresh_snapshot()) is True
    assert data.config.lock == 1
