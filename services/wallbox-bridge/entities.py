"""Charger entities exposed to Home Assistant.

Each entity has its own state topic ``homelab/wallbox-bridge/<key>/state``;
controllable ones also listen on ``<key>/set``. The base set is always
registered, debug and power-boost entities only when enabled in settings.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from commands import (
    HALO_BRIGHTNESS_RANGE,
    MAX_CHARGING_CURRENT_RANGE,
    ChargerCommands,
)
from wallbox import PHASES, TELEMETRY_FIELDS, WallboxData

Getter = Callable[[WallboxData], Any]
Setter = Callable[[ChargerCommands, object], Awaitable[None]]


@dataclass(frozen=True)
class Entity:
    key: str
    component: str
    name: str
    getter: Getter
    config: dict[str, Any] = field(default_factory=dict)
    setter: Setter | None = None


def format_state(value: Any) -> str:
    """Render a getter value as an MQTT state payload."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float):
        value = round(value, 2)
        return str(int(value)) if value.is_integer() else str(value)
    return str(value)


def _power(phase: int) -> Getter:
    return lambda d: d.charging_power(phase)


def _current(phase: int) -> Getter:
    return lambda d: d.charging_current(phase)


def _temperature(phase: int) -> Getter:
    return lambda d: d.temperature(phase)


def _power_sensor(key: str, name: str, getter: Getter) -> Entity:
    return Entity(key, "sensor", name, getter, {
        "device_class": "power",
        "unit_of_measurement": "W",
        "state_class": "measurement",
    })


def _current_sensor(key: str, name: str, getter: Getter) -> Entity:
    return Entity(key, "sensor", name, getter, {
        "device_class": "current",
        "unit_of_measurement": "A",
        "state_class": "measurement",
    })


def _base_entities() -> list[Entity]:
    entities = [
        _power_sensor("charging_power", "Charging power", lambda d: d.total_charging_power()),
        *(_power_sensor(f"charging_power_l{n}", f"Charging power L{n}", _power(n)) for n in PHASES),
        *(_current_sensor(f"charging_current_l{n}", f"Charging current L{n}", _current(n)) for n in PHASES),
        *(
            Entity(f"temperature_l{n}", "sensor", f"Temperature L{n}", _temperature(n), {
                "device_class": "temperature",
                "unit_of_measurement": "°C",
                "state_class": "measurement",
            })
            for n in PHASES
        ),
        Entity("added_energy", "sensor", "Added energy", lambda d: d.added_energy(), {
            "device_class": "energy",
            "unit_of_measurement": "Wh",
            "state_class": "total",
        }),
        Entity(
            "cumulative_added_energy", "sensor", "Cumulative added energy",
            lambda d: d.config.cumulative_added_energy, {
                "device_class": "energy",
                "unit_of_measurement": "Wh",
                "state_class": "total_increasing",
            },
        ),
        Entity("added_range", "sensor", "Added range", lambda d: d.config.added_range, {
            "device_class": "distance",
            "unit_of_measurement": "km",
            "icon": "mdi:map-marker-distance",
        }),
        Entity("status", "sensor", "Status", lambda d: d.effective_status(), {
            "icon": "mdi:ev-station",
        }),
        Entity("state_machine_state", "sensor", "State machine", lambda d: d.state_machine_state(), {
            "entity_category": "diagnostic",
            "icon": "mdi:state-machine",
        }),
        _current_sensor("available_current", "Available current", lambda d: d.available_current()),
    ]

    entities += [
        Entity(
            "lock", "lock", "Lock", lambda d: d.config.lock, {
                "payload_lock": "1",
                "payload_unlock": "0",
                "state_locked": "1",
                "state_unlocked": "0",
            },
            setter=ChargerCommands.set_locked,
        ),
        Entity(
            "charging_enable", "switch", "Charging enable", lambda d: d.charging_enable(), {
                "payload_on": "1",
                "payload_off": "0",
                "icon": "mdi:ev-plug-type2",
            },
            setter=ChargerCommands.set_charging_enable,
        ),
        Entity(
            "max_charging_current", "number", "Max charging current",
            lambda d: d.config.max_charging_current, {
                "min": MAX_CHARGING_CURRENT_RANGE[0],
                "max": MAX_CHARGING_CURRENT_RANGE[1],
                "step": 1,
                "unit_of_measurement": "A",
                "device_class": "current",
            },
            setter=ChargerCommands.set_max_charging_current,
        ),
        Entity(
            "halo_brightness", "number", "Halo brightness", lambda d: d.config.halo_brightness, {
                "min": HALO_BRIGHTNESS_RANGE[0],
                "max": HALO_BRIGHTNESS_RANGE[1],
                "step": 1,
                "unit_of_measurement": "%",
                "entity_category": "config",
                "icon": "mdi:lightbulb",
            },
            setter=ChargerCommands.set_halo_brightness,
        ),
    ]
    return entities


def _telemetry_getter(field_name: str) -> Getter:
    return lambda d: d.telemetry.get(field_name)


def _debug_entities() -> list[Entity]:
    diagnostic = {"entity_category": "diagnostic"}
    entities = [
        Entity("s2_open", "sensor", "S2 open", lambda d: d.s2_open(), diagnostic),
        Entity("control_pilot_code", "sensor", "Control pilot code", lambda d: d.control_pilot_code(), diagnostic),
        Entity("session_state", "sensor", "Session state code", lambda d: d.legacy.session_state, diagnostic),
        Entity("charger_status", "sensor", "Charger status code", lambda d: d.legacy.charger_status, diagnostic),
    ]
    for field_name in sorted(set(TELEMETRY_FIELDS.values())):
        entities.append(Entity(
            f"telemetry_{field_name}", "sensor",
            "Telemetry " + field_name.replace("_", " "),
            _telemetry_getter(field_name),
            diagnostic,
        ))
    return entities


def _boost_power(phase: int) -> Getter:
    return lambda d: d.legacy.boost_power[phase - 1]


def _boost_current(phase: int) -> Getter:
    return lambda d: d.legacy.boost_current[phase - 1]


def _power_boost_entities() -> list[Entity]:
    return [
        *(_power_sensor(f"power_boost_power_l{n}", f"Power boost power L{n}", _boost_power(n)) for n in PHASES),
        *(_current_sensor(f"power_boost_current_l{n}", f"Power boost current L{n}", _boost_current(n)) for n in PHASES),
        Entity("power_boost_energy", "sensor", "Power boost energy", lambda d: d.legacy.boost_energy, {
            "device_class": "energy",
            "unit_of_measurement": "Wh",
            "state_class": "total_increasing",
        }),
    ]


def charger_entities(debug: bool = False, power_boost: bool = False) -> list[Entity]:
    entities = _base_entities()
    if debug:
        entities += _debug_entities()
    if power_boost:
        entities += _power_boost_entities()
    return entities
