"""Wallbox data layer: telemetry snapshot plus legacy Redis state.

Newer firmware publishes telemetry events over Redis pub/sub; older firmware
only keeps the ``state`` and ``m2w`` hashes up to date. Telemetry values are
preferred once at least one mapped sample has arrived (``has_telemetry``);
the hashes stay as fallback and are re-read on every tick, together with the
charger config rows from the local database.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from shared.log import get_logger

from charger_db import ChargerConfig, ChargerDatabase, ChargerDatabaseError
from status import StatusResolver, StatusSource

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = get_logger("wallbox")

# Telemetry sensor id → snapshot field
TELEMETRY_FIELDS = {
    "SENSOR_CONTROL_PILOT_STATUS": "control_pilot_status",
    "SENSOR_STATE_MACHINE": "state_machine",
    "SENSOR_OCPP_STATUS": "ocpp_status",
    "SENSOR_CHARGING_ENABLE": "charging_enable",
    "SENSOR_CONTROL_PILOT_HIGH_TENTHS_OF_VOLTS": "control_pilot_high_tenths_v",
    "SENSOR_CONTROL_PILOT_LOW_TENTHS_OF_VOLTS": "control_pilot_low_tenths_v",
    "SENSOR_FIRMWARE_ERROR": "firmware_error",
    "SENSOR_MAX_AVAILABLE_CURRENT": "max_available_current",
    "SENSOR_MAX_CHARGING_CURRENT": "max_charging_current",
    "SENSOR_CONTROL_PILOT_DUTY": "control_pilot_duty",
    "SENSOR_INTERNAL_METER_CURRENT_L1": "current_l1",
    "SENSOR_INTERNAL_METER_CURRENT_L2": "current_l2",
    "SENSOR_INTERNAL_METER_CURRENT_L3": "current_l3",
    "SENSOR_INTERNAL_METER_VOLTAGE_L1": "voltage_l1",
    "SENSOR_INTERNAL_METER_VOLTAGE_L2": "voltage_l2",
    "SENSOR_INTERNAL_METER_VOLTAGE_L3": "voltage_l3",
    "SENSOR_INTERNAL_METER_ENERGY": "meter_energy",
    "SENSOR_INTERNAL_METER_FREQUENCY": "meter_frequency",
    "SENSOR_TEMP_L1": "temp_l1",
    "SENSOR_TEMP_L2": "temp_l2",
    "SENSOR_TEMP_L3": "temp_l3",
    "SENSOR_WELDING": "welding",
    "SENSOR_MID_STATUS": "mid_status",
    "SENSOR_POWER_SHARING_STATUS": "power_sharing_status",
    "SENSOR_DCA_POWERBOOST_STATUS": "powerboost_status",
    "SENSOR_POWERBOOST_PROPOSAL_CURRENT": "powerboost_proposal_current",
    "SENSOR_ECOSMART_MODE": "ecosmart_mode",
    "SENSOR_ECOSMART_STATUS": "ecosmart_status",
    "SENSOR_CPU_TEMPERATURE": "cpu_temperature",
    "SENSOR_SYSTEM_UPTIME": "system_uptime",
}

# Control pilot codes as reported by telemetry
TELEMETRY_PILOT_STATES = {
    161: "Ready 1",
    162: "Ready 2",
    177: "Connected 1",
    178: "Connected 2",
    193: "Charging 1",
    194: "Charging 2",
    195: "Charging 2",
}
TELEMETRY_PILOT_CONNECTED = {
    161: False,
    162: False,
    177: True,
    178: True,
    193: True,
    194: True,
    195: True,
}
TELEMETRY_CHARGING = frozenset({193, 194, 195})

# Coarse telemetry status text, used for codes outside the pilot tables
TELEMETRY_STATUS_DESCRIPTIONS = {
    0: "Disconnected",
    14: "Error",
    15: "Error",
    161: "Ready",
    162: "Ready",
    163: "Disconnected",
    164: "Waiting",
    165: "Locked",
    166: "Updating",
    177: "Scheduled",
    178: "Paused",
    179: "Scheduled",
    180: "Waiting",
    181: "Waiting",
    182: "Paused",
    183: "Waiting",
    184: "Waiting",
    185: "Waiting",
    186: "Waiting",
    187: "Waiting",
    188: "Waiting",
    189: "Waiting",
    193: "Charging",
    194: "Charging",
    195: "Charging",
    196: "Discharging",
    209: "Locked",
    210: "Locked",
}

# Legacy ``state.ctrlPilot`` codes
LEGACY_PILOT_STATES = {
    0xE: "Error",
    0xF: "Failure",
    0xA1: "Ready 1",
    0xA2: "Ready 2",
    0xB1: "Connected 1",
    0xB2: "Connected 2",
    0xC1: "Charging 1",
    0xC2: "Charging 2",
}
LEGACY_CHARGING = frozenset({0xC1, 0xC2})
LEGACY_DISCONNECTED_CHARGER_STATUS = frozenset({0, 6})

# Legacy ``m2w.tms.charger_status`` index → text
WALLBOX_STATUS_CODES = (
    "Ready",
    "Charging",
    "Connected waiting car",
    "Connected waiting schedule",
    "Paused",
    "Schedule end",
    "Locked",
    "Error",
    "Connected waiting current assignation",
    "Unconfigured power sharing",
    "Queue by power boost",
    "Discharging",
    "Connected waiting admin auth for mid",
    "Connected mid safety margin exceeded",
    "OCPP unavailable",
    "OCPP charge finishing",
    "OCPP reserved",
    "Updating",
    "Queue by eco smart",
)

# ``state.session.state`` → charger status index, wins over tms.charger_status
STATE_OVERRIDES = {
    0xA1: 0, 0xA2: 9, 0xA3: 14, 0xA4: 15, 0xA6: 17,
    0xB1: 3, 0xB2: 4, 0xB3: 3, 0xB4: 2, 0xB5: 2, 0xB6: 4,
    0xB7: 8, 0xB8: 8, 0xB9: 10, 0xBA: 10, 0xBB: 12, 0xBC: 13, 0xBD: 18,
    0xC1: 1, 0xC2: 1, 0xC3: 11, 0xC4: 11,
    0xD1: 6, 0xD2: 6,
}

STATE_MACHINE_STATES = {
    0xE: "Error",
    0xF: "Unviable",
    0xA1: "Ready",
    0xA2: "PS Unconfig",
    0xA3: "Unavailable",
    0xA4: "Finish",
    0xA5: "Reserved",
    0xA6: "Updating",
    0xB1: "Connected 1",
    0xB2: "Connected 2",
    0xB3: "Connected 3",
    0xB4: "Connected 4",
    0xB5: "Connected 5",
    0xB6: "Connected 6",
    0xB7: "Waiting 1",
    0xB8: "Waiting 2",
    0xB9: "Waiting 3",
    0xBA: "Waiting 4",
    0xBB: "Mid 1",
    0xBC: "Mid 2",
    0xBD: "Waiting eco power",
    0xC1: "Charging 1",
    0xC2: "Charging 2",
    0xC3: "Discharging 1",
    0xC4: "Discharging 2",
    0xD1: "Lock",
    0xD2: "Wait Unlock",
}

PHASES = (1, 2, 3)

STATE_FIELDS = ("session.state", "ctrlPilot", "S2open", "scheduleEnergy")
M2W_FIELDS = (
    "tms.charger_status",
    *(f"tms.line{n}.power_watt.value" for n in PHASES),
    *(f"tms.line{n}.current_amp.value" for n in PHASES),
    *(f"tms.line{n}.temp_deg.value" for n in PHASES),
    *(f"PBO.line{n}.power.value" for n in PHASES),
    *(f"PBO.line{n}.current.value" for n in PHASES),
    "PBO.energy_wh.value",
)


def describe_telemetry_status(code: int) -> str:
    return TELEMETRY_STATUS_DESCRIPTIONS.get(code, "Unknown")


def telemetry_cable_connected(code: int) -> bool:
    if code in TELEMETRY_PILOT_CONNECTED:
        return TELEMETRY_PILOT_CONNECTED[code]
    return describe_telemetry_status(code) not in ("Disconnected", "Ready", "Unknown")


def _to_float(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def _to_int(value: Any) -> int:
    return int(_to_float(value))


def _phases(values: list[Any]) -> tuple[float, float, float]:
    return (_to_float(values[0]), _to_float(values[1]), _to_float(values[2]))


@dataclass
class LegacyState:
    session_state: int = 0
    control_pilot: int = 0
    s2_open: int = 0
    schedule_energy: float = 0.0
    charger_status: int = 0
    line_power: tuple[float, float, float] = (0.0, 0.0, 0.0)
    line_current: tuple[float, float, float] = (0.0, 0.0, 0.0)
    line_temp: tuple[float, float, float] = (0.0, 0.0, 0.0)
    boost_power: tuple[float, float, float] = (0.0, 0.0, 0.0)
    boost_current: tuple[float, float, float] = (0.0, 0.0, 0.0)
    boost_energy: float = 0.0

    @classmethod
    def from_hashes(cls, state: list[Any], m2w: list[Any]) -> LegacyState:
        return cls(
            session_state=_to_int(state[0]),
            control_pilot=_to_int(state[1]),
            s2_open=_to_int(state[2]),
            schedule_energy=_to_float(state[3]),
            charger_status=_to_int(m2w[0]),
            line_power=_phases(m2w[1:4]),
            line_current=_phases(m2w[4:7]),
            line_temp=_phases(m2w[7:10]),
            boost_power=_phases(m2w[10:13]),
            boost_current=_phases(m2w[13:16]),
            boost_energy=_to_float(m2w[16]),
        )


class WallboxData:
    """Snapshot of the charger state: Redis hashes, telemetry and the config database."""

    def __init__(
        self,
        redis_client: Redis | None,
        resolver: StatusResolver,
        pilot_policy: str = "charging",
        db: ChargerDatabase | None = None,
    ) -> None:
        self._redis = redis_client
        self._resolver = resolver
        self._db = db
        self.pilot_policy = pilot_policy
        self.telemetry: dict[str, float] = {}
        self.has_telemetry = False
        self.legacy = LegacyState()
        self.config = ChargerConfig()
        self._session_energy_baseline = 0.0

    @classmethod
    def from_url(
        cls,
        url: str,
        resolver: StatusResolver,
        pilot_policy: str = "charging",
        db: ChargerDatabase | None = None,
    ) -> WallboxData:
        return cls(aioredis.from_url(url, decode_responses=True), resolver, pilot_policy, db)

    @property
    def redis(self) -> Redis | None:
        return self._redis

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()

    async def refresh_snapshot(self) -> bool:
        """Re-read the legacy hashes and the charger config.

        Returns False (keeping the old snapshot) on Redis errors. A database
        error only keeps the previous config.
        """
        if self._redis is not None:
            try:
                state = await self._redis.hmget("state", list(STATE_FIELDS))
                m2w = await self._redis.hmget("m2w", list(M2W_FIELDS))
            except RedisError as exc:
                logger.warning("snapshot_refresh_failed", error=str(exc))
                return False
            self.legacy = LegacyState.from_hashes(state, m2w)

        if self._db is not None:
            try:
                self.config = await self._db.read_config()
            except ChargerDatabaseError as exc:
                logger.warning("config_refresh_failed", error=str(exc))
        return True

    def update_telemetry(self, sensor_id: str, value: float) -> bool:
        """Store one telemetry sample; returns False for sensors we don't track."""
        field = TELEMETRY_FIELDS.get(sensor_id)
        if field is None or not math.isfinite(value):
            return False

        self.has_telemetry = True
        self.telemetry[field] = value
        if field == "ocpp_status":
            self._resolver.observe(StatusSource.TELEMETRY, int(value))
        return True

    def _telemetry(self, field: str) -> float:
        return self.telemetry.get(field, 0.0) if self.has_telemetry else 0.0

    def _telemetry_int(self, field: str) -> int:
        return int(self._telemetry(field))

    # --- Control pilot ---

    def control_pilot_code(self) -> int:
        code = self._telemetry_int("control_pilot_status")
        if code != 0:
            return code
        return self.legacy.control_pilot

    def control_pilot_status(self) -> str:
        code = self._telemetry_int("control_pilot_status")
        if code != 0:
            desc = TELEMETRY_PILOT_STATES.get(code) or describe_telemetry_status(code)
            return f"{code}: {desc}"
        code = self.legacy.control_pilot
        return f"{code}: {LEGACY_PILOT_STATES.get(code, 'Unknown')}"

    def cable_connected(self) -> bool:
        if self.has_telemetry:
            code = self._telemetry_int("control_pilot_status")
            return code != 0 and telemetry_cable_connected(code)
        return self.legacy.charger_status not in LEGACY_DISCONNECTED_CHARGER_STATUS

    def pilot_charging_active(self) -> bool:
        telemetry_charging = self._telemetry_int("control_pilot_status") in TELEMETRY_CHARGING
        return telemetry_charging or self.legacy.control_pilot in LEGACY_CHARGING

    def pilot_connected(self) -> bool:
        """Pilot side of the mismatch predicate, per ``pilot_policy``."""
        if not self.cable_connected():
            return False
        if self.pilot_policy == "cable":
            return True
        return self.pilot_charging_active()

    def pilot_fault_code(self) -> int:
        return self.control_pilot_code()

    def s2_open(self) -> int:
        code = self._telemetry_int("control_pilot_status")
        if code != 0:
            return 0 if describe_telemetry_status(code) == "Charging" else 1
        return self.legacy.s2_open

    # --- Charger state ---

    def effective_status(self) -> str:
        machine = self._telemetry_int("state_machine")
        if machine != 0:
            return describe_telemetry_status(machine)

        index = STATE_OVERRIDES.get(self.legacy.session_state, self.legacy.charger_status)
        if 0 <= index < len(WALLBOX_STATUS_CODES):
            return WALLBOX_STATUS_CODES[index]
        return "Unknown"

    def state_machine_state(self) -> str:
        machine = self._telemetry_int("state_machine")
        if machine != 0:
            return f"{machine}: {describe_telemetry_status(machine)}"
        state = self.legacy.session_state
        return f"{state}: {STATE_MACHINE_STATES.get(state, 'Unknown')}"

    def charging_enable(self) -> int:
        return self._telemetry_int("charging_enable") or self.config.charging_enable

    # --- Metering ---

    def charging_current(self, phase: int) -> float:
        return self._telemetry(f"current_l{phase}") or self.legacy.line_current[phase - 1]

    def charging_power(self, phase: int) -> float:
        """Per-phase power in W: meter voltage × current when telemetry has either."""
        voltage = self._telemetry(f"voltage_l{phase}")
        current = self._telemetry(f"current_l{phase}")
        if voltage or current:
            return voltage * current
        return self.legacy.line_power[phase - 1]

    def total_charging_power(self) -> float:
        return sum(self.charging_power(phase) for phase in PHASES)

    def temperature(self, phase: int) -> float:
        return self._telemetry(f"temp_l{phase}") or self.legacy.line_temp[phase - 1]

    def added_energy(self) -> float:
        """Energy of the current session in Wh.

        The database total wins while a session is active. With telemetry the
        meter reading is taken relative to a baseline that re-arms whenever the
        state machine is not charging.
        """
        if self.config.active_session_energy_total > 0:
            return self.config.active_session_energy_total

        meter = self._telemetry("meter_energy")
        if meter:
            if self._telemetry_int("state_machine") not in TELEMETRY_CHARGING and meter > 0:
                self._session_energy_baseline = meter
                return 0.0
            if self._session_energy_baseline == 0:
                self._session_energy_baseline = meter
            return max(meter - self._session_energy_baseline, 0.0)

        return self.legacy.schedule_energy

    def available_current(self) -> int:
        return self._telemetry_int("max_available_current") or self.config.available_current
