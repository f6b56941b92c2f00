"""Access to the charger's local MySQL database.

The firmware keeps user-facing configuration (lock, charging enable, max
current, halo brightness) and session energy totals in MySQL rather than
Redis. Queries are synchronous SQLAlchemy calls run via ``asyncio.to_thread``
so the polling loop never blocks on the database.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from shared.log import get_logger

logger = get_logger("charger-db")

CONFIG_QUERY = text("""
    SELECT
        `wallbox_config`.`charging_enable` AS charging_enable,
        `wallbox_config`.`lock` AS `lock`,
        `wallbox_config`.`max_charging_current` AS max_charging_current,
        `wallbox_config`.`halo_brightness` AS halo_brightness,
        `power_outage_values`.`charged_energy` AS cumulative_added_energy,
        CASE WHEN `active_session`.`unique_id` != 0
            THEN `active_session`.`charged_range`
            ELSE `latest_session`.`charged_range` END AS added_range,
        CASE WHEN `active_session`.`unique_id` != 0
            THEN `active_session`.`energy_total`
            ELSE 0 END AS active_session_energy_total
    FROM `wallbox_config`,
        `active_session`,
        `power_outage_values`,
        (SELECT * FROM `session` ORDER BY `id` DESC LIMIT 1) AS latest_session
""")

AVAILABLE_CURRENT_QUERY = text(
    "SELECT `max_avbl_current` FROM `state_values` ORDER BY `id` DESC LIMIT 1"
)


class ChargerDatabaseError(Exception):
    """A query against the charger database failed."""


@dataclass
class ChargerConfig:
    lock: int = 0
    charging_enable: int = 0
    max_charging_current: int = 0
    halo_brightness: int = 0
    cumulative_added_energy: float = 0.0
    added_range: float = 0.0
    active_session_energy_total: float = 0.0
    available_current: int = 0


@dataclass
class ChargerInfo:
    serial_number: str = ""
    firmware_version: str = "unknown"
    charger_type: str = ""


class ChargerDatabase:
    def __init__(self, url: str = "", engine: Engine | None = None) -> None:
        self._engine = engine or create_engine(url, pool_pre_ping=True, pool_recycle=3600)

    def close(self) -> None:
        self._engine.dispose()

    def _scalar(self, sql: str, **params: object) -> object:
        with self._engine.connect() as conn:
            return conn.execute(text(sql), params).scalar()

    def _execute(self, sql: str, **params: object) -> None:
        with self._engine.begin() as conn:
            conn.execute(text(sql), params)

    async def _call(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except SQLAlchemyError as exc:
            raise ChargerDatabaseError(str(exc).splitlines()[0]) from exc

    # --- Reads ---

    def _read_config(self) -> ChargerConfig:
        with self._engine.connect() as conn:
            row = conn.execute(CONFIG_QUERY).mappings().fetchone()
            available = conn.execute(AVAILABLE_CURRENT_QUERY).scalar()

        config = ChargerConfig(available_current=int(available or 0))
        if row is not None:
            config.lock = int(row["lock"] or 0)
            config.charging_enable = int(row["charging_enable"] or 0)
            config.max_charging_current = int(row["max_charging_current"] or 0)
            config.halo_brightness = int(row["halo_brightness"] or 0)
            config.cumulative_added_energy = float(row["cumulative_added_energy"] or 0)
            config.added_range = float(row["added_range"] or 0)
            config.active_session_energy_total = float(row["active_session_energy_total"] or 0)
        return config

    async def read_config(self) -> ChargerConfig:
        return await self._call(self._read_config)

    def _read_info(self) -> ChargerInfo:
        serial = self._scalar("SELECT `serial_num` FROM `charger_info` LIMIT 1")
        part_number = self._scalar("SELECT `part_number` FROM `charger_info` LIMIT 1")
        firmware = (
            self._scalar("SELECT `version` FROM `wallbox_version` ORDER BY `id` DESC LIMIT 1")
            or self._scalar("SELECT `software_version` FROM `charger_info` LIMIT 1")
            or "unknown"
        )
        return ChargerInfo(
            serial_number=str(serial or ""),
            firmware_version=str(firmware),
            charger_type=str(part_number or "").split("-", 1)[0],
        )

    async def read_info(self) -> ChargerInfo:
        """Serial number, firmware version and model prefix (e.g. ``CPB1``)."""
        return await self._call(self._read_info)

    async def user_id(self) -> str:
        """Most recent non-admin user, needed to unlock via the login queue."""
        value = await self._call(
            self._scalar,
            "SELECT `user_id` FROM `users` WHERE `user_id` != 1 ORDER BY `user_id` DESC LIMIT 1",
        )
        return str(value or "")

    # --- Writes ---

    async def set_lock(self, lock: int) -> None:
        await self._call(self._execute, "UPDATE `wallbox_config` SET `lock` = :lock", lock=lock)
        logger.info("config_updated", field="lock", value=lock)

    async def set_max_charging_current(self, current: int) -> None:
        await self._call(
            self._execute,
            "UPDATE `wallbox_config` SET `max_charging_current` = :current",
            current=current,
        )
        logger.info("config_updated", field="max_charging_current", value=current)

    async def set_halo_brightness(self, brightness: int) -> None:
        await self._call(
            self._execute,
            "UPDATE `wallbox_config` SET `halo_brightness` = :brightness",
            brightness=brightness,
        )
        logger.info("config_updated", field="halo_brightness", value=brightness)
