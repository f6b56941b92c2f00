"""Shared fixtures: fake clock, in-memory process control and charger database."""
from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SERVICE_DIR = ROOT / "services" / "wallbox-bridge"
for path in (SERVICE_DIR, ROOT):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from charger_db import ChargerConfig, ChargerDatabaseError, ChargerInfo  # noqa: E402
from process_control import ProcessControlError  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeControl:
    """Records every call; operations listed in ``fail`` raise ProcessControlError."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.fail: set[str] = set()
        self.inactive: set[str] = set()

    async def _op(self, op: str, name: str = "") -> None:
        self.calls.append((op, name))
        if op in self.fail:
            raise ProcessControlError(f"{op} {name} failed")

    async def stop_service(self, name: str) -> None:
        await self._op("stop", name)

    async def start_service(self, name: str) -> None:
        await self._op("start", name)

    async def restart_service(self, name: str) -> None:
        await self._op("restart", name)

    async def is_active(self, name: str) -> bool:
        self.calls.append(("is_active", name))
        return name not in self.inactive

    async def reboot(self) -> None:
        await self._op("reboot")

    def ops(self, op: str) -> list[str]:
        return [name for o, name in self.calls if o == op]


class FakeDatabase:
    """Charger config rows in memory; ``fail`` makes every call raise."""

    def __init__(self) -> None:
        self.config = ChargerConfig()
        self.info = ChargerInfo(serial_number="123456", firmware_version="6.5.21", charger_type="PLP1")
        self.user = "42"
        self.writes: list[tuple[str, int]] = []
        self.fail = False

    def _check(self) -> None:
        if self.fail:
            raise ChargerDatabaseError("MySQL server has gone away")

    async def read_config(self) -> ChargerConfig:
        self._check()
        return replace(self.config)

    async def read_info(self) -> ChargerInfo:
        self._check()
        return self.info

    async def user_id(self) -> str:
        self._check()
        return self.user

    async def _write(self, field: str, value: int) -> None:
        self._check()
        self.writes.append((field, value))
        setattr(self.config, field, value)

    async def set_lock(self, lock: int) -> None:
        await self._write("lock", lock)

    async def set_max_charging_current(self, current: int) -> None:
        await self._write("max_charging_current", current)

    async def set_halo_brightness(self, brightness: int) -> None:
        await self._write("halo_brightness", brightness)

    def close(self) -> None:
        pass


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def control() -> FakeControl:
    return FakeControl()


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()
