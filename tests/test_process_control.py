"""systemctl / reboot commands against a fake subprocess spawner."""
from __future__ import annotations

import asyncio

import pytest

from process_control import ProcessControlError, SystemdControl


class FakeProcess:
    def __init__(self, returncode: int = 0, output: bytes = b"", hang: bool = False) -> None:
        self.returncode = returncode
        self._output = output
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.Event().wait()
        return self._output, None

    def kill(self) -> None:
        self.killed = True

    async def wait(self) -> int:
        return self.returncode


class FakeSpawner:
    """Returns canned processes keyed by the first argv element."""

    def __init__(self, results: dict[str, FakeProcess] | None = None, missing: set[str] | None = None) -> None:
        self.results = results or {}
        self.missing = missing or set()
        self.argvs: list[tuple[str, ...]] = []

    async def __call__(self, *argv, **kwargs):
        self.argvs.append(argv)
        if argv[0] in self.missing:
            raise FileNotFoundError(argv[0])
        return self.results.get(argv[0], FakeProcess())


def test_service_commands_use_systemctl():
    spawn = FakeSpawner()
    control = SystemdControl(spawn=spawn)

    async def scenario():
        await control.stop_service("ocppwallbox")
        await control.start_service("ocppwallbox")
        await control.restart_service("wallboxsmachine")

    asyncio.run(scenario())

    assert spawn.argvs == [
        ("systemctl", "stop", "ocppwallbox"),
        ("systemctl", "start", "ocppwallbox"),
        ("systemctl", "restart", "wallboxsmachine"),
    ]


def test_non_zero_exit_raises_with_output():
    spawn = FakeSpawner({"systemctl": FakeProcess(returncode=5, output=b"Unit not found.\n")})
    control = SystemdControl(spawn=spawn)

    with pytest.raises(ProcessControlError, match="exit status 5: Unit not found."):
        asyncio.run(control.restart_service("nope"))


def test_missing_executable_raises():
    control = SystemdControl(spawn=FakeSpawner(missing={"systemctl"}))
    with pytest.raises(ProcessControlError, match="systemctl stop x"):
        asyncio.run(control.stop_service("x"))


def test_timeout_kills_the_command():
    proc = FakeProcess(hang=True)
    control = SystemdControl(timeout=0.05, spawn=FakeSpawner({"systemctl": proc}))

    with pytest.raises(ProcessControlError, match="timed out"):
        asyncio.run(control.start_service("ocppwallbox"))
    assert proc.killed


def test_is_active_maps_exit_status():
    control = SystemdControl(spawn=FakeSpawner({"systemctl": FakeProcess(returncode=3)}))
    assert asyncio.run(control.is_active("redis")) is False

    control = SystemdControl(spawn=FakeSpawner())
    assert asyncio.run(control.is_active("redis")) is True


def test_reboot_prefers_executable_script(tmp_path):
    script = tmp_path / "safe-reboot"
    script.write_text("#!/bin/sh\n")
    script.chmod(0o755)
    spawn = FakeSpawner()

    asyncio.run(SystemdControl(reboot_script=str(script), spawn=spawn).reboot())

    assert spawn.argvs == [(str(script),)]


def test_reboot_falls_back_when_script_missing(tmp_path):
    spawn = FakeSpawner()
    asyncio.run(SystemdControl(reboot_script=str(tmp_path / "missing"), spawn=spawn).reboot())
    assert spawn.argvs == [("reboot",)]


def test_reboot_falls_back_when_script_fails(tmp_path):
    script = tmp_path / "safe-reboot"
    script.write_text("#!/bin/sh\nexit 1\n")
    script.chmod(0o755)
    spawn = FakeSpawner({str(script): FakeProcess(returncode=1)})

    asyncio.run(SystemdControl(reboot_script=str(script), spawn=spawn).reboot())

    assert spawn.argvs == [(str(script),), ("reboot",)]


def test_reboot_failure_propagates(tmp_path):
    spawn = FakeSpawner({"reboot": FakeProcess(returncode=1)})
    control = SystemdControl(reboot_script=str(tmp_path / "missing"), spawn=spawn)
    with pytest.raises(ProcessControlError):
        asyncio.run(control.reboot())
