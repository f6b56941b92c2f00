"""Journal watcher: line handling, json → cat fallback, teardown of journalctl."""
from __future__ import annotations

import asyncio
import json

from journal import JournalWatcher
from status import StatusResolver, StatusSource


def status_line(status: str) -> str:
    return f'ocppwallbox[1]: Sending Request to CS:[2,"1","StatusNotification",{{"connectorId": 1,"status": "{status}"}}]'


class FakeStream:
    def __init__(self, lines: list[bytes], block: bool = False) -> None:
        self._lines = list(lines)
        self._block = block

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0)
        if self._block:
            await asyncio.Event().wait()
        return b""


class FakeProcess:
    pid = 4242

    def __init__(self, lines: list[bytes], block: bool = False, ignore_term: bool = False) -> None:
        self.stdout = FakeStream(lines, block)
        self.returncode: int | None = None
        self.ignore_term = ignore_term
        self.terminated = False
        self.killed = False

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_term:
            self.returncode = -15

    def kill(self) -> None:
        self.killed = True
        self.returncode = -9

    async def wait(self) -> int:
        while self.returncode is None:
            await asyncio.sleep(0.01)
        return self.returncode


class FakeSpawner:
    def __init__(self, proc: FakeProcess, failing_modes: tuple[str, ...] = ()) -> None:
        self.proc = proc
        self.failing_modes = failing_modes
        self.commands: list[tuple[str, ...]] = []

    async def __call__(self, *argv: str, **kwargs) -> FakeProcess:
        self.commands.append(argv)
        if argv[-1] in self.failing_modes:
            raise FileNotFoundError("journalctl")
        return self.proc


def make_watcher(clock, spawner=None, grace=0.05):
    resolver = StatusResolver(clock=clock)
    kwargs = {"spawn": spawner} if spawner else {}
    return resolver, JournalWatcher(resolver, unit="ocppwallbox.service", grace_seconds=grace, **kwargs)


def test_handle_line_feeds_resolver(clock):
    resolver, watcher = make_watcher(clock)
    assert watcher.handle_line(status_line("Charging")) == 3
    obs = resolver.latest(StatusSource.JOURNAL)
    assert obs.code == 3
    assert watcher.last_status == "Charging"


def test_handle_line_drops_unknown_status(clock):
    resolver, watcher = make_watcher(clock)
    assert watcher.handle_line(status_line("Occupied")) is None
    assert resolver.latest(StatusSource.JOURNAL) is None


def test_handle_line_ignores_unrelated_lines(clock):
    resolver, watcher = make_watcher(clock)
    assert watcher.handle_line('Heartbeat {"status": "Accepted"}') is None
    assert resolver.latest(StatusSource.JOURNAL) is None


def test_run_json_mode_reads_until_eof(clock):
    entry = json.dumps({"MESSAGE": status_line("SuspendedEV")}).encode() + b"\n"
    proc = FakeProcess([b'{"MESSAGE": "boot"}\n', entry])
    spawner = FakeSpawner(proc)
    resolver, watcher = make_watcher(clock, spawner)

    asyncio.run(watcher.run())

    assert watcher.mode == "json"
    assert spawner.commands[0][-2:] == ("-o", "json")
    assert resolver.latest(StatusSource.JOURNAL).code == 5
    assert proc.terminated


def test_run_falls_back_to_cat_mode(clock):
    proc = FakeProcess([status_line("Faulted").encode() + b"\n"])
    spawner = FakeSpawner(proc, failing_modes=("json",))
    resolver, watcher = make_watcher(clock, spawner)

    asyncio.run(watcher.run())

    assert [cmd[-1] for cmd in spawner.commands] == ["json", "cat"]
    assert watcher.mode == "cat"
    assert resolver.latest(StatusSource.JOURNAL).code == 9


def test_run_exits_when_no_mode_starts(clock):
    spawner = FakeSpawner(FakeProcess([]), failing_modes=("json", "cat"))
    resolver, watcher = make_watcher(clock, spawner)

    asyncio.run(watcher.run())

    assert watcher.mode is None
    assert len(spawner.commands) == 2


def test_cancel_terminates_blocked_process(clock):
    proc = FakeProcess([], block=True)
    _, watcher = make_watcher(clock, FakeSpawner(proc))

    async def scenario():
        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        return task

    task = asyncio.run(scenario())
    assert task.cancelled()
    assert proc.terminated
    assert not proc.killed


def test_cancel_kills_process_ignoring_sigterm(clock):
    proc = FakeProcess([], block=True, ignore_term=True)
    _, watcher = make_watcher(clock, FakeSpawner(proc), grace=0.05)

    async def scenario():
        task = asyncio.create_task(watcher.run())
        await asyncio.sleep(0.05)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    asyncio.run(scenario())
    assert proc.terminated
    assert proc.killed
    assert proc.returncode == -9


def test_watcher_is_restartable(clock):
    first = FakeProcess([status_line("Available").encode() + b"\n"])
    spawner = FakeSpawner(first)
    resolver, watcher = make_watcher(clock, spawner)
    asyncio.run(watcher.run())

    spawner.proc = FakeProcess([status_line("Charging").encode() + b"\n"])
    asyncio.run(watcher.run())

    assert len(spawner.commands) == 2
    assert resolver.latest(StatusSource.JOURNAL).code == 3
