"""Journal watcher: tails the OCPP unit's journal for StatusNotification frames.

The OCPP stack logs every StatusNotification it sends to the central system.
That is the most reliable view of what the backend believes, so each parsed
status is fed into the resolver's journal slot.

``journalctl -o json`` is tried first; if it cannot be started the watcher
falls back to ``-o cat`` and applies the same extraction to raw lines.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

from shared.log import get_logger

from ocpp import journal_message, lookup_status_code, parse_status_notification
from status import StatusResolver, StatusSource

logger = get_logger("journal-watcher")

MODES = ("json", "cat")
READ_LIMIT = 1 << 20  # OCPP frames can be long
DEFAULT_GRACE_SECONDS = 2.0

Spawner = Callable[..., Awaitable[Any]]


class JournalWatcher:
    """Owns one ``journalctl -f`` child process at a time.

    ``run()`` returns when the stream ends, a read fails or the process could
    not be started in either mode; the owner decides whether to call it again.
    Cancelling the running task terminates the child (SIGTERM, then SIGKILL
    after ``grace_seconds``).
    """

    def __init__(
        self,
        resolver: StatusResolver,
        unit: str = "ocppwallbox.service",
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        spawn: Spawner = asyncio.create_subprocess_exec,
    ) -> None:
        self._resolver = resolver
        self.unit = unit
        self.grace_seconds = grace_seconds
        self._spawn = spawn
        self.mode: str | None = None
        self.last_status: str | None = None

    def command(self, mode: str) -> list[str]:
        return ["journalctl", "-u", self.unit, "-f", "-n", "0", "-q", "-o", mode]

    async def _start(self) -> Any | None:
        for mode in MODES:
            try:
                proc = await self._spawn(
                    *self.command(mode),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.DEVNULL,
                    limit=READ_LIMIT,
                )
            except OSError as exc:
                logger.warning("journal_start_failed", mode=mode, unit=self.unit, error=str(exc))
                continue
            self.mode = mode
            logger.info("journal_watcher_running", mode=mode, unit=self.unit, pid=proc.pid)
            return proc
        return None

    async def run(self) -> None:
        proc = await self._start()
        if proc is None:
            logger.error("journal_watcher_exited", reason="start_failed", unit=self.unit)
            return

        try:
            while True:
                raw = await proc.stdout.readline()
                if not raw:
                    break
                self.handle_line(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
        except (ValueError, OSError) as exc:
            logger.warning("journal_read_failed", error=str(exc))
        finally:
            await self._terminate(proc)
        logger.warning("journal_watcher_exited", reason="stream_ended", returncode=proc.returncode)

    async def _terminate(self, proc: Any) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_seconds)
        except asyncio.TimeoutError:
            logger.warning("journal_kill", pid=proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

    def handle_line(self, line: str) -> int | None:
        """Parse one journal line; returns the code pushed to the resolver, if any."""
        status = parse_status_notification(journal_message(line))
        if status is None:
            return None

        code = lookup_status_code(status)
        if code is None:
            logger.warning("journal_unknown_status", status=status, line=line[:300])
            return None

        self.last_status = status
        self._resolver.observe(StatusSource.JOURNAL, code)
        logger.info("journal_status", status=status, code=int(code))
        return int(code)
