"""systemd / OS process control used by the healing logic.

Every command runs with a bounded timeout; failures (non-zero exit, missing
executable, timeout) raise ProcessControlError so callers can record them.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from shared.log import get_logger

logger = get_logger("process-control")

Spawner = Callable[..., Awaitable[Any]]


class ProcessControlError(Exception):
    """A service or reboot command could not be completed."""


class SystemdControl:
    def __init__(
        self,
        timeout: float = 30.0,
        reboot_script: str = "/usr/sbin/wallbox-safe-reboot",
        spawn: Spawner = asyncio.create_subprocess_exec,
    ) -> None:
        self.timeout = timeout
        self.reboot_script = reboot_script
        self._spawn = spawn

    async def _run(self, *argv: str) -> str:
        cmd = " ".join(argv)
        try:
            proc = await self._spawn(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            raise ProcessControlError(f"{cmd}: {exc}") from exc

        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ProcessControlError(f"{cmd}: timed out after {self.timeout:g}s") from None

        output = (out or b"").decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            detail = f": {output[:200]}" if output else ""
            raise ProcessControlError(f"{cmd}: exit status {proc.returncode}{detail}")
        return output

    async def stop_service(self, name: str) -> None:
        await self._run("systemctl", "stop", name)
        logger.info("service_stopped", unit=name)

    async def start_service(self, name: str) -> None:
        await self._run("systemctl", "start", name)
        logger.info("service_started", unit=name)

    async def restart_service(self, name: str) -> None:
        await self._run("systemctl", "restart", name)
        logger.info("service_restarted", unit=name)

    async def is_active(self, name: str) -> bool:
        try:
            await self._run("systemctl", "is-active", "--quiet", name)
        except ProcessControlError:
            return False
        return True

    async def reboot(self) -> None:
        """Reboot via the vendor's graceful script, falling back to ``reboot``."""
        script = Path(self.reboot_script)
        if script.is_file() and os.access(script, os.X_OK):
            try:
                await self._run(str(script))
                logger.warning("reboot_requested", via="script", script=str(script))
                return
            except ProcessControlError as exc:
                logger.warning("reboot_script_failed", script=str(script), error=str(exc))
        else:
            logger.warning("reboot_script_missing", script=str(script))

        await self._run("reboot")
        logger.warning("reboot_requested", via="reboot")
