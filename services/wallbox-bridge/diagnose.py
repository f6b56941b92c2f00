"""Diagnostic tool for the wallbox-bridge service.

Run on the charger to test each data source and collaborator on its own,
instead of debugging the full running service.

Usage:
    python diagnose.py
    python diagnose.py --step config
    python diagnose.py --step redis
    python diagnose.py --step database
    python diagnose.py --step journal
    python diagnose.py --step systemd
    python diagnose.py --step mqtt
    python diagnose.py --step resolve
"""

from __future__ import annotations

import argparse
import asyncio
import traceback

from shared.log import setup_logging

setup_logging("DEBUG", "console")

PASS = "\033[92m PASS \033[0m"
FAIL = "\033[91m FAIL \033[0m"
WARN = "\033[93m WARN \033[0m"
INFO = "\033[94m INFO \033[0m"


def header(title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  {title}")
    print(f"{'='*60}")


def result(label: str, ok: bool, detail: str = "") -> None:
    status = PASS if ok else FAIL
    print(f"  [{status}] {label}")
    if detail:
        for line in detail.strip().split("\n"):
            print(f"         {line}")


def info(label: str, detail: str = "") -> None:
    print(f"  [{INFO}] {label}")
    if detail:
        for line in detail.strip().split("\n"):
            print(f"         {line}")


# ── Step: Config ──────────────────────────────────────────────

def check_config() -> dict:
    header("Configuration")
    try:
        from config import BridgeSettings
        s = BridgeSettings()
        result("Config loaded", True)

        checks = {
            "MQTT_HOST": f"{s.mqtt_host}:{s.mqtt_port}",
            "REDIS_URL": s.redis_url,
            "OCPP_SERVICE": s.ocpp_service,
            "HEAL_SERVICES": ", ".join(s.heal_service_list),
            "AUTO_RESTART_OCPP": str(s.auto_restart_ocpp),
            "OCPP_MISMATCH_SECONDS": str(s.ocpp_mismatch_seconds),
            "OCPP_RESTART_COOLDOWN_SECONDS": str(s.ocpp_restart_cooldown_seconds),
            "OCPP_MAX_RESTARTS": str(s.ocpp_max_restarts or "unlimited"),
            "OCPP_FULL_REBOOT": str(s.ocpp_full_reboot),
            "MISMATCH_PILOT_POLICY": s.mismatch_pilot_policy,
            "PILOT_ERROR_REBOOT": f"{s.pilot_error_reboot} (code {s.pilot_error_code}, {s.pilot_error_seconds}s)",
        }
        for key, val in checks.items():
            print(f"         {key} = {val}")

        if s.ocpp_full_reboot and not s.auto_restart_ocpp:
            print(f"  [{WARN}] OCPP_FULL_REBOOT has no effect while AUTO_RESTART_OCPP is off")

        return {"settings": s}

    except Exception:
        result("Config loaded", False, traceback.format_exc())
        return {}


# ── Step: Redis ───────────────────────────────────────────────

async def check_redis(settings) -> None:
    header("Redis (state / m2w / telemetry)")
    from status import StatusResolver
    from wallbox import WallboxData

    data = WallboxData.from_url(settings.redis_url, StatusResolver(), settings.mismatch_pilot_policy)
    try:
        pong = await data.redis.ping()
        result("PING", bool(pong))

        ok = await data.refresh_snapshot()
        result(
            "Legacy snapshot", ok,
            f"session.state = {data.legacy.session_state:#x}\n"
            f"ctrlPilot = {data.legacy.control_pilot:#x}\n"
            f"tms.charger_status = {data.legacy.charger_status}",
        )
        info(
            "Pilot (legacy only, no telemetry yet)",
            f"{data.control_pilot_status()}\n"
            f"cable connected: {data.cable_connected()}\n"
            f"charging pilot: {data.pilot_charging_active()}",
        )
    except Exception:
        result("Redis connection", False, traceback.format_exc())
    finally:
        await data.close()


# ── Step: Database ────────────────────────────────────────────

async def check_database(settings) -> None:
    header("Charger database (config, info)")
    if not settings.mysql_url:
        info("Database", "MYSQL_URL is empty, config entities and commands are disabled")
        return

    from charger_db import ChargerDatabase, ChargerDatabaseError

    db = ChargerDatabase(settings.mysql_url)
    try:
        charger = await db.read_info()
        result(
            "Charger info", bool(charger.serial_number),
            f"serial = {charger.serial_number}\n"
            f"firmware = {charger.firmware_version}\n"
            f"type = {charger.charger_type or '?'}",
        )
        config = await db.read_config()
        result(
            "Config", True,
            f"lock = {config.lock}, charging_enable = {config.charging_enable}\n"
            f"max_charging_current = {config.max_charging_current} A\n"
            f"halo_brightness = {config.halo_brightness} %\n"
            f"available_current = {config.available_current} A",
        )
    except ChargerDatabaseError as exc:
        result("Database query", False, str(exc))
    finally:
        db.close()


# ── Step: Journal ─────────────────────────────────────────────

async def check_journal(settings, seconds: float = 15.0) -> None:
    header(f"Journal watcher ({settings.ocpp_service}, {seconds:.0f}s)")
    from journal import JournalWatcher
    from status import StatusResolver, StatusSource

    resolver = StatusResolver()
    watcher = JournalWatcher(resolver, unit=settings.ocpp_service)
    task = asyncio.create_task(watcher.run())
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=seconds)
        result("Watcher", False, "journalctl exited early")
    except asyncio.TimeoutError:
        result("Watcher running", True, f"mode: {watcher.mode}")
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    obs = resolver.latest(StatusSource.JOURNAL)
    if obs:
        result("StatusNotification seen", True, f"{watcher.last_status} → code {obs.code}")
    else:
        info("No StatusNotification in window", "The OCPP stack only logs on status changes.")


# ── Step: systemd ─────────────────────────────────────────────

async def check_systemd(settings) -> None:
    header("systemd units")
    from process_control import SystemdControl

    control = SystemdControl(timeout=settings.command_timeout_seconds, reboot_script=settings.reboot_script)
    for name in settings.heal_service_list + settings.dependency_service_list:
        result(name, await control.is_active(name))

    from pathlib import Path
    script = Path(settings.reboot_script)
    if script.is_file():
        result("Graceful reboot script", True, str(script))
    else:
        print(f"  [{WARN}] {script} missing, reboots would use plain `reboot`")


# ── Step: MQTT ────────────────────────────────────────────────

def check_mqtt(settings) -> None:
    header("MQTT")
    import paho.mqtt.client as mqtt

    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id="wallbox-bridge-diagnose",
    )
    if settings.mqtt_username:
        client.username_pw_set(settings.mqtt_username, settings.mqtt_password)
    try:
        client.connect(settings.mqtt_host, settings.mqtt_port, keepalive=10)
        result("Broker reachable", True, f"{settings.mqtt_host}:{settings.mqtt_port}")
        client.disconnect()
    except Exception as exc:
        result("Broker reachable", False, str(exc))


# ── Step: Resolve ─────────────────────────────────────────────

async def check_resolve(settings, seconds: float = 10.0) -> None:
    header(f"Status resolution ({seconds:.0f}s of events)")
    from events import WallboxEventListener
    from healing import MismatchDetector
    from status import StatusResolver
    from wallbox import WallboxData

    resolver = StatusResolver(stale_seconds=settings.status_stale_seconds)
    data = WallboxData.from_url(settings.redis_url, resolver, settings.mismatch_pilot_policy)
    listener = WallboxEventListener(data.redis, data, resolver)
    task = asyncio.create_task(listener.run())
    try:
        await asyncio.sleep(seconds)
        await data.refresh_snapshot()
        status = resolver.resolve()
        detector = MismatchDetector()
        mismatch = detector.update(data.pilot_connected(), status, data.control_pilot_status())
        info(
            "Resolved",
            f"OCPP: {status.code} {status.description} (source: {status.source.value if status.source else 'none'})\n"
            f"Pilot: {data.control_pilot_status()} (telemetry: {data.has_telemetry})\n"
            f"Session state: {listener.last_session_state or '-'}",
        )
        result("No mismatch", not mismatch)
    except Exception:
        result("Resolve", False, traceback.format_exc())
    finally:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await data.close()


async def main(step: str) -> None:
    ctx = check_config()
    settings = ctx.get("settings")
    if settings is None or step == "config":
        return

    if step in ("redis", "all"):
        await check_redis(settings)
    if step in ("database", "all"):
        await check_database(settings)
    if step in ("journal", "all"):
        await check_journal(settings)
    if step in ("systemd", "all"):
        await check_systemd(settings)
    if step in ("mqtt", "all"):
        check_mqtt(settings)
    if step in ("resolve", "all"):
        await check_resolve(settings)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="wallbox-bridge diagnostics")
    parser.add_argument(
        "--step",
        default="all",
        choices=["config", "redis", "database", "journal", "systemd", "mqtt", "resolve", "all"],
    )
    args = parser.parse_args()
    asyncio.run(main(args.step))
