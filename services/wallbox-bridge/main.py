"""Wallbox Bridge Service: entry point and polling loop.

Keeps one trustworthy OCPP connector status (journal, session events,
telemetry), compares it with the control pilot every tick and heals a
sustained disagreement by restarting the charging services, optionally
escalating to a reboot. A separate safety net reboots on a sustained pilot
error. State is published to MQTT with HA auto-discovery.

Per tick, in order: refresh snapshot → resolve status → mismatch detector →
healing controller → pilot error safety net → publish status and
charger entity states. Charger commands arrive on ``<key>/set`` topics.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from concurrent.futures import Future
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from shared.service import BaseService

from charger_db import ChargerDatabase, ChargerDatabaseError, ChargerInfo
from commands import ChargerCommands, CommandError
from config import BridgeSettings
from entities import Entity, charger_entities, format_state
from events import WallboxEventListener
from healing import (
    HealAttempt,
    HealingController,
    MismatchDetector,
    PilotErrorSafetyNet,
    RebootDispatcher,
)
from journal import JournalWatcher
from process_control import SystemdControl
from status import ResolvedStatus, StatusResolver
from wallbox import WallboxData

HEALTHCHECK_FILE = Path("/app/data/healthcheck")


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


class WallboxBridgeService(BaseService):
    name = "wallbox-bridge"

    def __init__(self, settings: BridgeSettings | None = None) -> None:
        super().__init__(settings=settings or BridgeSettings())
        self.settings: BridgeSettings  # narrow type for IDE
        s = self.settings

        self.resolver = StatusResolver(stale_seconds=s.status_stale_seconds)
        self.db = ChargerDatabase(s.mysql_url) if s.mysql_url else None
        self.data = WallboxData.from_url(s.redis_url, self.resolver, s.mismatch_pilot_policy, self.db)
        self.commands = ChargerCommands(self.db) if self.db is not None else None
        self.entities: dict[str, Entity] = {
            e.key: e for e in charger_entities(s.debug_sensors, s.power_boost_enabled)
            if e.setter is None or self.commands is not None
        }
        self.info = ChargerInfo()
        self.listener = WallboxEventListener(self.data.redis, self.data, self.resolver)
        self.journal = JournalWatcher(self.resolver, unit=s.ocpp_service)

        self.control = SystemdControl(
            timeout=s.command_timeout_seconds,
            reboot_script=s.reboot_script,
        )
        self.dispatcher = RebootDispatcher(self.control)
        self.detector = MismatchDetector()
        self.healer = HealingController(
            self.control,
            self.dispatcher,
            services=s.heal_service_list,
            dependencies=s.dependency_service_list,
            threshold=s.ocpp_mismatch_seconds,
            cooldown=s.ocpp_restart_cooldown_seconds,
            max_restarts=s.ocpp_max_restarts,
            full_reboot=s.ocpp_full_reboot,
            on_attempt=self._on_heal_attempt,
        )
        self.safety_net = PilotErrorSafetyNet(
            self.dispatcher,
            fault_code=s.pilot_error_code,
            duration=s.pilot_error_seconds,
            enabled=s.pilot_error_reboot,
        )

        self._last_published: dict[str, Any] | None = None
        self._source_tasks: list[asyncio.Task] = []
        self._background: set[asyncio.Task] = set()
        self._last_tick_ok: bool = False
        self._entity_states: dict[str, str] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self._read_charger_info()

        self.mqtt.connect_background()
        self._register_ha_discovery()
        if self.commands is not None:
            self.mqtt.subscribe(self.topic("+/set"), self._on_command)

        self._source_tasks = [
            asyncio.create_task(self._supervise("journal_watcher", self.journal.run)),
            asyncio.create_task(self._supervise("event_listener", self.listener.run)),
        ]

        s = self.settings
        self.logger.info(
            "service_ready",
            polling_interval=s.polling_interval_seconds,
            auto_restart=s.auto_restart_ocpp,
            mismatch_s=s.ocpp_mismatch_seconds,
            cooldown_s=s.ocpp_restart_cooldown_seconds,
            max_restarts=s.ocpp_max_restarts,
            full_reboot=s.ocpp_full_reboot,
            pilot_policy=s.mismatch_pilot_policy,
            pilot_error_reboot=s.pilot_error_reboot,
        )

        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.tick()
                    self._last_tick_ok = True
                except Exception:
                    self._last_tick_ok = False
                    self.logger.exception("tick_error")
                finally:
                    self._touch_healthcheck()

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=s.polling_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            for task in self._source_tasks:
                task.cancel()
            await asyncio.gather(*self._source_tasks, return_exceptions=True)
            await self.data.close()
            if self.db is not None:
                self.db.close()

    async def _supervise(self, label: str, run: Callable[[], Awaitable[None]]) -> None:
        """Keep a status source running; it is restarted after it exits."""
        delay = self.settings.journal_restart_delay_seconds
        while not self._shutdown_event.is_set():
            try:
                await run()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("source_crashed", source=label)
            self.logger.info("source_restart_scheduled", source=label, delay_s=delay)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def tick(self) -> None:
        """One polling cycle; detection and healing run strictly in sequence."""
        if not await self.data.refresh_snapshot():
            return

        status = self.resolver.resolve()
        pilot_connected = self.data.pilot_connected()
        self.detector.update(pilot_connected, status, self.data.control_pilot_status())

        if self.settings.auto_restart_ocpp:
            await self.healer.tick(self.detector.window)

        self.safety_net.tick(self.data.pilot_fault_code())

        self._publish_status(self._status_payload(status))
        self._publish_entity_states()

    def _status_payload(self, status: ResolvedStatus) -> dict[str, Any]:
        attempt = self.healer.last_attempt
        return {
            "ocpp_mismatch": self.detector.active,
            "ocpp_status": status.description,
            "ocpp_status_code": status.code,
            "ocpp_status_source": status.source.value if status.source else None,
            "control_pilot": self.data.control_pilot_status(),
            "cable_connected": self.data.cable_connected(),
            "restart_count": self.detector.window.restart_count,
            "ocpp_last_restart": _iso(self.healer.throttle.last_restart_at) or "never",
            "heal_action": attempt.action.value if attempt else None,
            "heal_detail": attempt.detail if attempt else None,
            "heal_error": attempt.error if attempt else None,
            "heal_at": _iso(attempt.at) if attempt else None,
            "pilot_error_since": _iso(self.safety_net.window.started_at),
            "pilot_error_last_reboot": _iso(self.safety_net.window.last_reboot_at),
        }

    def _publish_status(self, payload: dict[str, Any]) -> None:
        if payload == self._last_published:
            return
        self.publish("status", payload, retain=True)
        self._last_published = payload

    def _publish_entity_states(self) -> None:
        """Publish each charger entity's state when it changed since the last publish."""
        for key, entity in self.entities.items():
            state = format_state(entity.getter(self.data))
            if self._entity_states.get(key) == state:
                continue
            self.mqtt.publish(self.topic(f"{key}/state"), state, retain=True)
            self._entity_states[key] = state

    async def _read_charger_info(self) -> None:
        if self.db is None:
            return
        try:
            self.info = await self.db.read_info()
        except ChargerDatabaseError as exc:
            self.logger.warning("charger_info_failed", error=str(exc))
            return
        if self.commands is not None:
            self.commands.charger_type = self.info.charger_type
        self.logger.info(
            "charger_info",
            serial=self.info.serial_number,
            firmware=self.info.firmware_version,
            charger_type=self.info.charger_type,
        )

    # ------------------------------------------------------------------
    # MQTT commands
    # ------------------------------------------------------------------

    def _on_command(self, topic: str, payload: dict[str, Any]) -> Future | None:
        """Handle ``<key>/set`` from HA (runs in the paho network thread)."""
        key = topic.rsplit("/", 2)[-2]
        value = payload.get("value", payload.get("raw"))
        if self._loop is None:
            return None
        return asyncio.run_coroutine_threadsafe(self._apply_command(key, value), self._loop)

    async def _apply_command(self, key: str, value: object) -> None:
        entity = self.entities.get(key)
        if entity is None or entity.setter is None or self.commands is None:
            self.logger.warning("command_unknown_entity", entity=key)
            return

        try:
            await entity.setter(self.commands, value)
        except (CommandError, ChargerDatabaseError) as exc:
            self.logger.warning("command_failed", entity=key, value=str(value), error=str(exc))
            return

        self.logger.info("command_applied", entity=key, value=str(value))
        if await self.data.refresh_snapshot():
            self._publish_entity_states()

    def _on_heal_attempt(self, attempt: HealAttempt) -> None:
        if not (self.settings.notify_ha_on_heal and self.ha.available):
            return
        message = attempt.detail + (f"\nError: {attempt.error}" if attempt.error else "")
        task = asyncio.get_running_loop().create_task(self._notify_ha(attempt.action.value, message))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_ha(self, action: str, message: str) -> None:
        try:
            await self.ha.create_notification(
                f"{self.settings.device_name}: OCPP heal ({action})",
                message,
                notification_id="wallbox_bridge_heal",
            )
        except Exception:
            self.logger.warning("ha_notification_failed", action=action)

    def health_check(self) -> dict[str, Any]:
        if not self._last_tick_ok:
            return {"status": "degraded", "reason": "last tick failed"}
        return {"ocpp_mismatch": self.detector.active}

    # ------------------------------------------------------------------
    # HA discovery
    # ------------------------------------------------------------------

    def _register_ha_discovery(self) -> None:
        """Register the diagnostic and charger entities under the wallbox device."""
        device = {
            "identifiers": ["homelab_wallbox_bridge"],
            "name": self.settings.device_name,
            "manufacturer": "Wallbox",
            "model": self.info.charger_type or "wallbox-bridge",
            "sw_version": self.info.firmware_version,
        }
        if self.info.serial_number:
            device["serial_number"] = self.info.serial_number
        node = "wallbox_bridge"
        status_topic = self.topic("status")

        self.mqtt.publish_ha_discovery(
            "binary_sensor", "ocpp_mismatch", node_id=node, config={
                "name": "OCPP mismatch",
                "device": device,
                "state_topic": status_topic,
                "value_template": "{{ 'ON' if value_json.ocpp_mismatch else 'OFF' }}",
                "device_class": "problem",
                "entity_category": "diagnostic",
            },
        )

        self.mqtt.publish_ha_discovery(
            "sensor", "ocpp_last_restart", node_id=node, config={
                "name": "OCPP last restart",
                "device": device,
                "state_topic": status_topic,
                "value_template": "{{ value_json.ocpp_last_restart }}",
                "entity_category": "diagnostic",
                "icon": "mdi:restart",
            },
        )

        self.mqtt.publish_ha_discovery(
            "sensor", "ocpp_status", node_id=node, config={
                "name": "OCPP status",
                "device": device,
                "state_topic": status_topic,
                "value_template": "{{ value_json.ocpp_status }}",
                "json_attributes_topic": status_topic,
                "json_attributes_template": (
                    "{{ {'code': value_json.ocpp_status_code, "
                    "'source': value_json.ocpp_status_source} | tojson }}"
                ),
                "icon": "mdi:ev-station",
            },
        )

        self.mqtt.publish_ha_discovery(
            "sensor", "control_pilot", node_id=node, config={
                "name": "Control pilot",
                "device": device,
                "state_topic": status_topic,
                "value_template": "{{ value_json.control_pilot }}",
                "entity_category": "diagnostic",
                "icon": "mdi:sine-wave",
            },
        )

        self.mqtt.publish_ha_discovery(
            "sensor", "heal_action", node_id=node, config={
                "name": "Last heal action",
                "device": device,
                "state_topic": status_topic,
                "value_template": "{{ value_json.heal_action or 'none' }}",
                "json_attributes_topic": status_topic,
                "json_attributes_template": (
                    "{{ {'detail': value_json.heal_detail, 'error': value_json.heal_error, "
                    "'at': value_json.heal_at, 'restart_count': value_json.restart_count} | tojson }}"
                ),
                "entity_category": "diagnostic",
                "icon": "mdi:medical-bag",
            },
        )

        for entity in self.entities.values():
            self._register_entity(entity, device)

        self.logger.info("ha_discovery_registered", entity_count=5 + len(self.entities))

    def _register_entity(self, entity: Entity, device: dict[str, Any]) -> None:
        base = self.topic(entity.key)
        config: dict[str, Any] = {
            "~": base,
            "name": entity.name,
            "device": device,
            "state_topic": "~/state",
            **entity.config,
        }
        if entity.setter is not None:
            config["command_topic"] = "~/set"
        self.mqtt.publish_ha_discovery(entity.component, entity.key, node_id="wallbox_bridge", config=config)

    def _touch_healthcheck(self) -> None:
        try:
            HEALTHCHECK_FILE.parent.mkdir(parents=True, exist_ok=True)
            HEALTHCHECK_FILE.write_text(str(time.time()))
        except OSError:
            pass


if __name__ == "__main__":
    asyncio.run(WallboxBridgeService().start())
