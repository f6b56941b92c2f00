"""Service-specific settings for wallbox-bridge."""

from pydantic import field_validator

from shared.config import Settings as BaseSettings

DEFAULT_MISMATCH_SECONDS = 60
DEFAULT_RESTART_COOLDOWN_SECONDS = 600
DEFAULT_PILOT_ERROR_SECONDS = 300


class BridgeSettings(BaseSettings):
    """All configuration for the wallbox bridge.

    Inherits shared settings (HA, MQTT, logging) and adds the OCPP
    reconciliation and self-healing parameters.  Every field can be
    overridden via an environment variable with the same (upper-case) name.
    """

    # --- Polling ---
    polling_interval_seconds: float = 1.0
    device_name: str = "Wallbox"

    # --- Data sources ---
    redis_url: str = "redis://localhost:6379/0"
    ocpp_service: str = "ocppwallbox.service"  # journald unit carrying StatusNotification logs
    status_stale_seconds: int = 600  # observations older than this are ignored
    journal_restart_delay_seconds: float = 10.0
    # Charger config database; empty disables config entities and commands
    mysql_url: str = "mysql+pymysql://root@127.0.0.1:3306/wallbox"

    # --- Self-healing (OCPP vs control pilot mismatch) ---
    auto_restart_ocpp: bool = False
    # Comma-separated units, restarted in this order
    heal_services: str = "wallboxsmachine.service,ocppwallbox.service"
    # Comma-separated units checked (log only) before a restart attempt
    dependency_services: str = "redis.service,mysqld.service"
    ocpp_mismatch_seconds: int = DEFAULT_MISMATCH_SECONDS
    ocpp_restart_cooldown_seconds: int = DEFAULT_RESTART_COOLDOWN_SECONDS
    ocpp_max_restarts: int = 3  # 0 = unlimited
    ocpp_full_reboot: bool = False
    # "charging": cable connected and pilot in a charging state
    # "cable": cable connected, pilot state ignored
    mismatch_pilot_policy: str = "charging"

    # --- Pilot error safety net ---
    pilot_error_reboot: bool = False
    pilot_error_seconds: int = DEFAULT_PILOT_ERROR_SECONDS
    pilot_error_code: int = 14  # 0xE, control pilot "Error"

    # --- Process control ---
    command_timeout_seconds: float = 30.0
    reboot_script: str = "/usr/sbin/wallbox-safe-reboot"

    # --- Notifications ---
    notify_ha_on_heal: bool = False

    # --- Extra entities ---
    debug_sensors: bool = False  # raw codes and every telemetry field
    power_boost_enabled: bool = False

    @field_validator("ocpp_mismatch_seconds")
    @classmethod
    def _default_mismatch(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_MISMATCH_SECONDS

    @field_validator("ocpp_restart_cooldown_seconds")
    @classmethod
    def _default_cooldown(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_RESTART_COOLDOWN_SECONDS

    @field_validator("pilot_error_seconds")
    @classmethod
    def _default_pilot_error(cls, v: int) -> int:
        return v if v > 0 else DEFAULT_PILOT_ERROR_SECONDS

    @field_validator("mismatch_pilot_policy")
    @classmethod
    def _check_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("charging", "cable"):
            raise ValueError("mismatch_pilot_policy must be 'charging' or 'cable'")
        return v

    @property
    def heal_service_list(self) -> list[str]:
        return [s.strip() for s in self.heal_services.split(",") if s.strip()]

    @property
    def dependency_service_list(self) -> list[str]:
        return [s.strip() for s in self.dependency_services.split(",") if s.strip()]
