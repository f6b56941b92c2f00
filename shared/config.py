"""Central configuration loaded from environment variables / .env file.

The bridge service inherits these base settings and extends them by
subclassing Settings with its own fields.

Usage:
    from shared.config import Settings
    settings = Settings()
    print(settings.mqtt_host)

To extend in a service:
    from shared.config import Settings as BaseSettings

    class MyServiceSettings(BaseSettings):
        my_custom_var: str = "default"
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Home Assistant ---
    ha_url: str = "http://homeassistant.local:8123"
    ha_token: str = ""  # Long-lived access token

    # --- MQTT ---
    mqtt_host: str = "mqtt"
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""

    # --- General ---
    log_level: str = "INFO"
    log_format: str = "auto"  # auto | json | console
    timezone: str = "Europe/Berlin"
    heartbeat_interval_seconds: int = 60  # MQTT heartbeat interval (0 to disable)
