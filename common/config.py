from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv


def _default_env_file() -> str:
    repo_root = Path(__file__).resolve().parents[1]
    return str(repo_root / ".env")


def env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class Settings:
    mqtt_host: str
    mqtt_port: int
    mqtt_username: Optional[str]
    mqtt_password: Optional[str]
    mqtt_tls: bool
    mqtt_client_id: str
    mqtt_keepalive: int

    database_url: str

    redis_url: str
    redis_enabled: bool

    ingest_async_enabled: bool


def get_settings() -> Settings:
    # .env opcional; las variables reales del entorno no se sobrescriben
    env_file = os.getenv("MONITOR_ENV_FILE", _default_env_file())
    if env_file and Path(env_file).exists():
        load_dotenv(env_file, override=False)

    mqtt_host = os.getenv("MQTT_BROKER_HOST", "localhost")
    mqtt_port = int(os.getenv("MQTT_BROKER_PORT", "1883"))
    mqtt_username = os.getenv("MQTT_USERNAME") or None
    mqtt_password = os.getenv("MQTT_PASSWORD") or None
    mqtt_tls = env_flag("MQTT_TLS")

    # MQTT_BROKER_URL (mqtt://host:port o mqtts://host:port) tiene prioridad sobre host/port
    broker_url = os.getenv("MQTT_BROKER_URL")
    if broker_url:
        parsed = urlparse(broker_url)
        if parsed.scheme not in ("mqtt", "mqtts") or not parsed.hostname:
            raise ValueError(f"MQTT_BROKER_URL must be mqtt[s]://host[:port], got {broker_url!r}")
        mqtt_tls = mqtt_tls or parsed.scheme == "mqtts"
        mqtt_host = parsed.hostname
        mqtt_port = parsed.port or (8883 if parsed.scheme == "mqtts" else 1883)
        mqtt_username = parsed.username or mqtt_username
        mqtt_password = parsed.password or mqtt_password
    mqtt_client_id = os.getenv("MQTT_CLIENT_ID", "water-monitor")
    mqtt_keepalive = int(os.getenv("MQTT_KEEPALIVE", "60"))

    # sqlite:///water_monitor.db for local runs, postgresql+psycopg2://... in deployment
    database_url = os.getenv("DATABASE_URL", "sqlite:///water_monitor.db")

    redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    redis_enabled = env_flag("REDIS_ENABLED", "true")

    ingest_async_enabled = env_flag("INGEST_ASYNC_ENABLED", "true")

    return Settings(
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        mqtt_username=mqtt_username,
        mqtt_password=mqtt_password,
        mqtt_tls=mqtt_tls,
        mqtt_client_id=mqtt_client_id,
        mqtt_keepalive=mqtt_keepalive,
        database_url=database_url,
        redis_url=redis_url,
        redis_enabled=redis_enabled,
        ingest_async_enabled=ingest_async_enabled,
    )
