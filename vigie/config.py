from dataclasses import dataclass
from os import getenv
from typing import Optional

DEFAULT_DOCKER_HOST = "unix://var/run/docker.sock"
DEFAULT_INSTANCE_NAME = "local"
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_TZ = "UTC"
DEFAULT_REGISTRY_SPACING_MS = 200
DEFAULT_RATE_LIMIT_THRESHOLD = 5
DEFAULT_RATE_LIMIT_WINDOW_SECONDS = 60
DEFAULT_REGISTRY_FAN_OUT = 4
DEFAULT_PULL_INTERVAL_MINUTES = 60
DEFAULT_DOCKER_CONNECT_RETRIES = 3
DEFAULT_DOCKER_CONNECT_BACKOFF_SECONDS = 5

PULL_JOB = "docker-hub-pull"
CONTAINERS_KEY = "containers"


@dataclass(frozen=True)
class Settings:
    docker_host: str
    instances: dict[str, str]
    state_db: Optional[str]
    registry_spacing_ms: int
    rate_limit_threshold: int
    rate_limit_window_seconds: int
    registry_fan_out: int
    pull_enabled: bool
    pull_interval_minutes: Optional[int]
    pull_cron: Optional[str]
    discord_webhook: Optional[str]
    webhook_url: Optional[str]
    log_level: str
    timezone: str
    docker_connect_retries: int = DEFAULT_DOCKER_CONNECT_RETRIES
    docker_connect_backoff_seconds: int = DEFAULT_DOCKER_CONNECT_BACKOFF_SECONDS


def load_settings() -> Settings:
    docker_host = getenv("DOCKER_HOST", DEFAULT_DOCKER_HOST)
    return Settings(
        docker_host=docker_host,
        instances=_env_instances("VIGIE_INSTANCES", docker_host),
        state_db=getenv("VIGIE_STATE_DB") or None,
        registry_spacing_ms=_env_int("VIGIE_REGISTRY_SPACING_MS", DEFAULT_REGISTRY_SPACING_MS, minimum=0),
        rate_limit_threshold=_env_int("VIGIE_RATE_LIMIT_THRESHOLD", DEFAULT_RATE_LIMIT_THRESHOLD, minimum=1),
        rate_limit_window_seconds=_env_int(
            "VIGIE_RATE_LIMIT_WINDOW_SECONDS", DEFAULT_RATE_LIMIT_WINDOW_SECONDS, minimum=1
        ),
        registry_fan_out=_env_int("VIGIE_REGISTRY_FAN_OUT", DEFAULT_REGISTRY_FAN_OUT, minimum=1),
        pull_enabled=_env_bool("VIGIE_PULL_ENABLED", True),
        pull_interval_minutes=_env_optional_int("VIGIE_PULL_INTERVAL_MINUTES", DEFAULT_PULL_INTERVAL_MINUTES),
        pull_cron=getenv("VIGIE_PULL_CRON") or None,
        discord_webhook=getenv("VIGIE_DISCORD_WEBHOOK") or None,
        webhook_url=getenv("VIGIE_WEBHOOK_URL") or None,
        log_level=getenv("VIGIE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
        timezone=getenv("VIGIE_TZ", DEFAULT_TZ),
        docker_connect_retries=_env_int(
            "VIGIE_DOCKER_CONNECT_RETRIES", DEFAULT_DOCKER_CONNECT_RETRIES, minimum=0
        ),
        docker_connect_backoff_seconds=_env_int(
            "VIGIE_DOCKER_CONNECT_BACKOFF_SECONDS", DEFAULT_DOCKER_CONNECT_BACKOFF_SECONDS, minimum=0
        ),
    )


def _env_bool(name: str, default: bool) -> bool:
    value = getenv(name)
    if value is None:
        return default
    lowered = value.strip().lower()
    return lowered in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    value = getenv(name)
    if value is None:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    if minimum is not None and parsed < minimum:
        return default
    return parsed


def _env_optional_int(name: str, default: Optional[int]) -> Optional[int]:
    """Like ``_env_int`` but an empty value or ``0`` disables the setting."""
    value = getenv(name)
    if value is None:
        return default
    if not value.strip():
        return None
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else None


def _env_instances(name: str, docker_host: str) -> dict[str, str]:
    value = getenv(name)
    if value is None or not value.strip():
        return {DEFAULT_INSTANCE_NAME: docker_host}
    instances: dict[str, str] = {}
    for chunk in value.replace(";", ",").split(","):
        entry = chunk.strip()
        if not entry:
            continue
        if "=" in entry:
            label, url = entry.split("=", 1)
            label = label.strip()
            url = url.strip()
        else:
            url = entry
            label = f"{DEFAULT_INSTANCE_NAME}{len(instances) or ''}"
        if label and url:
            instances[label] = url
    return instances or {DEFAULT_INSTANCE_NAME: docker_host}
