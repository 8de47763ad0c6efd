"""Configuration loaded from environment variables (and an optional .env file).

Required:
    NPL_ENGINE_URL, NPL_TOKEN_URL, NPL_CLIENT_ID
    LEGACY_BASE_URL, LEGACY_USERNAME, LEGACY_PASSWORD

Everything else has a default. Booleans accept true/false (case-insensitive).
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .api.exceptions import ConfigurationError
from .sync.adapters.amqp_queue import amqp_url
from .sync.domain.entities import EntityClass


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_bool(name: str, default: bool) -> bool:
    return (_env(name, "true" if default else "false") or "").lower() == "true"


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'")


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{raw}'")


@dataclass
class ProtocolEngineConfig:
    engine_url: str
    token_url: str
    client_id: str
    client_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None


@dataclass
class LegacyPlatformConfig:
    base_url: str
    username: str
    password: str


@dataclass
class AmqpConfig:
    host: str = "localhost"
    port: int = 5672
    username: str = "guest"
    password: str = "guest"
    vhost: str = "/"
    prefetch_count: int = 10

    @property
    def url(self) -> str:
        return amqp_url(self.host, self.port, self.username, self.password, self.vhost)

    def __repr__(self):
        return f"AmqpConfig(host={self.host}, port={self.port}, vhost={self.vhost}, prefetch={self.prefetch_count})"


@dataclass
class SyncConfig:
    entity_classes: list[EntityClass] = field(default_factory=lambda: list(EntityClass))
    interval_minutes: int = 60
    sync_on_startup: bool = True
    timeout_seconds: Optional[float] = 600.0
    direct_apply: bool = False
    dedup_window_size: int = 1000


@dataclass
class SyncBridgeConfig:
    protocol_engine: ProtocolEngineConfig
    legacy_platform: LegacyPlatformConfig
    amqp: AmqpConfig = field(default_factory=AmqpConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 0
    control_port: int = 8080
    api_key: Optional[str] = None
    log_level: str = "INFO"

    def __repr__(self):
        return (
            f"SyncBridgeConfig("
            f"engine={self.protocol_engine.engine_url}, "
            f"legacy={self.legacy_platform.base_url}, "
            f"classes={[c.value for c in self.sync.entity_classes]}, "
            f"interval={self.sync.interval_minutes}m, "
            f"direct_apply={self.sync.direct_apply}, "
            f"control_port={self.control_port})"
        )

    def to_public_dict(self) -> dict:
        """Non-secret settings, safe to expose on the control surface."""
        return {
            "protocolEngineUrl": self.protocol_engine.engine_url,
            "legacyPlatformUrl": self.legacy_platform.base_url,
            "entityClasses": [c.value for c in self.sync.entity_classes],
            "intervalMinutes": self.sync.interval_minutes,
            "syncOnStartup": self.sync.sync_on_startup,
            "sweepTimeoutSeconds": self.sync.timeout_seconds,
            "directApply": self.sync.direct_apply,
            "dedupWindowSize": self.sync.dedup_window_size,
            "httpTimeoutSeconds": self.http_timeout_seconds,
            "httpMaxRetries": self.http_max_retries,
            "queue": {
                "host": self.amqp.host,
                "port": self.amqp.port,
                "vhost": self.amqp.vhost,
                "prefetchCount": self.amqp.prefetch_count,
            },
        }


REQUIRED_KEYS = (
    "NPL_ENGINE_URL",
    "NPL_TOKEN_URL",
    "NPL_CLIENT_ID",
    "LEGACY_BASE_URL",
    "LEGACY_USERNAME",
    "LEGACY_PASSWORD",
)


def _parse_entity_classes(raw: Optional[str]) -> list[EntityClass]:
    if not raw:
        return list(EntityClass)
    classes = []
    for name in raw.split(","):
        name = name.strip().lower()
        if not name:
            continue
        try:
            classes.append(EntityClass(name))
        except ValueError:
            raise ConfigurationError(
                f"SYNC_ENTITY_CLASSES contains unknown entity class '{name}'"
            )
    return classes


def load_config(env_file: Optional[str] = None) -> SyncBridgeConfig:
    """Build the configuration from the environment.

    Raises:
        ConfigurationError: If required keys are missing or values are malformed
    """
    load_dotenv(env_file)

    missing = [key for key in REQUIRED_KEYS if not _env(key)]
    if missing:
        raise ConfigurationError(
            f"Missing required configuration: {', '.join(missing)}",
            missing_keys=missing,
        )

    timeout = _env_float("SYNC_TIMEOUT_SECONDS", 600.0)

    return SyncBridgeConfig(
        protocol_engine=ProtocolEngineConfig(
            engine_url=_env("NPL_ENGINE_URL"),
            token_url=_env("NPL_TOKEN_URL"),
            client_id=_env("NPL_CLIENT_ID"),
            client_secret=_env("NPL_CLIENT_SECRET"),
            username=_env("NPL_USERNAME"),
            password=_env("NPL_PASSWORD"),
        ),
        legacy_platform=LegacyPlatformConfig(
            base_url=_env("LEGACY_BASE_URL"),
            username=_env("LEGACY_USERNAME"),
            password=_env("LEGACY_PASSWORD"),
        ),
        amqp=AmqpConfig(
            host=_env("RABBITMQ_HOST", "localhost"),
            port=_env_int("RABBITMQ_PORT", 5672),
            username=_env("RABBITMQ_USERNAME", "guest"),
            password=_env("RABBITMQ_PASSWORD", "guest"),
            vhost=_env("RABBITMQ_VHOST", "/"),
            prefetch_count=_env_int("QUEUE_PREFETCH", 10),
        ),
        sync=SyncConfig(
            entity_classes=_parse_entity_classes(_env("SYNC_ENTITY_CLASSES")),
            interval_minutes=_env_int("SYNC_INTERVAL_MINUTES", 60),
            sync_on_startup=_env_bool("SYNC_ON_STARTUP", True),
            timeout_seconds=timeout if timeout > 0 else None,
            direct_apply=_env_bool("SYNC_DIRECT_APPLY", False),
            dedup_window_size=_env_int("DEDUP_WINDOW_SIZE", 1000),
        ),
        http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 30.0),
        http_max_retries=_env_int("HTTP_MAX_RETRIES", 0),
        control_port=_env_int("CONTROL_PORT", 8080),
        api_key=_env("API_KEY"),
        log_level=(_env("LOG_LEVEL", "INFO") or "INFO").upper(),
    )
