"""Configuration loading from a YAML file, environment variables and secret files.

Precedence, lowest to highest:

1. dataclass defaults in :mod:`kubewatcher.models.config`
2. the YAML document (``clusterName``, ``resources``, ``watcher``, ``email``,
   ``webhook``, ``logging``, ``api``)
3. secret files under ``KUBEWATCHER_SECRETS_DIR``
4. ``KUBEWATCHER_*`` environment variables
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import yaml

from kubewatcher.collector.source import SUPPORTED_KINDS
from kubewatcher.models.config import (
    APIConfig,
    AppConfig,
    EmailConfig,
    LogConfig,
    WatcherConfig,
    WebhookConfig,
)
from kubewatcher.models.resources import ResourceFilter

_DEFAULT_CONFIG_PATH = "config.yaml"
_DEFAULT_SECRETS_DIR = "/etc/kubewatcher/secrets"

_VALID_LOG_LEVELS = ("debug", "info", "warning", "error")
_VALID_LOG_FORMATS = ("json", "console")


class ConfigError(ValueError):
    """Raised when the configuration is missing, unreadable or invalid."""


def _env(key: str, default: str = "") -> str:
    return os.environ.get(f"KUBEWATCHER_{key}", default)


def _env_bool(key: str, default: bool = False) -> bool:
    val = _env(key, str(default).lower())
    return val.lower() in ("true", "1", "yes")


def _env_int(key: str, default: int, min_val: int | None = None, max_val: int | None = None) -> int:
    raw = _env(key, str(default))
    try:
        val = int(raw)
    except ValueError:
        raise ConfigError(f"KUBEWATCHER_{key} must be an integer, got {raw!r}") from None
    return _clamp(val, min_val, max_val)


def _env_float(key: str, default: float) -> float:
    raw = _env(key, str(default))
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"KUBEWATCHER_{key} must be a number, got {raw!r}") from None


def _clamp(val: int, min_val: int | None, max_val: int | None) -> int:
    if min_val is not None:
        val = max(val, min_val)
    if max_val is not None:
        val = min(val, max_val)
    return val


def _split_addrs(value: str | list[Any] | None) -> list[str]:
    if value is None:
        return []
    parts = value.split(",") if isinstance(value, str) else [str(v) for v in value]
    return [p.strip() for p in parts if p.strip()]


# YAML ``watcher`` key -> (WatcherConfig field, converter)
_WATCHER_KEYS: dict[str, tuple[str, Callable[[Any], Any]]] = {
    "watchTimeoutSeconds": ("watch_timeout_seconds", int),
    "maxReconnects": ("max_reconnects", int),
    "reconnectBackoffMs": ("reconnect_backoff_seconds", lambda v: float(v) / 1000.0),
    "heartbeatIntervalMs": ("heartbeat_interval_seconds", lambda v: float(v) / 1000.0),
    "keepAliveEnabled": ("keep_alive_enabled", bool),
    "eventDedupWindowSeconds": ("event_dedup_window_seconds", float),
    "snapshotPageSize": ("snapshot_page_size", int),
    "pageTimeoutSeconds": ("page_timeout_seconds", float),
    "snapshotRetrySteps": ("snapshot_retry_steps", int),
    "startupDelaySeconds": ("startup_delay_seconds", float),
    "catchUpGraceSeconds": ("catch_up_grace_seconds", float),
    "snapshotTtlHours": ("snapshot_ttl_hours", float),
    "maxConcurrentSnapshots": ("max_concurrent_snapshots", int),
    "startupDeadlineSeconds": ("startup_deadline_seconds", float),
    "releaseAdmissionOnWatch": ("release_admission_on_watch", bool),
}

# WatcherConfig field -> (env suffix, min, max) for integer tunables
_WATCHER_INT_BOUNDS: dict[str, tuple[str, int, int]] = {
    "watch_timeout_seconds": ("WATCH_TIMEOUT_SECONDS", 30, 3600),
    "max_reconnects": ("MAX_RECONNECTS", 1, 100),
    "snapshot_page_size": ("SNAPSHOT_PAGE_SIZE", 1, 5000),
    "snapshot_retry_steps": ("SNAPSHOT_RETRY_STEPS", 0, 50),
    "max_concurrent_snapshots": ("MAX_CONCURRENT_SNAPSHOTS", 1, 64),
}


def _read_yaml(path: str | os.PathLike[str]) -> dict[str, Any]:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config file {path}: {exc}") from exc
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping at the top level")
    return data


def _section(data: dict[str, Any], key: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def _number(section: str, raw: dict[str, Any], key: str, default: Any, convert: Callable[[Any], Any]) -> Any:
    value = raw.get(key)
    if value is None or value == "":
        return default
    try:
        return convert(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{section}.{key} must be a number, got {value!r}") from None


def _parse_resources(raw: Any) -> list[ResourceFilter]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigError("'resources' must be a list")
    filters: list[ResourceFilter] = []
    for i, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"resources[{i}] must be a mapping")
        filters.append(
            ResourceFilter(
                kind=str(item.get("kind") or "").strip(),
                namespace=str(item.get("namespace") or "").strip(),
                resource_name=str(item.get("resourceName") or "").strip(),
            )
        )
    return filters


def _parse_watcher(raw: dict[str, Any]) -> WatcherConfig:
    cfg = WatcherConfig()
    for key, value in raw.items():
        if key not in _WATCHER_KEYS or value is None:
            continue
        attr, convert = _WATCHER_KEYS[key]
        try:
            setattr(cfg, attr, convert(value))
        except (TypeError, ValueError):
            raise ConfigError(f"watcher.{key} has an invalid value: {value!r}") from None
    return cfg


def _parse_email(raw: dict[str, Any]) -> EmailConfig:
    if not raw:
        return EmailConfig()
    try:
        port = int(raw.get("smtpPort") or 0)
    except (TypeError, ValueError):
        raise ConfigError(f"email.smtpPort must be an integer, got {raw.get('smtpPort')!r}") from None
    return EmailConfig(
        enabled=bool(raw.get("enabled", True)),
        smtp_host=str(raw.get("smtpHost") or ""),
        smtp_port=port,
        use_auth=bool(raw.get("useAuth", False)),
        username=str(raw.get("smtpUsername") or ""),
        password=str(raw.get("smtpPassword") or ""),
        from_addr=str(raw.get("fromEmail") or ""),
        to_addrs=_split_addrs(raw.get("toEmails") or raw.get("toEmail")),
        use_ssl=bool(raw.get("forceSSL", False)),
        insecure_tls=bool(raw.get("insecureTLS", False)),
    )


def _apply_secret_files(email: EmailConfig, secrets_dir: Path) -> None:
    """Overlay SMTP credentials mounted as files (e.g. a Kubernetes Secret)."""

    def read(name: str) -> str | None:
        try:
            return (secrets_dir / name).read_text(encoding="utf-8").strip()
        except OSError:
            return None

    if (username := read("smtp-username")) is not None:
        email.username = username
        email.use_auth = True
    if (password := read("smtp-password")) is not None:
        email.password = password
        email.use_auth = True
    if (from_addr := read("from-email")) is not None:
        email.from_addr = from_addr
    if (to_addrs := read("to-emails")) is not None:
        email.to_addrs = _split_addrs(to_addrs)


def _apply_env(config: AppConfig) -> None:
    if cluster := _env("CLUSTER_NAME"):
        config.cluster_name = cluster.strip()

    config.log.level = _env("LOG_LEVEL", config.log.level).lower()
    config.log.format = _env("LOG_FORMAT", config.log.format).lower()
    config.api.enabled = _env_bool("API_ENABLED", config.api.enabled)
    config.api.port = _env_int("API_PORT", config.api.port, min_val=1, max_val=65535)

    w = config.watcher
    for attr, (suffix, lo, hi) in _WATCHER_INT_BOUNDS.items():
        setattr(w, attr, _env_int(suffix, getattr(w, attr), min_val=lo, max_val=hi))
    w.reconnect_backoff_seconds = _env_float("RECONNECT_BACKOFF_SECONDS", w.reconnect_backoff_seconds)
    w.heartbeat_interval_seconds = _env_float("HEARTBEAT_INTERVAL_SECONDS", w.heartbeat_interval_seconds)
    w.keep_alive_enabled = _env_bool("KEEP_ALIVE_ENABLED", w.keep_alive_enabled)
    w.event_dedup_window_seconds = _env_float("EVENT_DEDUP_WINDOW_SECONDS", w.event_dedup_window_seconds)
    w.startup_delay_seconds = _env_float("STARTUP_DELAY_SECONDS", w.startup_delay_seconds)
    w.release_admission_on_watch = _env_bool("RELEASE_ADMISSION_ON_WATCH", w.release_admission_on_watch)

    e = config.email
    if host := _env("SMTP_HOST"):
        e.smtp_host = host.strip()
        e.enabled = True
    if _env("SMTP_PORT"):
        e.smtp_port = _env_int("SMTP_PORT", 0)
    if username := _env("SMTP_USERNAME"):
        e.username = username.strip()
        e.use_auth = True
    if password := _env("SMTP_PASSWORD"):
        e.password = password.strip()
        e.use_auth = True
    if from_addr := _env("SMTP_FROM"):
        e.from_addr = from_addr.strip()
    if to_addrs := _env("SMTP_TO"):
        e.to_addrs = _split_addrs(to_addrs)
    if _env("SMTP_USE_AUTH"):
        e.use_auth = _env_bool("SMTP_USE_AUTH")

    if url := _env("WEBHOOK_URL"):
        config.webhook.url = url.strip()


def _clamp_watcher(w: WatcherConfig) -> None:
    for attr, (_, lo, hi) in _WATCHER_INT_BOUNDS.items():
        setattr(w, attr, _clamp(getattr(w, attr), lo, hi))
    w.reconnect_backoff_seconds = max(w.reconnect_backoff_seconds, 0.1)
    w.heartbeat_interval_seconds = max(w.heartbeat_interval_seconds, 1.0)
    w.event_dedup_window_seconds = max(w.event_dedup_window_seconds, 1.0)
    w.page_timeout_seconds = max(w.page_timeout_seconds, 1.0)
    w.startup_delay_seconds = max(w.startup_delay_seconds, 0.0)
    w.catch_up_grace_seconds = max(w.catch_up_grace_seconds, 0.0)


def validate_config(config: AppConfig) -> None:
    """Raise :class:`ConfigError` describing the first invalid setting."""
    if not config.cluster_name:
        raise ConfigError("cluster name is required")
    if not config.resources:
        raise ConfigError("at least one resource must be configured")

    seen: set[ResourceFilter] = set()
    for i, resource in enumerate(config.resources):
        if not resource.kind:
            raise ConfigError(f"resources[{i}]: kind is required")
        if resource.kind not in SUPPORTED_KINDS:
            supported = ", ".join(sorted(SUPPORTED_KINDS))
            raise ConfigError(f"resources[{i}]: unsupported kind {resource.kind!r} (supported: {supported})")
        if resource in seen:
            raise ConfigError(f"resources[{i}]: duplicate filter {resource.label}")
        seen.add(resource)

    email = config.email
    if email.enabled:
        if not email.smtp_host:
            raise ConfigError("email: SMTP host is required")
        if not 0 < email.smtp_port <= 65535:
            raise ConfigError("email: SMTP port must be between 1 and 65535")
        if not email.from_addr:
            raise ConfigError("email: from email is required")
        if not email.to_addrs:
            raise ConfigError("email: at least one recipient email is required")
        if email.use_auth and not email.username:
            raise ConfigError("email: SMTP username is required when authentication is enabled")
        if email.use_auth and not email.password:
            raise ConfigError("email: SMTP password is required when authentication is enabled")

    if config.api.enabled and not 0 < config.api.port <= 65535:
        raise ConfigError("api: port must be between 1 and 65535")

    if config.log.level not in _VALID_LOG_LEVELS:
        raise ConfigError(f"invalid log level: {config.log.level} (valid: {', '.join(_VALID_LOG_LEVELS)})")
    if config.log.format not in _VALID_LOG_FORMATS:
        raise ConfigError(f"invalid log format: {config.log.format} (valid: {', '.join(_VALID_LOG_FORMATS)})")


def load_config(path: str | os.PathLike[str] | None = None) -> AppConfig:
    """Load, overlay and validate the kubewatcher configuration.

    Args:
        path: YAML file to read.  Defaults to ``KUBEWATCHER_CONFIG`` and then
            ``config.yaml`` in the working directory.

    Raises:
        ConfigError: the file is unreadable or the resulting config is invalid.
    """
    config_path = path or _env("CONFIG", _DEFAULT_CONFIG_PATH)
    data = _read_yaml(config_path)

    logging_raw = _section(data, "logging")
    api_raw = _section(data, "api")
    webhook_raw = _section(data, "webhook")

    config = AppConfig(
        cluster_name=str(data.get("clusterName") or "").strip(),
        resources=_parse_resources(data.get("resources")),
        watcher=_parse_watcher(_section(data, "watcher")),
        email=_parse_email(_section(data, "email")),
        webhook=WebhookConfig(
            url=str(webhook_raw.get("url") or ""),
            timeout_seconds=_number("webhook", webhook_raw, "timeoutSeconds", 10.0, float),
        ),
        api=APIConfig(
            enabled=bool(api_raw.get("enabled", True)),
            port=_number("api", api_raw, "port", 8080, int),
        ),
        log=LogConfig(
            level=str(logging_raw.get("level") or "info").lower(),
            format=str(logging_raw.get("format") or "json").lower(),
        ),
    )

    _apply_secret_files(config.email, Path(_env("SECRETS_DIR", _DEFAULT_SECRETS_DIR)))
    _apply_env(config)
    _clamp_watcher(config.watcher)

    if config.email.smtp_port == 0:
        config.email.smtp_port = 587 if config.email.use_auth else 25

    validate_config(config)
    return config
