"""Configuration data structures."""

from __future__ import annotations

from dataclasses import dataclass, field

from kubewatcher.models.resources import ResourceFilter


@dataclass
class WatcherConfig:
    """Watch session engine tunables."""

    watch_timeout_seconds: int = 300
    max_reconnects: int = 5
    reconnect_backoff_seconds: float = 5.0
    heartbeat_interval_seconds: float = 30.0
    keep_alive_enabled: bool = True
    event_dedup_window_seconds: float = 3600.0
    snapshot_page_size: int = 500
    page_timeout_seconds: float = 30.0
    snapshot_retry_steps: int = 10
    startup_delay_seconds: float = 10.0
    catch_up_grace_seconds: float = 30.0
    snapshot_ttl_hours: float = 24.0
    max_concurrent_snapshots: int = 2
    startup_deadline_seconds: float = 300.0
    stale_reset_delay_seconds: float = 2.0
    forced_reset_cooldown_seconds: float = 30.0
    release_admission_on_watch: bool = False


@dataclass
class EmailConfig:
    """SMTP notification channel configuration."""

    enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 0
    use_auth: bool = False
    username: str = ""
    password: str = ""
    from_addr: str = ""
    to_addrs: list[str] = field(default_factory=list)
    use_ssl: bool = False
    insecure_tls: bool = False


@dataclass
class WebhookConfig:
    """Generic JSON webhook channel configuration."""

    url: str = ""
    timeout_seconds: float = 10.0


@dataclass
class APIConfig:
    """Health and diagnostics HTTP API configuration."""

    enabled: bool = True
    port: int = 8080


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "info"
    format: str = "json"


@dataclass
class AppConfig:
    """Top-level kubewatcher configuration."""

    cluster_name: str = ""
    resources: list[ResourceFilter] = field(default_factory=list)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    email: EmailConfig = field(default_factory=EmailConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log: LogConfig = field(default_factory=LogConfig)
