"""Notification system for kubewatcher.

Dispatches ChangeEvent instances to one or more notification channels
(Email, Webhook).

Exports:
    NotificationChannel    -- Abstract base for all channel implementations.
    NotificationDispatcher -- Sends an event to all registered channels
                              without blocking the watch sessions.
    EmailNotificationChannel   -- SMTP email channel via stdlib smtplib.
    WebhookNotificationChannel -- Generic JSON POST webhook channel.
    build_notification_dispatcher -- Factory used by the application bootstrap.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from kubewatcher.notifications.email import EmailNotificationChannel, SMTPConfig
from kubewatcher.notifications.manager import NotificationChannel, NotificationDispatcher
from kubewatcher.notifications.webhook import WebhookNotificationChannel

if TYPE_CHECKING:
    from kubewatcher.models.config import AppConfig

_log = structlog.get_logger(component="notifications")

__all__ = [
    "EmailNotificationChannel",
    "NotificationChannel",
    "NotificationDispatcher",
    "SMTPConfig",
    "WebhookNotificationChannel",
    "build_notification_dispatcher",
]


def build_notification_dispatcher(config: AppConfig) -> NotificationDispatcher:
    """Build a NotificationDispatcher from the resolved application config.

    Email is enabled when ``email.enabled`` is set and the SMTP host, sender
    and at least one recipient are present.  The webhook channel is enabled
    whenever ``webhook.url`` is non-empty.  A channel whose parameters fail
    validation is skipped with a warning rather than failing startup.
    """
    channels: list[NotificationChannel] = []

    # --- Email ---
    email = config.email
    if email.enabled:
        try:
            smtp_cfg = SMTPConfig(
                host=email.smtp_host,
                port=email.smtp_port,
                username=email.username if email.use_auth else "",
                password=email.password if email.use_auth else "",
                from_addr=email.from_addr,
                use_ssl=email.use_ssl,
                insecure_tls=email.insecure_tls,
            )
            channels.append(EmailNotificationChannel(smtp_config=smtp_cfg, to_addrs=email.to_addrs))
            _log.info("email_channel_enabled", to=email.to_addrs, host=email.smtp_host, port=email.smtp_port)
        except ValueError as exc:
            _log.warning("email_channel_disabled", reason=str(exc))
    else:
        _log.debug("email_channel_skipped", reason="email disabled")

    # --- Generic webhook ---
    if config.webhook.url:
        try:
            channels.append(
                WebhookNotificationChannel(url=config.webhook.url, timeout=config.webhook.timeout_seconds)
            )
            _log.info("webhook_channel_enabled")
        except ValueError as exc:
            _log.warning("webhook_channel_disabled", reason=str(exc))

    if not channels:
        _log.info("no_notification_channels_configured")

    return NotificationDispatcher(channels=channels)
