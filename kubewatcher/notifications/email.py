"""Email notification channel for kubewatcher.

Sends ChangeEvent instances as multipart (plain + HTML) emails via SMTP
using ``smtplib`` executed in a thread-pool executor so the asyncio event
loop is never blocked.
"""

from __future__ import annotations

import asyncio
import html
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

import structlog

from kubewatcher.models.events import ChangeEvent, ChangeType
from kubewatcher.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.email")

_TYPE_COLOR: dict[ChangeType, str] = {
    ChangeType.ADDED: "#2e7d32",
    ChangeType.MODIFIED: "#e65100",
    ChangeType.DELETED: "#b71c1c",
}


class SMTPConfig:
    """SMTP connection parameters.

    Args:
        host:         SMTP server hostname.
        port:         SMTP server port (587 for STARTTLS, 465 for SSL, 25 plain).
        username:     SMTP authentication username; empty disables login.
        password:     SMTP authentication password.
        from_addr:    Sender email address.
        use_ssl:      If True (or port is 465), use implicit TLS via SMTP_SSL.
        insecure_tls: Skip certificate verification.
        timeout:      Socket timeout in seconds. Defaults to 10.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_addr: str,
        use_ssl: bool = False,
        insecure_tls: bool = False,
        timeout: float = 10.0,
    ) -> None:
        if not host:
            raise ValueError("SMTP host must not be empty")
        if not from_addr:
            raise ValueError("SMTP from_addr must not be empty")
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.from_addr = from_addr
        self.use_ssl = use_ssl or port == 465
        self.insecure_tls = insecure_tls
        self.timeout = timeout

    def ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context()
        if self.insecure_tls:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context


def build_subject(event: ChangeEvent) -> str:
    """``[cluster] Kind namespace/name was TYPE``."""
    prefix = f"[{event.cluster_name}] " if event.cluster_name else ""
    return f"{prefix}{event.kind} {event.namespace}/{event.name} was {event.type.value}"


class EmailNotificationChannel(NotificationChannel):
    """Delivers change events as emails via SMTP.

    Args:
        smtp_config: Connection and authentication parameters.
        to_addrs:    Recipient email addresses.
    """

    def __init__(self, smtp_config: SMTPConfig, to_addrs: list[str]) -> None:
        recipients = [addr.strip() for addr in to_addrs if addr and addr.strip()]
        if not recipients:
            raise ValueError("Email to_addrs must not be empty")
        self._smtp = smtp_config
        self._to_addrs = recipients

    @property
    def channel_name(self) -> str:
        return "email"

    @property
    def recipients(self) -> list[str]:
        return list(self._to_addrs)

    async def send(self, event: ChangeEvent) -> bool:
        """Send *event* as an email.

        SMTP I/O is delegated to a thread-pool executor to avoid blocking
        the event loop.

        Returns True on successful delivery, False otherwise.
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._send_sync, event)
            return True
        except smtplib.SMTPException as exc:
            _log.warning("email_smtp_error", error=str(exc), event_id=event.event_id)
            return False
        except OSError as exc:
            _log.warning("email_connection_error", error=str(exc), event_id=event.event_id)
            return False

    def _send_sync(self, event: ChangeEvent) -> None:
        """Blocking SMTP delivery, runs inside a thread executor."""
        msg = self.build_message(event)
        context = self._smtp.ssl_context()

        if self._smtp.use_ssl:
            with smtplib.SMTP_SSL(
                self._smtp.host,
                self._smtp.port,
                context=context,
                timeout=self._smtp.timeout,
            ) as server:
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.send_message(msg)
        else:
            with smtplib.SMTP(
                self._smtp.host,
                self._smtp.port,
                timeout=self._smtp.timeout,
            ) as server:
                server.ehlo()
                if server.has_extn("starttls"):
                    server.starttls(context=context)
                    server.ehlo()
                if self._smtp.username:
                    server.login(self._smtp.username, self._smtp.password)
                server.send_message(msg)

    def build_message(self, event: ChangeEvent) -> MIMEMultipart:
        """Construct a MIME multipart email with a plain-text and HTML part."""
        msg = MIMEMultipart("alternative")
        msg["Subject"] = build_subject(event)
        msg["From"] = self._smtp.from_addr
        msg["To"] = ", ".join(self._to_addrs)

        msg.attach(MIMEText(self._build_plain(event), "plain", "utf-8"))
        msg.attach(MIMEText(self._build_html(event), "html", "utf-8"))
        return msg

    def _build_plain(self, event: ChangeEvent) -> str:
        observed = event.observed_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        return (
            f"Kubernetes resource change\n"
            f"{'=' * 60}\n\n"
            f"Cluster:    {event.cluster_name or '-'}\n"
            f"Change:     {event.type.value}\n"
            f"Kind:       {event.kind}\n"
            f"Namespace:  {event.namespace}\n"
            f"Name:       {event.name}\n"
            f"Version:    {event.resource_version}\n"
            f"Actor:      {event.actor}\n"
            f"Observed:   {observed}\n"
            f"Event ID:   {event.event_id}\n"
        )

    def _build_html(self, event: ChangeEvent) -> str:
        color = _TYPE_COLOR.get(event.type, "#333333")
        observed = event.observed_at.strftime("%Y-%m-%d %H:%M:%S UTC")
        rows = [
            ("Cluster", event.cluster_name or "-"),
            ("Kind", event.kind),
            ("Namespace", event.namespace),
            ("Name", event.name),
            ("Version", event.resource_version),
            ("Actor", event.actor),
            ("Observed", observed),
        ]
        body = "\n".join(
            f'          <tr style="border-bottom: 1px solid #e0e0e0;">\n'
            f'            <td style="color: #757575; width: 120px;"><strong>{label}</strong></td>\n'
            f'            <td style="font-family: monospace;">{html.escape(value)}</td>\n'
            f"          </tr>"
            for label, value in rows
        )
        title = html.escape(f"{event.kind} {event.namespace}/{event.name} was {event.type.value}")
        return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <title>{title}</title>
</head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
             background: #f5f5f5; margin: 0; padding: 24px;">
  <table width="600" cellpadding="0" cellspacing="0"
         style="background: #ffffff; border-radius: 8px; margin: 0 auto;">
    <tr>
      <td style="background: {color}; padding: 20px 28px; border-radius: 8px 8px 0 0;">
        <h1 style="color: #ffffff; margin: 0; font-size: 20px;">{title}</h1>
      </td>
    </tr>
    <tr>
      <td style="padding: 24px 28px;">
        <table width="100%" cellpadding="6" cellspacing="0" style="border-collapse: collapse;">
{body}
        </table>
      </td>
    </tr>
    <tr>
      <td style="background: #f5f5f5; padding: 12px 28px; border-radius: 0 0 8px 8px;
                 font-size: 12px; color: #9e9e9e;">
        Event ID: {event.event_id}
      </td>
    </tr>
  </table>
</body>
</html>"""
