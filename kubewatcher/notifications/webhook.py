"""Generic JSON webhook notification channel for kubewatcher.

Posts ChangeEvent data as a JSON body to any configured HTTP endpoint.
The payload mirrors the ChangeEvent fields so consumers can parse it
without kubewatcher-specific knowledge.
"""

from __future__ import annotations

import httpx
import structlog

from kubewatcher.models.events import ChangeEvent
from kubewatcher.notifications.manager import NotificationChannel

_log = structlog.get_logger(component="notifications.webhook")


class WebhookNotificationChannel(NotificationChannel):
    """Delivers change events by POSTing a JSON payload to a URL.

    Args:
        url:       Full endpoint URL.
        headers:   Optional extra headers (e.g. Authorization).
        timeout:   HTTP request timeout in seconds. Defaults to 10.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not url:
            raise ValueError("Webhook url must not be empty")
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout
        self._transport = transport

    @property
    def channel_name(self) -> str:
        return "webhook"

    async def send(self, event: ChangeEvent) -> bool:
        """POST *event* as JSON to the configured endpoint.

        Returns True on 2xx response, False otherwise.
        """
        payload = build_payload(event)
        request_headers = {
            "Content-Type": "application/json",
            **self._headers,
        }

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(
                    self._url,
                    json=payload,
                    headers=request_headers,
                )
                if response.is_success:
                    return True
                _log.warning(
                    "webhook_non_2xx_response",
                    status_code=response.status_code,
                    body=response.text[:200],
                    event_id=event.event_id,
                )
                return False
        except httpx.TimeoutException:
            _log.warning("webhook_request_timeout", event_id=event.event_id, url=self._url)
            return False
        except httpx.HTTPError as exc:
            _log.warning("webhook_http_error", error=str(exc), event_id=event.event_id)
            return False


def build_payload(event: ChangeEvent) -> dict[str, object]:
    """Serialise *event* to a plain dict for JSON encoding."""
    return {
        "event_id": event.event_id,
        "type": event.type.value,
        "kind": event.kind,
        "name": event.name,
        "namespace": event.namespace,
        "resource_version": event.resource_version,
        "actor": event.actor,
        "cluster_name": event.cluster_name,
        "observed_at": event.observed_at.isoformat(),
    }
