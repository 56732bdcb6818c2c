"""Notification dispatcher for kubewatcher.

NotificationChannel    -- ABC every channel must implement.
NotificationDispatcher -- Fans out change events to all registered channels;
                          failures in one channel never block others or
                          the watch sessions that produced the event.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from kubewatcher.models.events import ChangeEvent
from kubewatcher.observability.metrics import notifications_total

_log = structlog.get_logger(component="notifications.manager")

_DEFAULT_MAX_ATTEMPTS: int = 3
_DEFAULT_RETRY_BASE_S: float = 1.0
_DEFAULT_DRAIN_TIMEOUT_S: float = 10.0


class NotificationChannel(ABC):
    """Abstract base class for all notification channels.

    Every concrete channel must implement ``send``, which should be
    idempotent and not raise; return ``False`` instead of raising.
    """

    @property
    @abstractmethod
    def channel_name(self) -> str:
        """Human-readable channel identifier used in metrics and logs."""

    @abstractmethod
    async def send(self, event: ChangeEvent) -> bool:
        """Deliver *event* via this channel.

        Returns:
            True  -- message accepted by the remote endpoint.
            False -- delivery failed (already logged inside implementation).
        """


class NotificationDispatcher:
    """Fan-out dispatcher that sends a change event to every registered channel.

    * Never raises; exceptions from individual channels are caught and logged.
    * Never blocks the caller. ``deliver`` is fire-and-forget; it schedules
      the fan-out as a background asyncio task.
    * Retries a failed channel with doubling delays, but never starts a new
      attempt once ``stop()`` has been called.
    """

    def __init__(
        self,
        channels: list[NotificationChannel],
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        retry_base_s: float = _DEFAULT_RETRY_BASE_S,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._channels = channels
        self._max_attempts = max(1, max_attempts)
        self._retry_base_s = retry_base_s
        self._sleep = sleep
        self._closing = False
        self._in_flight: set[asyncio.Task[None]] = set()

    @property
    def channels(self) -> list[NotificationChannel]:
        return list(self._channels)

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    def deliver(self, event: ChangeEvent) -> None:
        """Schedule fan-out delivery of *event* as a background task."""
        if self._closing:
            _log.warning("notification_dropped_shutting_down", resource=event.resource, type=event.type.value)
            return
        if not self._channels:
            _log.info(
                "change_event_unrouted",
                resource=event.resource,
                type=event.type.value,
                actor=event.actor,
            )
            return
        task = asyncio.ensure_future(self._fan_out(event))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)

    async def stop(self, timeout_s: float = _DEFAULT_DRAIN_TIMEOUT_S) -> None:
        """Stop accepting events and let in-flight deliveries finish or fail."""
        self._closing = True
        pending = list(self._in_flight)
        if not pending:
            return
        _, still_running = await asyncio.wait(pending, timeout=timeout_s)
        for task in still_running:
            task.cancel()
        if still_running:
            _log.warning("notifications_abandoned_on_shutdown", count=len(still_running))
            await asyncio.gather(*still_running, return_exceptions=True)

    async def _fan_out(self, event: ChangeEvent) -> None:
        """Deliver *event* to every channel concurrently."""
        tasks = [self._send_one(channel, event) for channel in self._channels]
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_one(self, channel: NotificationChannel, event: ChangeEvent) -> None:
        """Deliver to a single channel, recording metrics regardless of outcome."""
        success = False
        attempt = 0
        while True:
            attempt += 1
            try:
                success = await channel.send(event)
            except Exception as exc:  # noqa: BLE001
                _log.error(
                    "notification_channel_unexpected_error",
                    channel=channel.channel_name,
                    event_id=event.event_id,
                    error=str(exc),
                )
                success = False
            if success or attempt >= self._max_attempts or self._closing:
                break
            delay = self._retry_base_s * (2 ** (attempt - 1))
            _log.debug(
                "notification_retry",
                channel=channel.channel_name,
                event_id=event.event_id,
                attempt=attempt,
                delay_s=delay,
            )
            await self._sleep(delay)

        label = "true" if success else "false"
        notifications_total.labels(channel=channel.channel_name, success=label).inc()

        if success:
            _log.info(
                "notification_sent",
                channel=channel.channel_name,
                event_id=event.event_id,
                type=event.type.value,
                resource=event.resource,
            )
        else:
            _log.warning(
                "notification_failed",
                channel=channel.channel_name,
                event_id=event.event_id,
                attempts=attempt,
            )
