"""Integration tests: WatchSession against a scripted control plane.

Each test drives one session through snapshot, startup delay, watch and
recovery using ScriptedSource, a FakeClock and a RecordingSleep, then
cancels it and checks what was delivered and how state evolved.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from datetime import timedelta
from typing import Any

import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from kubewatcher.collector.gate import AdmissionGate
from kubewatcher.collector.registry import SessionRegistry
from kubewatcher.collector.session import DeliverFn, WatchSession
from kubewatcher.collector.source import ListPage
from kubewatcher.models.config import WatcherConfig
from kubewatcher.models.events import ChangeEvent, ChangeType
from kubewatcher.models.resources import ResourceFilter
from kubewatcher.models.session import SessionPhase, SessionState
from tests.fakes import (
    BLOCK,
    T0,
    FakeClock,
    RecordingSleep,
    ScriptedSource,
    bookmark,
    make_event,
    make_object,
    status_error,
    wait_until,
    watcher_config,
)

_FILTER = ResourceFilter(kind="ConfigMap", namespace="ns")


class _Harness:
    """One session plus the doubles it was built with."""

    def __init__(
        self,
        source: ScriptedSource,
        config: WatcherConfig | None = None,
        clock: FakeClock | None = None,
        deliver: DeliverFn | None = None,
        **kwargs: Any,
    ) -> None:
        self.clock = clock or FakeClock()
        self.sleep = RecordingSleep()
        self.source = source
        self.delivered: list[ChangeEvent] = []
        self.session = WatchSession(
            _FILTER,
            source,
            deliver or self.delivered.append,
            config=config or watcher_config(),
            cluster_name="test-cluster",
            clock=self.clock,
            sleep=self.sleep,
            **kwargs,
        )
        self.task: asyncio.Task[None] | None = None

    @property
    def state(self) -> SessionState:
        return self.session.state

    def start(self) -> None:
        self.task = asyncio.create_task(self.session.run())

    async def stop(self) -> None:
        assert self.task is not None
        self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


@pytest.fixture()
async def harnesses() -> AsyncIterator[list[_Harness]]:
    created: list[_Harness] = []
    yield created
    for harness in created:
        if harness.task is not None and not harness.task.done():
            await harness.stop()


def _snapshot_page() -> ListPage:
    return ListPage(items=[make_object("a", "1"), make_object("b", "2")], resource_version="2")


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------


class TestSnapshotThenWatch:
    async def test_snapshot_replay_and_catch_up_then_live_changes(self, harnesses: list[_Harness]) -> None:
        clock = FakeClock()
        source = ScriptedSource(
            pages=[_snapshot_page()],
            watches=[
                [
                    # replay of an object the snapshot already holds
                    make_event("ADDED", "a", "1", created=T0 - timedelta(days=3)),
                    lambda: clock.advance(45),
                    make_event("MODIFIED", "b", "3"),
                    lambda: clock.advance(5),
                    make_event("DELETED", "a", "4"),
                    lambda: clock.advance(5),
                    make_event("ADDED", "c", "5", created=T0 + timedelta(seconds=55)),
                    BLOCK,
                ]
            ],
        )
        h = _Harness(source, clock=clock)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(h.delivered) == 3)

        assert [(e.type, e.name) for e in h.delivered] == [
            (ChangeType.MODIFIED, "b"),
            (ChangeType.DELETED, "a"),
            (ChangeType.ADDED, "c"),
        ]
        assert all(e.cluster_name == "test-cluster" for e in h.delivered)
        assert h.state.checkpoint.resource_version == "5"
        assert set(h.state.checkpoint.snapshot) == {"ns/b", "ns/c"}
        assert h.state.events_skipped == 1
        assert h.state.phase is SessionPhase.WATCHING

    async def test_changes_inside_catch_up_grace_are_suppressed(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(
            pages=[_snapshot_page()],
            watches=[[make_event("MODIFIED", "b", "3"), make_event("DELETED", "a", "4"), BLOCK]],
        )
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: h.state.events_received == 2)
        assert h.delivered == []
        assert h.state.checkpoint.resource_version == "4"
        assert set(h.state.checkpoint.snapshot) == {"ns/b"}

    async def test_watch_resumes_from_snapshot_version(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 1)
        _, rv, timeout = source.watch_calls[0]
        assert rv == "2"
        assert timeout == 300
        assert h.state.initialized_at == T0
        assert h.state.watch_started_at == T0

    async def test_startup_delay_precedes_first_watch(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source, watcher_config(startup_delay_seconds=12.0))
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 1)
        assert h.sleep.delays == [12.0]

    async def test_events_delivered_in_stream_order(self, harnesses: list[_Harness]) -> None:
        clock = FakeClock()
        source = ScriptedSource(
            pages=[ListPage(items=[], resource_version="10")],
            watches=[
                [
                    lambda: clock.advance(40),
                    make_event("ADDED", "new", "11", created=T0 + timedelta(seconds=40)),
                    make_event("MODIFIED", "new", "12"),
                    make_event("DELETED", "new", "13"),
                    BLOCK,
                ]
            ],
        )
        h = _Harness(source, clock=clock)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(h.delivered) == 3)
        assert [e.type for e in h.delivered] == [ChangeType.ADDED, ChangeType.MODIFIED, ChangeType.DELETED]
        assert [e.resource_version for e in h.delivered] == ["11", "12", "13"]

    async def test_bookmark_moves_resume_point(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()], watches=[[bookmark("50")]])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 2)
        assert source.watch_calls[1][1] == "50"
        assert h.delivered == []

    async def test_delivery_failure_does_not_stop_session(self, harnesses: list[_Harness]) -> None:
        clock = FakeClock()
        source = ScriptedSource(
            pages=[_snapshot_page()],
            watches=[
                [
                    lambda: clock.advance(40),
                    make_event("DELETED", "a", "3"),
                    make_event("DELETED", "b", "4"),
                    BLOCK,
                ]
            ],
        )
        calls: list[str] = []

        def deliver(event: ChangeEvent) -> None:
            calls.append(event.name)
            raise RuntimeError("sink down")

        h = _Harness(source, clock=clock, deliver=deliver)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(calls) == 2)
        assert calls == ["a", "b"]
        assert h.state.events_processed == 2
        assert h.task is not None and not h.task.done()


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------


class TestRecovery:
    async def test_clean_stream_end_reopens_from_same_checkpoint(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()], watches=[[]])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 2)
        assert source.watch_calls[1][1] == "2"
        assert h.state.reconnects == 1
        assert h.sleep.delays == [10.0, 5.0]
        assert len(source.list_calls) == 1

    async def test_six_open_failures_force_hard_reset(self, harnesses: list[_Harness]) -> None:
        failures = [[ConnectionError("connection refused")] for _ in range(6)]
        source = ScriptedSource(pages=[_snapshot_page(), _snapshot_page()], watches=failures)
        h = _Harness(source)
        harnesses.append(h)
        h.start()

        await wait_until(lambda: len(source.list_calls) == 2 and len(source.watch_calls) == 7)

        # startup, five growing reconnect delays, forced cooldown, startup again
        assert h.sleep.delays == [10.0, 5.0, 10.0, 15.0, 20.0, 25.0, 30.0, 10.0]
        assert h.state.hard_resets == 1
        assert h.state.generation == 1
        assert h.state.watch_errors == 6
        assert h.state.reconnect_count == 0
        assert source.watch_calls[6][1] == "2"
        assert h.state.view().connection_healthy is False

    async def test_expired_credentials_retry_without_relist(self, harnesses: list[_Harness]) -> None:
        failures = [[ConnectionError("[SSL] certificate has expired")] for _ in range(3)]
        source = ScriptedSource(pages=[_snapshot_page()], watches=failures)
        h = _Harness(source)
        harnesses.append(h)
        h.start()

        await wait_until(lambda: len(source.watch_calls) == 4)

        assert len(source.list_calls) == 1
        assert h.state.hard_resets == 0
        assert h.state.generation == 0
        assert h.state.consecutive_failures == 3
        assert h.sleep.delays == [10.0, 5.0, 10.0, 15.0]
        assert [call[1] for call in source.watch_calls] == ["2", "2", "2", "2"]

    async def test_failed_opens_never_report_healthy(self, harnesses: list[_Harness]) -> None:
        failures = [[ConnectionError("connection refused")] for _ in range(3)]
        source = ScriptedSource(pages=[_snapshot_page()], watches=failures)
        h = _Harness(source)
        harnesses.append(h)
        h.start()

        await wait_until(lambda: len(source.watch_calls) == 4)

        view = h.state.view()
        assert view.watch_errors == 3
        assert view.events_received == 0
        assert view.connection_healthy is False
        assert view.last_heartbeat == T0

    async def test_silent_stream_is_caught_by_watchdog(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: source.open_streams == 1)
        assert h.state.connection_healthy is False

        h.clock.advance(3 * 7.0 + 1)
        assert h.session.health.check_heartbeat() is True

        await wait_until(lambda: len(source.watch_calls) == 2)
        assert h.state.hard_resets == 0
        assert h.state.reconnects == 1

    async def test_stale_checkpoint_resets_snapshot_and_dedup(self, harnesses: list[_Harness]) -> None:
        clock = FakeClock()
        seen_at_reload: list[tuple[int, int, str]] = []
        holder: list[_Harness] = []

        def on_list() -> None:
            state = holder[0].state
            if state.initialized_at is not None:
                seen_at_reload.append(
                    (len(holder[0].session.dedup), len(state.checkpoint.snapshot), state.checkpoint.resource_version)
                )

        source = ScriptedSource(
            pages=[_snapshot_page(), ListPage(items=[make_object("a", "20")], resource_version="20")],
            watches=[
                [
                    lambda: clock.advance(40),
                    make_event("MODIFIED", "b", "3"),
                    ApiException(status=410, reason="Gone"),
                ]
            ],
            on_list=on_list,
        )
        h = _Harness(source, clock=clock)
        holder.append(h)
        harnesses.append(h)
        h.start()

        await wait_until(lambda: len(source.watch_calls) == 2)

        assert len(h.delivered) == 1
        assert seen_at_reload == [(0, 0, "")]
        assert h.state.generation == 1
        assert h.state.hard_resets == 1
        assert h.sleep.delays == [10.0, 2.0, 10.0]
        assert source.watch_calls[1][1] == "20"
        assert set(h.state.checkpoint.snapshot) == {"ns/a"}

    async def test_in_band_expired_status_triggers_reset(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(
            pages=[_snapshot_page(), _snapshot_page()],
            watches=[[status_error(410, "Expired", "too old resource version: 2 (90)")]],
        )
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.list_calls) == 2 and len(source.watch_calls) == 2)
        assert h.state.hard_resets == 1
        assert h.state.last_error.startswith("too old")

    async def test_in_band_non_stale_status_retries_same_checkpoint(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(
            pages=[_snapshot_page()],
            watches=[[status_error(500, "InternalError", "etcd leader changed")]],
        )
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 2)
        assert h.state.hard_resets == 0
        assert h.state.consecutive_failures == 1
        assert source.watch_calls[1][1] == "2"
        assert len(source.list_calls) == 1

    async def test_heartbeat_stall_forces_reopen(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[_snapshot_page()], watches=[[bookmark("3"), BLOCK]])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: h.state.events_received == 1)
        assert h.state.connection_healthy is True

        h.clock.advance(3 * 7.0 + 1)
        assert h.session.health.check_heartbeat() is True

        await wait_until(lambda: len(source.watch_calls) == 2)
        assert source.watch_calls[1][1] == "3"
        assert source.closed_streams == 1
        assert h.state.reconnects == 1
        assert h.state.hard_resets == 0
        assert h.sleep.delays == [10.0, 5.0]

    async def test_snapshot_exhaustion_ends_session(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[OSError("apiserver unavailable")] * 3)
        h = _Harness(source, watcher_config(snapshot_retry_steps=2))
        harnesses.append(h)
        h.start()
        assert h.task is not None
        await asyncio.wait_for(h.task, timeout=2.0)
        assert h.state.phase is SessionPhase.STOPPED
        assert "apiserver unavailable" in h.state.last_error
        assert source.watch_calls == []


# ---------------------------------------------------------------------------
# Cancellation and admission
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_cancel_closes_stream_and_stops(self, harnesses: list[_Harness]) -> None:
        registry = SessionRegistry()
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source, registry=registry)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: source.open_streams == 1)
        assert len(registry) == 1

        await h.stop()

        assert source.open_streams == 0
        assert source.closed_streams == 1
        assert h.state.phase is SessionPhase.STOPPED

    async def test_cancel_during_snapshot_load(self, harnesses: list[_Harness]) -> None:
        source = ScriptedSource(pages=[BLOCK])
        h = _Harness(source)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: source.in_flight_lists == 1)
        await h.stop()
        assert h.state.phase is SessionPhase.STOPPED
        assert source.in_flight_lists == 0

    async def test_not_admitted_before_deadline(self, harnesses: list[_Harness]) -> None:
        gate = AdmissionGate(1)
        assert await gate.acquire()
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source, watcher_config(startup_deadline_seconds=0.02), gate=gate)
        harnesses.append(h)
        h.start()
        assert h.task is not None
        await asyncio.wait_for(h.task, timeout=2.0)
        assert h.state.phase is SessionPhase.STOPPED
        assert source.list_calls == []

    async def test_slot_held_until_session_ends(self, harnesses: list[_Harness]) -> None:
        gate = AdmissionGate(1)
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source, gate=gate)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: source.open_streams == 1)
        assert not await gate.acquire(0.01)
        await h.stop()
        assert await gate.acquire(0.01)

    async def test_release_on_watch_hands_slot_back(self, harnesses: list[_Harness]) -> None:
        gate = AdmissionGate(1)
        source = ScriptedSource(pages=[_snapshot_page()])
        h = _Harness(source, watcher_config(release_admission_on_watch=True), gate=gate)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: source.open_streams == 1)
        assert await gate.acquire(0.01)
        gate.release()

    async def test_reset_reacquires_released_slot(self, harnesses: list[_Harness]) -> None:
        gate = AdmissionGate(1)
        source = ScriptedSource(
            pages=[_snapshot_page(), _snapshot_page()],
            watches=[[ApiException(status=410, reason="Gone")]],
        )
        h = _Harness(source, watcher_config(release_admission_on_watch=True), gate=gate)
        harnesses.append(h)
        h.start()
        await wait_until(lambda: len(source.watch_calls) == 2)
        assert len(source.list_calls) == 2
        # released again once watching resumed
        assert await gate.acquire(0.01)
        gate.release()
