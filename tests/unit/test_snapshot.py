"""Unit tests for kubewatcher.collector.snapshot."""

from __future__ import annotations

import pytest

from kubewatcher.collector.backoff import ExponentialBackoff
from kubewatcher.collector.snapshot import SnapshotLoader, SnapshotLoadError
from kubewatcher.collector.source import ListPage
from kubewatcher.models.resources import ResourceFilter
from tests.fakes import BLOCK, FakeClock, RecordingSleep, ScriptedSource, make_object

_FILTER = ResourceFilter(kind="ConfigMap", namespace="ns")


def _loader(source: ScriptedSource, steps: int = 10, page_timeout_s: float = 30.0) -> tuple[SnapshotLoader, RecordingSleep]:
    sleep = RecordingSleep(park=())
    loader = SnapshotLoader(
        source,
        page_size=2,
        page_timeout_s=page_timeout_s,
        backoff=ExponentialBackoff(jitter=0.0, steps=steps),
        clock=FakeClock(),
        sleep=sleep,
    )
    return loader, sleep


class TestSnapshotLoader:
    async def test_paginates_until_no_continue_token(self) -> None:
        source = ScriptedSource(
            pages=[
                ListPage(items=[make_object("a", "1"), make_object("b", "2")], continue_token="t1"),
                ListPage(items=[make_object("c", "3")], continue_token="", resource_version="9"),
            ]
        )
        loader, _ = _loader(source)

        snapshot = await loader.load(_FILTER)

        assert set(snapshot.entries) == {"ns/a", "ns/b", "ns/c"}
        assert snapshot.entries["ns/b"].version == "2"
        assert snapshot.pages == 2
        # Checkpoint is the last object version seen, not the list version.
        assert snapshot.resource_version == "3"
        assert [call[2] for call in source.list_calls] == ["", "t1"]
        assert all(call[1] == 2 for call in source.list_calls)

    async def test_empty_listing_uses_list_resource_version(self) -> None:
        source = ScriptedSource(pages=[ListPage(items=[], resource_version="77")])
        loader, _ = _loader(source)
        snapshot = await loader.load(_FILTER)
        assert snapshot.entries == {}
        assert snapshot.resource_version == "77"

    async def test_items_without_name_ignored(self) -> None:
        nameless = {"metadata": {"namespace": "ns", "resourceVersion": "4"}}
        source = ScriptedSource(pages=[ListPage(items=[nameless, make_object("a", "1")])])
        loader, _ = _loader(source)
        snapshot = await loader.load(_FILTER)
        assert list(snapshot.entries) == ["ns/a"]

    async def test_page_failure_restarts_whole_load(self) -> None:
        source = ScriptedSource(
            pages=[
                ListPage(items=[make_object("a", "1")], continue_token="t1"),
                ConnectionError("connection reset"),
                ListPage(items=[make_object("a", "1")], continue_token="t1"),
                ListPage(items=[make_object("b", "2")]),
            ]
        )
        loader, sleep = _loader(source)

        snapshot = await loader.load(_FILTER)

        assert set(snapshot.entries) == {"ns/a", "ns/b"}
        assert [call[2] for call in source.list_calls] == ["", "t1", "", "t1"]
        assert sleep.delays == [1.0]

    async def test_backoff_grows_between_attempts(self) -> None:
        source = ScriptedSource(pages=[OSError("boom"), OSError("boom"), OSError("boom")])
        loader, sleep = _loader(source)
        await loader.load(_FILTER)
        assert sleep.delays == [1.0, 2.0, 4.0]

    async def test_retry_budget_exhausted(self) -> None:
        source = ScriptedSource(pages=[OSError(f"fail {n}") for n in range(4)])
        loader, sleep = _loader(source, steps=3)

        with pytest.raises(SnapshotLoadError) as exc_info:
            await loader.load(_FILTER)

        assert exc_info.value.attempts == 4
        assert exc_info.value.resource_filter == _FILTER
        assert isinstance(exc_info.value.cause, OSError)
        assert len(sleep.delays) == 3

    async def test_page_timeout_counts_as_failure(self) -> None:
        source = ScriptedSource(pages=[BLOCK, ListPage(items=[make_object("a", "1")])])
        loader, sleep = _loader(source, page_timeout_s=0.01)
        snapshot = await loader.load(_FILTER)
        assert list(snapshot.entries) == ["ns/a"]
        assert len(source.list_calls) == 2
        assert sleep.delays == [1.0]
