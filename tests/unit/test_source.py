"""Unit tests for kubewatcher.collector.source."""

from __future__ import annotations

from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from kubernetes_asyncio.client.exceptions import ApiException

from kubewatcher.collector.classifier import StreamFailure
from kubewatcher.collector.source import SUPPORTED_KINDS, KubernetesSource, is_stale_resource_version
from kubewatcher.models.resources import ResourceFilter


class TestIsStaleResourceVersion:
    def test_api_exception_410(self) -> None:
        assert is_stale_resource_version(ApiException(status=410, reason="Gone"))

    def test_api_exception_500(self) -> None:
        assert not is_stale_resource_version(ApiException(status=500, reason="Internal Server Error"))

    @pytest.mark.parametrize(
        "message",
        ["too old resource version: 12 (40)", "resourceVersion expired", "410 Gone"],
    )
    def test_message_markers(self, message: str) -> None:
        assert is_stale_resource_version(RuntimeError(message))

    def test_stream_failure_flag(self) -> None:
        assert is_stale_resource_version(StreamFailure("x", code=410))
        assert not is_stale_resource_version(StreamFailure("internal error", code=500))

    def test_plain_error(self) -> None:
        assert not is_stale_resource_version(ConnectionResetError("connection reset by peer"))

    @pytest.mark.parametrize(
        "error",
        [
            ConnectionError("[SSL: CERTIFICATE_VERIFY_FAILED] certificate has expired"),
            Exception("Unauthorized: token has expired"),
            ApiException(status=401, reason="Unauthorized"),
            RuntimeError("upstream connection gone away"),
        ],
    )
    def test_expiry_unrelated_to_resource_version(self, error: Exception) -> None:
        assert not is_stale_resource_version(error)

    def test_in_band_token_expiry_is_not_stale(self) -> None:
        failure = StreamFailure("Unauthorized: token has expired", code=401, reason="Unauthorized")
        assert not failure.stale
        assert not is_stale_resource_version(failure)

    def test_gone_reason_without_status(self) -> None:
        assert is_stale_resource_version(StreamFailure("watch closed", reason="Gone"))


def _api_client() -> MagicMock:
    client = MagicMock()
    client.sanitize_for_serialization = MagicMock(side_effect=lambda obj: obj)
    client.close = AsyncMock()
    return client


class TestKubernetesSource:
    def test_supported_kinds(self) -> None:
        assert {"ConfigMap", "Secret", "Deployment", "Ingress", "Service"} <= SUPPORTED_KINDS

    async def test_list_page_namespaced_with_name_selector(self) -> None:
        api = MagicMock()
        api.list_namespaced_config_map = AsyncMock(
            return_value=SimpleNamespace(
                items=[{"metadata": {"name": "app"}}],
                metadata=SimpleNamespace(_continue="next", resource_version="15"),
            )
        )
        with patch("kubewatcher.collector.source.k8s_client.CoreV1Api", return_value=api):
            source = KubernetesSource(_api_client())
            page = await source.list_page(
                ResourceFilter(kind="ConfigMap", namespace="dev", resource_name="app"),
                limit=500,
                continue_token="tok",
            )

        api.list_namespaced_config_map.assert_awaited_once_with(
            namespace="dev",
            field_selector="metadata.name=app",
            limit=500,
            _continue="tok",
        )
        assert page.items == [{"metadata": {"name": "app"}}]
        assert page.continue_token == "next"
        assert page.resource_version == "15"

    async def test_list_page_all_namespaces(self) -> None:
        api = MagicMock()
        api.list_deployment_for_all_namespaces = AsyncMock(
            return_value=SimpleNamespace(items=[], metadata=SimpleNamespace(_continue=None, resource_version="3"))
        )
        with patch("kubewatcher.collector.source.k8s_client.AppsV1Api", return_value=api):
            source = KubernetesSource(_api_client())
            page = await source.list_page(ResourceFilter(kind="Deployment"), limit=10)

        api.list_deployment_for_all_namespaces.assert_awaited_once_with(limit=10)
        assert page.continue_token == ""
        assert page.resource_version == "3"

    async def test_unsupported_kind(self) -> None:
        source = KubernetesSource(_api_client())
        with pytest.raises(ValueError, match="unsupported"):
            await source.list_page(ResourceFilter(kind="Pod"), limit=1)

    async def test_watch_yields_raw_events_and_closes(self) -> None:
        raw_events: list[dict[str, Any]] = [
            {"type": "ADDED", "raw_object": {"metadata": {"name": "a"}}, "object": None},
            {"type": "BOOKMARK", "raw_object": {"metadata": {"resourceVersion": "9"}}, "object": None},
        ]

        async def _stream(*_args: Any, **_kwargs: Any) -> Any:
            for event in raw_events:
                yield event

        watcher = MagicMock()
        watcher.stream = MagicMock(side_effect=_stream)
        watcher.close = AsyncMock()
        api = MagicMock()

        with (
            patch("kubewatcher.collector.source.k8s_client.CoreV1Api", return_value=api),
            patch("kubewatcher.collector.source.watch.Watch", return_value=watcher),
        ):
            source = KubernetesSource(_api_client())
            events = [
                e async for e in source.watch(ResourceFilter(kind="Secret", namespace="ns"), "5", 300)
            ]

        assert events == [
            {"type": "ADDED", "object": {"metadata": {"name": "a"}}},
            {"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "9"}}},
        ]
        _, kwargs = watcher.stream.call_args
        assert kwargs == {
            "namespace": "ns",
            "timeout_seconds": 300,
            "allow_watch_bookmarks": True,
            "resource_version": "5",
        }
        watcher.close.assert_awaited_once()

    async def test_close_closes_api_client(self) -> None:
        client = _api_client()
        source = KubernetesSource(client)
        await source.close()
        client.close.assert_awaited_once()
