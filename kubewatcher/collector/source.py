"""Control-plane source adapter.

The watch session engine talks to the cluster only through the
:class:`ResourceSource` protocol: one paginated list call and one
resumable watch stream.  :class:`KubernetesSource` implements it on top of
kubernetes_asyncio's typed APIs and ``watch.Watch``.

Watch events are normalised to the Kubernetes wire shape::

    {"type": "ADDED" | "MODIFIED" | "DELETED" | "BOOKMARK" | "ERROR",
     "object": {...raw object dict...}}
"""

from __future__ import annotations

import re
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import watch

from kubewatcher.models.resources import ResourceFilter


# kind -> (API class name, namespaced list method, all-namespaces list method)
_KIND_API: dict[str, tuple[str, str, str]] = {
    "ConfigMap": ("CoreV1Api", "list_namespaced_config_map", "list_config_map_for_all_namespaces"),
    "Secret": ("CoreV1Api", "list_namespaced_secret", "list_secret_for_all_namespaces"),
    "Service": ("CoreV1Api", "list_namespaced_service", "list_service_for_all_namespaces"),
    "Deployment": ("AppsV1Api", "list_namespaced_deployment", "list_deployment_for_all_namespaces"),
    "StatefulSet": ("AppsV1Api", "list_namespaced_stateful_set", "list_stateful_set_for_all_namespaces"),
    "DaemonSet": ("AppsV1Api", "list_namespaced_daemon_set", "list_daemon_set_for_all_namespaces"),
    "Ingress": ("NetworkingV1Api", "list_namespaced_ingress", "list_ingress_for_all_namespaces"),
    "NetworkPolicy": (
        "NetworkingV1Api",
        "list_namespaced_network_policy",
        "list_network_policy_for_all_namespaces",
    ),
}

SUPPORTED_KINDS: frozenset[str] = frozenset(_KIND_API)

STALE_REASONS: frozenset[str] = frozenset({"Expired", "Gone"})

# Messages the API server uses when a watch resource version can no longer be served.
_STALE_MESSAGE = re.compile(
    r"too old resource version|resource ?version\b.*\bexpired|\b410\b:? *\(?gone\b",
    re.IGNORECASE,
)


@dataclass
class ListPage:
    """One page of a paginated list call."""

    items: list[dict[str, Any]] = field(default_factory=list)
    continue_token: str = ""
    resource_version: str = ""


class ResourceSource(Protocol):
    """What the engine needs from the control plane."""

    async def list_page(
        self,
        resource_filter: ResourceFilter,
        limit: int,
        continue_token: str = "",
    ) -> ListPage: ...

    def watch(
        self,
        resource_filter: ResourceFilter,
        resource_version: str,
        timeout_seconds: int,
    ) -> AsyncIterator[dict[str, Any]]: ...


def is_stale_resource_version(exc: BaseException) -> bool:
    """Return True if *exc* says the checkpoint is no longer resumable.

    Matches HTTP 410, exceptions flagged ``stale``, an ``Expired``/``Gone``
    reason, and the API server's own expired-resource-version messages.
    Other errors that merely mention "expired" (certificates, tokens) are
    ordinary failures.
    """
    if getattr(exc, "stale", False):
        return True
    if getattr(exc, "status", None) == 410:
        return True
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason in STALE_REASONS:
        return True
    return is_stale_message(str(exc))


def is_stale_message(message: str) -> bool:
    return bool(_STALE_MESSAGE.search(message))


class KubernetesSource:
    """ResourceSource backed by kubernetes_asyncio.

    Args:
        api_client: Optional shared ``ApiClient``; a default one is created
            from the globally loaded configuration when omitted.
    """

    def __init__(self, api_client: Any | None = None) -> None:
        self._api_client = api_client or k8s_client.ApiClient()
        self._apis: dict[str, Any] = {}

    async def close(self) -> None:
        await self._api_client.close()

    # ------------------------------------------------------------------
    # ResourceSource
    # ------------------------------------------------------------------

    async def list_page(
        self,
        resource_filter: ResourceFilter,
        limit: int,
        continue_token: str = "",
    ) -> ListPage:
        list_fn, kwargs = self._list_call(resource_filter)
        kwargs["limit"] = limit
        if continue_token:
            kwargs["_continue"] = continue_token

        result = await list_fn(**kwargs)

        items = [self._api_client.sanitize_for_serialization(item) for item in (result.items or [])]
        metadata = result.metadata
        return ListPage(
            items=items,
            continue_token=(getattr(metadata, "_continue", "") or "") if metadata else "",
            resource_version=(getattr(metadata, "resource_version", "") or "") if metadata else "",
        )

    async def watch(
        self,
        resource_filter: ResourceFilter,
        resource_version: str,
        timeout_seconds: int,
    ) -> AsyncIterator[dict[str, Any]]:
        list_fn, kwargs = self._list_call(resource_filter)
        kwargs["timeout_seconds"] = timeout_seconds
        kwargs["allow_watch_bookmarks"] = True
        if resource_version:
            kwargs["resource_version"] = resource_version

        w = watch.Watch()
        try:
            async for raw_event in w.stream(list_fn, **kwargs):
                raw = raw_event.get("raw_object")
                if not isinstance(raw, dict):
                    raw = self._api_client.sanitize_for_serialization(raw_event.get("object"))
                yield {"type": raw_event.get("type", ""), "object": raw}
        finally:
            await w.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _list_call(self, resource_filter: ResourceFilter) -> tuple[Any, dict[str, Any]]:
        """Resolve the list function and base kwargs for *resource_filter*."""
        try:
            api_name, namespaced_fn, cluster_fn = _KIND_API[resource_filter.kind]
        except KeyError:
            raise ValueError(f"unsupported resource kind: {resource_filter.kind}") from None

        api = self._apis.get(api_name)
        if api is None:
            api = getattr(k8s_client, api_name)(self._api_client)
            self._apis[api_name] = api

        kwargs: dict[str, Any] = {}
        if resource_filter.field_selector:
            kwargs["field_selector"] = resource_filter.field_selector
        if resource_filter.namespace:
            kwargs["namespace"] = resource_filter.namespace
            return getattr(api, namespaced_fn), kwargs
        return getattr(api, cluster_fn), kwargs
