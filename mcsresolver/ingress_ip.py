"""Global ingress IP parsing and a keyed cache of GlobalIngressIP objects."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

CLUSTER_IP_SERVICE = "ClusterIPService"
HEADLESS_SERVICE_POD = "HeadlessServicePod"
HEADLESS_SERVICE_ENDPOINTS = "HeadlessServiceEndpoints"
DEFAULT_REASON_IP_UNAVAILABLE = "ServiceGlobalIPUnavailable"
DEFAULT_MSG_IP_UNAVAILABLE = "Service doesn't have a global IP yet"
HEADLESS_ENDPOINTS_IP_ANNOTATION = "submariner.io/headless-svc-endpoints-ip"

Transform = Callable[[Mapping[str, Any]], "tuple[Any, bool]"]


def _nested_str(obj: Mapping[str, Any], *path: str) -> str:
    value: Any = obj
    for key in path:
        if not isinstance(value, Mapping):
            return ""
        value = value.get(key)
    return value if isinstance(value, str) else ""


def _namespace(obj: Mapping[str, Any]) -> str:
    return _nested_str(obj, "metadata", "namespace")


@dataclass(frozen=True)
class IngressIP:
    """Allocation state of a global ingress IP."""

    namespace: str = ""
    allocated_ip: str = ""
    unallocated_reason: str = ""
    unallocated_msg: str = ""


def parse_ingress_ip(obj: Mapping[str, Any]) -> IngressIP:
    """Build an IngressIP from a GlobalIngressIP object in dictionary form."""
    namespace = _namespace(obj)
    allocated = _nested_str(obj, "status", "allocatedIP")
    if allocated:
        return IngressIP(namespace=namespace, allocated_ip=allocated)

    reason = DEFAULT_REASON_IP_UNAVAILABLE
    msg = DEFAULT_MSG_IP_UNAVAILABLE
    status = obj.get("status")
    conditions = status.get("conditions") if isinstance(status, Mapping) else None
    for condition in conditions or ():
        if isinstance(condition, Mapping) and condition.get("type") == "Allocated":
            msg = "Unable to obtain global IP: " + str(condition.get("message", ""))
            reason = str(condition.get("reason", ""))
            break

    return IngressIP(namespace=namespace, unallocated_reason=reason, unallocated_msg=msg)


@dataclass
class _Entry:
    obj: Mapping[str, Any] | None = None
    on_add_or_update: Callable[[], None] | None = None


@dataclass
class _EntryMap:
    lock: threading.Lock = field(default_factory=threading.Lock)
    entries: dict[str, _Entry] = field(default_factory=dict)


class GlobalIngressIPCache:
    """GlobalIngressIP objects keyed by service, pod or endpoints IP.

    A lookup that finds nothing usable registers a callback that runs when
    the matching object is next created or updated.
    """

    def __init__(self) -> None:
        self._by_service = _EntryMap()
        self._by_pod = _EntryMap()
        self._by_endpoints = _EntryMap()

    @staticmethod
    def _key(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    def _target(self, obj: Mapping[str, Any]) -> tuple[_EntryMap, str] | None:
        namespace = _namespace(obj)
        target = _nested_str(obj, "spec", "target")
        if target == CLUSTER_IP_SERVICE:
            return self._by_service, self._key(namespace, _nested_str(obj, "spec", "serviceRef", "name"))
        if target == HEADLESS_SERVICE_POD:
            return self._by_pod, self._key(namespace, _nested_str(obj, "spec", "podRef", "name"))
        if target == HEADLESS_SERVICE_ENDPOINTS:
            metadata = obj.get("metadata")
            annotations = metadata.get("annotations") if isinstance(metadata, Mapping) else None
            if isinstance(annotations, Mapping) and HEADLESS_ENDPOINTS_IP_ANNOTATION in annotations:
                return self._by_endpoints, self._key(namespace, annotations[HEADLESS_ENDPOINTS_IP_ANNOTATION])
        return None

    def on_create_or_update(self, obj: Mapping[str, Any]) -> None:
        target = self._target(obj)
        if target is None:
            return
        to, key = target
        with to.lock:
            entry = to.entries.setdefault(key, _Entry())
            entry.obj = obj
            callback = entry.on_add_or_update
        if callback is not None:
            callback()

    def on_delete(self, obj: Mapping[str, Any]) -> None:
        target = self._target(obj)
        if target is None:
            return
        to, key = target
        with to.lock:
            to.entries.pop(key, None)

    def _get(
        self,
        source: _EntryMap,
        namespace: str,
        name: str,
        transform: Transform,
        on_add_or_update: Callable[[], None] | None,
    ) -> tuple[Any, bool]:
        with source.lock:
            entry = source.entries.setdefault(self._key(namespace, name), _Entry())
            if entry.obj is None:
                entry.on_add_or_update = on_add_or_update
                return None, False
            result, ok = transform(entry.obj)
            entry.on_add_or_update = None if ok else on_add_or_update
            return result, ok

    def get_for_service(self, namespace, name, transform, on_add_or_update):
        return self._get(self._by_service, namespace, name, transform, on_add_or_update)

    def get_for_pod(self, namespace, name, transform, on_add_or_update):
        return self._get(self._by_pod, namespace, name, transform, on_add_or_update)

    def get_for_endpoints(self, namespace, ip, transform, on_add_or_update):
        return self._get(self._by_endpoints, namespace, ip, transform, on_add_or_update)