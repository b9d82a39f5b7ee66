"""An in-memory resource store and the controller feeding a Resolver from it."""

from __future__ import annotations

import copy
import enum
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from .model import (
    K8S_LABEL_SERVICE_NAME,
    LABEL_MANAGED_BY,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_NAMESPACE,
    LABEL_VALUE_MANAGED_BY,
    MCS_LABEL_SOURCE_CLUSTER,
    EndpointSlice,
    ServiceImport,
)
from .resolver import Resolver

logger = logging.getLogger(__name__)

Resource = Union[EndpointSlice, ServiceImport]
Handler = Callable[[Any], bool]


class _Op(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass
class _Subscription:
    on_create: Handler
    on_update: Handler
    on_delete: Handler

    def handler(self, op: _Op) -> Handler:
        if op is _Op.CREATE:
            return self.on_create
        if op is _Op.UPDATE:
            return self.on_update
        return self.on_delete


@dataclass
class _Pending:
    op: _Op
    obj: Any


_Key = tuple[type, str, str]


class ResourceStore:
    """Namespaced resources with per-kind event subscriptions.

    A handler returning True asks for the event to be retried; retries run
    after every later change to the store until the handler returns False.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._objects: dict[_Key, Any] = {}
        self._subscriptions: dict[type, _Subscription] = {}
        self._pending: dict[_Key, _Pending] = {}
        self._retrying = False

    @staticmethod
    def _key_of(obj: Resource) -> _Key:
        if not obj.name:
            raise ValueError(f"{type(obj).__name__} must have a name")
        return type(obj), obj.namespace, obj.name

    def create(self, obj: Resource) -> None:
        key = self._key_of(obj)
        with self._lock:
            if key in self._objects:
                raise ValueError(f"{type(obj).__name__} {obj.namespace}/{obj.name} already exists")
            self._objects[key] = copy.deepcopy(obj)
            self._notify(_Op.CREATE, key, self._objects[key])

    def update(self, obj: Resource) -> None:
        key = self._key_of(obj)
        with self._lock:
            if key not in self._objects:
                raise KeyError(f"{type(obj).__name__} {obj.namespace}/{obj.name} not found")
            self._objects[key] = copy.deepcopy(obj)
            self._notify(_Op.UPDATE, key, self._objects[key])

    def delete(self, kind: type, namespace: str, name: str) -> None:
        key = (kind, namespace, name)
        with self._lock:
            try:
                removed = self._objects.pop(key)
            except KeyError:
                raise KeyError(f"{kind.__name__} {namespace}/{name} not found") from None
            self._notify(_Op.DELETE, key, removed)

    def list(self, kind: type, namespace: str = "", labels: Mapping[str, str] | None = None) -> list[Any]:
        """Objects of a kind, in all namespaces when namespace is empty, matching all labels."""
        wanted = dict(labels or {})
        with self._lock:
            matches = [
                obj
                for (obj_kind, obj_ns, _), obj in sorted(
                    self._objects.items(), key=lambda item: (item[0][1], item[0][2])
                )
                if obj_kind is kind
                and (not namespace or obj_ns == namespace)
                and all(obj.labels.get(k) == v for k, v in wanted.items())
            ]
            return copy.deepcopy(matches)

    def subscribe(self, kind: type, on_create: Handler, on_update: Handler, on_delete: Handler) -> None:
        """Register handlers for a kind; existing objects are delivered as creations."""
        with self._lock:
            if kind in self._subscriptions:
                raise ValueError(f"{kind.__name__} already has a subscriber")
            self._subscriptions[kind] = _Subscription(on_create, on_update, on_delete)
            for key, obj in sorted(
                ((k, o) for k, o in self._objects.items() if k[0] is kind),
                key=lambda item: (item[0][1], item[0][2]),
            ):
                self._notify(_Op.CREATE, key, obj)

    def unsubscribe(self, kind: type) -> None:
        with self._lock:
            if self._subscriptions.pop(kind, None) is None:
                raise KeyError(f"{kind.__name__} has no subscriber")
            for key in [k for k in self._pending if k[0] is kind]:
                del self._pending[key]

    def list_endpoint_slices(self, namespace: str, service_name: str) -> list[EndpointSlice]:
        """The cluster's own EndpointSlices for a service."""
        return self.list(EndpointSlice, namespace, {K8S_LABEL_SERVICE_NAME: service_name})

    def _notify(self, op: _Op, key: _Key, obj: Any) -> None:
        self._pending.pop(key, None)
        subscription = self._subscriptions.get(key[0])
        if subscription is not None and subscription.handler(op)(copy.deepcopy(obj)):
            self._pending[key] = _Pending(op, copy.deepcopy(obj))
        self._retry_pending()

    def _retry_pending(self) -> None:
        if self._retrying:
            return
        self._retrying = True
        try:
            progress = True
            while progress and self._pending:
                progress = False
                for key, pending in list(self._pending.items()):
                    if self._pending.get(key) is not pending:
                        continue
                    subscription = self._subscriptions.get(key[0])
                    if subscription is None:
                        del self._pending[key]
                        continue
                    if pending.op is _Op.DELETE:
                        obj = pending.obj
                    else:
                        obj = self._objects.get(key)
                        if obj is None:
                            del self._pending[key]
                            continue
                    if subscription.handler(pending.op)(copy.deepcopy(obj)):
                        continue
                    if self._pending.get(key) is pending:
                        del self._pending[key]
                    progress = True
        finally:
            self._retrying = False


class Controller:
    """Feeds EndpointSlice and ServiceImport events from a store into a Resolver."""

    def __init__(self, resolver: Resolver, store: ResourceStore) -> None:
        self._resolver = resolver
        self._store = store
        self._started = False

    def __enter__(self) -> Controller:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def start(self) -> None:
        if self._started:
            raise RuntimeError("controller already started")
        logger.info("Starting Resolver Controller")
        self._store.subscribe(
            EndpointSlice,
            self._on_endpoint_slice_create_or_update,
            self._on_endpoint_slice_create_or_update,
            self._on_endpoint_slice_delete,
        )
        try:
            self._store.subscribe(
                ServiceImport,
                self._on_service_import_create_or_update,
                self._on_service_import_create_or_update,
                self._on_service_import_delete,
            )
        except ValueError:
            self._store.unsubscribe(EndpointSlice)
            raise
        self._started = True

    def stop(self) -> None:
        if not self._started:
            raise RuntimeError("controller is not started")
        self._store.unsubscribe(EndpointSlice)
        self._store.unsubscribe(ServiceImport)
        self._started = False
        logger.info("Resolver Controller stopped")

    @staticmethod
    def _is_managed(eps: EndpointSlice) -> bool:
        return eps.labels.get(LABEL_MANAGED_BY) == LABEL_VALUE_MANAGED_BY

    def _all_endpoint_slices(self, for_eps: EndpointSlice) -> list[EndpointSlice]:
        selector = {
            LABEL_MANAGED_BY: LABEL_VALUE_MANAGED_BY,
            LABEL_SOURCE_NAMESPACE: for_eps.labels.get(LABEL_SOURCE_NAMESPACE, ""),
            LABEL_SERVICE_NAME: for_eps.labels.get(LABEL_SERVICE_NAME, ""),
            MCS_LABEL_SOURCE_CLUSTER: for_eps.labels.get(MCS_LABEL_SOURCE_CLUSTER, ""),
        }
        return [
            eps
            for eps in self._store.list(EndpointSlice, "", selector)
            if not eps.is_on_broker() and not eps.is_legacy()
        ]

    def _ignore(self, eps: EndpointSlice) -> bool:
        return eps.is_on_broker() or (eps.is_legacy() and bool(self._all_endpoint_slices(eps)))

    def _on_endpoint_slice_create_or_update(self, eps: EndpointSlice) -> bool:
        if not self._is_managed(eps) or self._ignore(eps):
            return False
        if not eps.is_headless() or eps.is_legacy():
            return self._resolver.put_endpoint_slices(eps)
        return self._resolver.put_endpoint_slices(*self._all_endpoint_slices(eps))

    def _on_endpoint_slice_delete(self, eps: EndpointSlice) -> bool:
        if not self._is_managed(eps) or self._ignore(eps):
            return False
        if not eps.is_headless():
            self._resolver.remove_endpoint_slice(eps)
        remaining = self._all_endpoint_slices(eps)
        if not remaining:
            self._resolver.remove_endpoint_slice(eps)
        return self._resolver.put_endpoint_slices(*remaining)

    def _on_service_import_create_or_update(self, service_import: ServiceImport) -> bool:
        self._resolver.put_service_import(service_import)
        return False

    def _on_service_import_delete(self, service_import: ServiceImport) -> bool:
        self._resolver.remove_service_import(service_import)
        return False