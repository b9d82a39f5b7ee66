"""Service discovery state built from ServiceImports and EndpointSlices."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import NamedTuple, Protocol

from .cluster_status import ClusterStatus
from .model import (
    GLOBALNET_ENABLED,
    LABEL_IS_HEADLESS,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_NAMESPACE,
    MCS_LABEL_SOURCE_CLUSTER,
    PUBLISH_NOT_READY_ADDRESSES,
    TRUE,
    DNSRecord,
    EndpointSlice,
    ServiceImport,
)
from .service_info import ClusterInfo, ServiceInfo

logger = logging.getLogger(__name__)

MAX_RECORDS_TO_LOG = 5
LEGACY_SOURCE_CLUSTER_LABEL = "lighthouse.submariner.io/sourceCluster"


class LocalEndpointSliceError(Exception):
    """The local cluster's own EndpointSlices could not be retrieved."""


class LocalEndpointSliceSource(Protocol):
    def list_endpoint_slices(self, namespace: str, service_name: str) -> list[EndpointSlice]: ...


class DNSLookup(NamedTuple):
    """Result of a DNS record lookup."""

    records: list[DNSRecord] | None
    is_headless: bool
    found: bool


def _key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def _key_info(endpoint_slice: EndpointSlice) -> tuple[str, str] | None:
    labels = endpoint_slice.labels
    for label in (LABEL_SERVICE_NAME, LABEL_SOURCE_NAMESPACE, MCS_LABEL_SOURCE_CLUSTER):
        if label not in labels:
            logger.warning("EndpointSlice %s/%s missing label %r", endpoint_slice.namespace, endpoint_slice.name, label)
            return None
    return _key(labels[LABEL_SOURCE_NAMESPACE], labels[LABEL_SERVICE_NAME]), labels[MCS_LABEL_SOURCE_CLUSTER]


def _should_retrieve_local_slices(endpoint_slice: EndpointSlice) -> bool:
    if LABEL_IS_HEADLESS not in endpoint_slice.labels:
        # Pre-0.15 slice: whether it is headless or globalnet is enabled is unknown.
        return True
    globalnet = endpoint_slice.annotations.get(GLOBALNET_ENABLED)
    if globalnet is None:
        # 0.15 slice: whether globalnet is enabled is unknown.
        return endpoint_slice.is_headless()
    return endpoint_slice.is_headless() and globalnet == TRUE


def _service_import_key(service_import: ServiceImport) -> tuple[str, bool]:
    name = service_import.annotations.get("origin-name")
    if name is not None:
        return _key(service_import.annotations.get("origin-namespace", ""), name), True
    return _key(service_import.namespace, service_import.name), False


def _ignore_service_import(service_import: ServiceImport) -> bool:
    is_local = LABEL_SERVICE_NAME in service_import.labels
    is_on_broker = LABEL_SERVICE_NAME in service_import.annotations
    return is_local or is_on_broker


class Resolver:
    """Answers DNS lookups for multi-cluster services."""

    def __init__(self, cluster_status: ClusterStatus, client: LocalEndpointSliceSource | None = None) -> None:
        self._cluster_status = cluster_status
        self._client = client
        self._services: dict[str, ServiceInfo] = {}
        self._lock = threading.Lock()

    # Lookups

    def get_dns_records(self, namespace: str, name: str, cluster_id: str = "", hostname: str = "") -> DNSLookup:
        with self._lock:
            info = self._services.get(_key(namespace, name))
            if info is None:
                return DNSLookup(None, False, False)

            if not info.is_headless:
                record, found = self._cluster_ip_record(info, cluster_id)
                if record is not None:
                    return DNSLookup([record], False, True)
                return DNSLookup(None, False, found)

            records, found = self._headless_records(info, cluster_id, hostname)
            return DNSLookup(records, True, found)

    def _cluster_ip_record(self, info: ServiceInfo, cluster_id: str) -> tuple[DNSRecord | None, bool]:
        # A requested cluster is answered even when it is unhealthy.
        if cluster_id:
            cluster = info.clusters.get(cluster_id)
            if cluster is None or not cluster.endpoint_records:
                return None, False
            return cluster.endpoint_records[0], True

        local_id = self._cluster_status.local_cluster_id
        if local_id:
            cluster = info.clusters.get(local_id)
            if cluster is not None and cluster.endpoints_healthy and cluster.endpoint_records:
                return info.new_record_from(cluster.endpoint_records[0]), True

        record = info.select_record(self._cluster_status.is_connected)
        if record is not None:
            return info.new_record_from(record), True
        return None, True

    def _headless_records(self, info: ServiceInfo, cluster_id: str, hostname: str) -> tuple[list[DNSRecord] | None, bool]:
        if not cluster_id:
            return [
                record
                for cid, cluster in info.clusters.items()
                if self._cluster_status.is_connected(cid)
                for record in cluster.endpoint_records
            ], True

        cluster = info.clusters.get(cluster_id)
        if cluster is None:
            return None, False
        if not hostname:
            return list(cluster.endpoint_records), True
        records = cluster.endpoint_records_by_host.get(hostname)
        if records is None:
            return None, False
        return list(records), True

    # EndpointSlices

    def put_endpoint_slices(self, *args: EndpointSlice) -> bool:
        """Store the given slices of one service and cluster; return True to requeue."""
        if not args:
            return False
        endpoint_slices = list(args)
        first = endpoint_slices[0]

        key_info = _key_info(first)
        if key_info is None:
            return False
        key, cluster_id = key_info

        logger.info("Put EndpointSlices for %r on cluster %r", key, cluster_id)

        local_id = self._cluster_status.local_cluster_id
        local_error: LocalEndpointSliceError | None = None
        local_slices: list[EndpointSlice] | None = None

        if local_id and cluster_id == local_id and _should_retrieve_local_slices(first):
            # Local global endpoint IPs are not routable locally, so the local
            # cluster's own slices are used instead (headless services only).
            try:
                local_slices = self._local_endpoint_slices(first)
            except LocalEndpointSliceError as exc:
                local_error = exc

        with self._lock:
            info = self._services.get(key)
            if info is None:
                logger.info("Service not found for EndpointSlice %r - requeuing", key)
                return True

            if not info.is_headless:
                return self._put_cluster_ip_slice(key, cluster_id, first, info)

            if local_error is not None:
                logger.error("Unable to retrieve local EndpointSlice - requeuing: %s", local_error)
                return True

            if local_slices is not None:
                endpoint_slices = local_slices

            self._put_headless_slices(key, cluster_id, endpoint_slices, info)
            return False

    def _put_cluster_ip_slice(self, key: str, cluster_id: str, endpoint_slice: EndpointSlice, info: ServiceInfo) -> bool:
        if LABEL_IS_HEADLESS not in endpoint_slice.labels:
            # Pre-0.15 slice: only whether any endpoints exist matters.
            cluster = info.clusters.get(cluster_id)
            if cluster is None:
                logger.info("Cluster %r not found for EndpointSlice %r - requeuing", cluster_id, key)
                return True
            cluster.endpoints_healthy = bool(endpoint_slice.endpoints)
            return False

        if not endpoint_slice.endpoints:
            logger.error("Missing service IP endpoint in EndpointSlice %r", key)
            return False

        endpoint = endpoint_slice.endpoints[0]
        cluster = info.ensure_cluster_info(cluster_id)
        cluster.endpoint_records = [
            DNSRecord(
                ip=endpoint.addresses[0],
                ports=tuple(p.to_service_port() for p in endpoint_slice.ports),
                cluster_name=cluster_id,
            )
        ]
        cluster.endpoints_healthy = endpoint.ready is None or endpoint.ready

        info.merge_ports()
        info.reset_load_balancing()

        logger.info(
            "Added DNSRecord with service IP %r for EndpointSlice %r on cluster %r, endpointsHealthy: %s",
            cluster.endpoint_records[0].ip, key, cluster_id, cluster.endpoints_healthy,
        )
        return False

    def _put_headless_slices(
        self, key: str, cluster_id: str, endpoint_slices: list[EndpointSlice], info: ServiceInfo
    ) -> None:
        cluster = ClusterInfo()
        info.clusters[cluster_id] = cluster
        seen: set[str] = set()

        for endpoint_slice in endpoint_slices:
            ports = tuple(p.to_service_port() for p in endpoint_slice.ports)
            publish_not_ready = endpoint_slice.annotations.get(PUBLISH_NOT_READY_ADDRESSES) == TRUE

            for endpoint in endpoint_slice.endpoints:
                # An unknown readiness (None) counts as ready.
                if endpoint.ready is False and not publish_not_ready:
                    continue

                hostname = ""
                if endpoint.hostname:
                    hostname = endpoint.hostname
                elif endpoint.target_ref is not None and endpoint.target_ref.kind.lower() == "pod":
                    hostname = endpoint.target_ref.name

                records = []
                for address in endpoint.addresses:
                    if address in seen:
                        continue
                    seen.add(address)
                    records.append(DNSRecord(ip=address, ports=ports, cluster_name=cluster_id, host_name=hostname))

                if hostname:
                    cluster.endpoint_records_by_host[hostname] = records
                cluster.endpoint_records.extend(records)

        shown = cluster.endpoint_records[:MAX_RECORDS_TO_LOG]
        logger.info(
            "Added records for headless EndpointSlice %r from cluster %r (showing %d/%d): %s",
            key, cluster_id, len(shown), len(cluster.endpoint_records), shown,
        )

    def _local_endpoint_slices(self, for_slice: EndpointSlice) -> list[EndpointSlice]:
        namespace = for_slice.labels.get(LABEL_SOURCE_NAMESPACE, "")
        service_name = for_slice.labels.get(LABEL_SERVICE_NAME, "")
        if self._client is None:
            raise LocalEndpointSliceError(f"no client to retrieve the endpointslices in namespace {namespace}")
        try:
            found = self._client.list_endpoint_slices(namespace, service_name)
        except Exception as exc:
            raise LocalEndpointSliceError(f"error retrieving the endpointslices in namespace {namespace}") from exc
        if not found:
            raise LocalEndpointSliceError(f"local EndpointSlice not found for {namespace}/{service_name}")
        return [
            replace(eps, labels=dict(for_slice.labels), annotations=dict(for_slice.annotations))
            for eps in found
        ]

    def remove_endpoint_slice(self, endpoint_slice: EndpointSlice) -> None:
        key_info = _key_info(endpoint_slice)
        if key_info is None:
            return
        key, cluster_id = key_info

        logger.info("Remove EndpointSlice %r on cluster %r", key, cluster_id)

        with self._lock:
            info = self._services.get(key)
            if info is None:
                return
            info.clusters.pop(cluster_id, None)
            if not info.clusters and not info.is_exported:
                del self._services[key]
            elif not info.is_headless:
                info.merge_ports()
                info.reset_load_balancing()

    # ServiceImports

    def put_service_import(self, service_import: ServiceImport) -> None:
        if _ignore_service_import(service_import):
            return

        key, is_legacy = _service_import_key(service_import)
        logger.info("Put ServiceImport %r", key)

        with self._lock:
            info = self._services.get(key)
            if info is None:
                info = ServiceInfo(is_headless=service_import.is_headless())
                self._services[key] = info

            info.is_exported = True

            if info.is_headless or not is_legacy:
                return

            # Pre-0.15 per-cluster ServiceImport: seed the cluster's record so
            # lookups keep working during a rolling upgrade.
            cluster_name = service_import.labels.get(LEGACY_SOURCE_CLUSTER_LABEL, "")
            cluster = info.ensure_cluster_info(cluster_name)
            cluster.endpoint_records = [
                DNSRecord(ip=service_import.ips[0], ports=tuple(service_import.ports), cluster_name=cluster_name)
            ]
            info.merge_ports()
            info.reset_load_balancing()

    def remove_service_import(self, service_import: ServiceImport) -> None:
        if _ignore_service_import(service_import):
            return

        key, is_legacy = _service_import_key(service_import)
        if is_legacy:
            return

        logger.info("Remove ServiceImport %r", key)

        with self._lock:
            info = self._services.get(key)
            if info is None:
                return
            if not info.clusters:
                del self._services[key]
            else:
                info.is_exported = False