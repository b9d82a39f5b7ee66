"""Per-service state: clusters, merged ports and load balancing."""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field, replace

from .model import DNSRecord, ServicePort

logger = logging.getLogger(__name__)


@dataclass
class _Weighted:
    item: Hashable
    weight: int
    current: int = 0


class WeightedRoundRobin:
    """Smooth weighted round-robin over hashable items.

    A skipped item is passed over until the current round of selections ends.
    """

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Weighted] = {}
        self._skipped: set[Hashable] = set()
        self._picks_in_round = 0

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, item: Hashable, weight: int) -> None:
        if weight < 0:
            raise ValueError(f"weight for {item!r} must not be negative: {weight}")
        if item in self._entries:
            raise ValueError(f"item {item!r} already added")
        self._entries[item] = _Weighted(item, weight)
        self._picks_in_round = 0

    def remove_all(self) -> None:
        self._entries.clear()
        self._skipped.clear()
        self._picks_in_round = 0

    def _pick(self) -> tuple[_Weighted, bool] | None:
        total = 0
        best: _Weighted | None = None
        for entry in self._entries.values():
            entry.current += entry.weight
            total += entry.weight
            if entry.weight > 0 and (best is None or entry.current > best.current):
                best = entry
        if best is None:
            return None
        best.current -= total
        self._picks_in_round += 1
        round_done = self._picks_in_round >= total
        if round_done:
            self._picks_in_round = 0
        return best, round_done

    def next(self) -> Hashable | None:
        """Return the next item, or None if nothing can be selected."""
        while True:
            picked = self._pick()
            if picked is None:
                return None
            entry, round_done = picked
            skipped = entry.item in self._skipped
            if round_done:
                self._skipped.clear()
            if not skipped:
                return entry.item

    def skip(self, item: Hashable) -> None:
        if item not in self._entries:
            raise KeyError(item)
        self._skipped.add(item)


@dataclass
class ClusterInfo:
    """Records a cluster contributes to a service."""

    endpoint_records: list[DNSRecord] = field(default_factory=list)
    endpoint_records_by_host: dict[str, list[DNSRecord]] = field(default_factory=dict)
    weight: int = 0
    endpoints_healthy: bool = False


@dataclass
class ServiceInfo:
    """Everything known about one exported service."""

    is_headless: bool = False
    is_exported: bool = False
    clusters: dict[str, ClusterInfo] = field(default_factory=dict)
    balancer: WeightedRoundRobin = field(default_factory=WeightedRoundRobin)
    ports: tuple[ServicePort, ...] = ()

    def reset_load_balancing(self) -> None:
        self.balancer.remove_all()
        for name, info in self.clusters.items():
            try:
                self.balancer.add(name, info.weight)
            except ValueError:
                logger.exception("Error adding load balancer info")

    def merge_ports(self) -> None:
        merged: tuple[ServicePort, ...] | None = None
        for info in self.clusters.values():
            ports = info.endpoint_records[0].ports
            if merged is None:
                merged = tuple(ports)
            else:
                keys = {p.key() for p in ports}
                merged = tuple(p for p in merged if p.key() in keys)
        self.ports = merged or ()

    def ensure_cluster_info(self, name: str) -> ClusterInfo:
        info = self.clusters.get(name)
        if info is None:
            info = ClusterInfo(weight=1)
            self.clusters[name] = info
        return info

    def new_record_from(self, record: DNSRecord) -> DNSRecord:
        return replace(record, ports=self.ports)

    def select_record(self, check_cluster: Callable[[str], bool]) -> DNSRecord | None:
        """Pick the next healthy, accepted cluster's record in balancing order."""
        for _ in range(len(self.balancer)):
            cluster_id = self.balancer.next()
            if cluster_id is None:
                break
            info = self.clusters.get(cluster_id)
            if info is not None and check_cluster(cluster_id) and info.endpoints_healthy and info.endpoint_records:
                return info.endpoint_records[0]
            self.balancer.skip(cluster_id)
        return None