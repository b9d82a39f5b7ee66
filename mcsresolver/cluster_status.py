"""In-memory view of which clusters are connected."""

from __future__ import annotations

import threading


class ClusterStatus:
    """Tracks the local cluster ID and the set of connected clusters."""

    def __init__(self, local_cluster_id: str = "", *connected: str) -> None:
        self.local_cluster_id = local_cluster_id
        self._lock = threading.Lock()
        self._connected: set[str] = set(connected)

    def is_connected(self, cluster_id: str) -> bool:
        with self._lock:
            return cluster_id in self._connected

    def connect(self, cluster_id: str) -> None:
        with self._lock:
            self._connected.add(cluster_id)

    def disconnect(self, cluster_id: str) -> None:
        with self._lock:
            self._connected.discard(cluster_id)

    def disconnect_all(self) -> None:
        with self._lock:
            self._connected = set()