"""Resource and record types used for multi-cluster service discovery."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field

LABEL_SERVICE_NAME = "multicluster.kubernetes.io/service-name"
MCS_LABEL_SOURCE_CLUSTER = "multicluster.kubernetes.io/source-cluster"
LABEL_SOURCE_NAMESPACE = "lighthouse.submariner.io/sourceNamespace"
LABEL_SOURCE_NAME = "lighthouse.submariner.io/sourceName"
LABEL_IS_HEADLESS = "lighthouse.submariner.io/is-headless"
LABEL_MANAGED_BY = "endpointslice.kubernetes.io/managed-by"
LABEL_VALUE_MANAGED_BY = "lighthouse-agent.submariner.io"
K8S_LABEL_SERVICE_NAME = "kubernetes.io/service-name"
PUBLISH_NOT_READY_ADDRESSES = "lighthouse.submariner.io/publish-not-ready-addresses"
GLOBALNET_ENABLED = "lighthouse.submariner.io/globalnet-enabled"

TRUE = "true"
FALSE = "false"


class ServiceImportType(str, enum.Enum):
    """The kind of service a ServiceImport describes."""

    CLUSTER_SET_IP = "ClusterSetIP"
    HEADLESS = "Headless"


@dataclass(frozen=True)
class ServicePort:
    """A port exposed by a multi-cluster service."""

    name: str
    protocol: str
    port: int
    app_protocol: str | None = None

    def key(self) -> str:
        """Identity of the port used when comparing port sets."""
        return f"{self.name}{self.protocol}{self.port}"


@dataclass(frozen=True)
class EndpointPort:
    """A port listed in an EndpointSlice."""

    name: str
    protocol: str
    port: int
    app_protocol: str | None = None

    def to_service_port(self) -> ServicePort:
        return ServicePort(
            name=self.name,
            protocol=self.protocol,
            port=self.port,
            app_protocol=self.app_protocol,
        )


@dataclass(frozen=True)
class ObjectReference:
    """Reference to the object backing an endpoint."""

    kind: str
    name: str


@dataclass
class Endpoint:
    """One endpoint of an EndpointSlice; ``ready`` of None means unknown."""

    addresses: list[str] = field(default_factory=list)
    ready: bool | None = None
    hostname: str | None = None
    node_name: str | None = None
    target_ref: ObjectReference | None = None


@dataclass
class EndpointSlice:
    """A set of endpoints belonging to one service in one cluster."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    address_type: str = "IPv4"
    ports: list[EndpointPort] = field(default_factory=list)
    endpoints: list[Endpoint] = field(default_factory=list)

    def is_headless(self) -> bool:
        return self.labels.get(LABEL_IS_HEADLESS) == TRUE

    def is_on_broker(self) -> bool:
        return self.namespace != self.labels.get(LABEL_SOURCE_NAMESPACE, "")

    def is_legacy(self) -> bool:
        # Older slice names carried the source cluster ID as a suffix.
        return self.name.endswith("-" + self.labels.get(MCS_LABEL_SOURCE_CLUSTER, ""))


@dataclass
class ServiceImport:
    """A service made available to the cluster set."""

    name: str = ""
    namespace: str = ""
    type: ServiceImportType = ServiceImportType.CLUSTER_SET_IP
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    ips: list[str] = field(default_factory=list)
    ports: list[ServicePort] = field(default_factory=list)

    def is_headless(self) -> bool:
        return self.type == ServiceImportType.HEADLESS


@dataclass(frozen=True)
class DNSRecord:
    """An address answer for a service lookup."""

    ip: str
    ports: tuple[ServicePort, ...] = ()
    host_name: str = ""
    cluster_name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "ports", tuple(self.ports))