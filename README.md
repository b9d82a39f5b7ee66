# mcsresolver

`mcsresolver` keeps an in-memory view of services that are exported across
several clusters and answers DNS record lookups for them. ServiceImports tell
it that a service exists. EndpointSlices tell it which addresses back that
service in each cluster.

## What it does

- **ClusterIP services** resolve to a single service IP. If the local cluster
  is known and its endpoints are healthy, its IP is returned. Otherwise the IP
  is picked from the connected, healthy clusters by smooth weighted
  round-robin. The ports returned are the ports that every cluster exposes.
  If a specific cluster is requested, its record is returned even when that
  cluster is unhealthy or disconnected.
- **Headless services** resolve to every ready endpoint address. An endpoint
  whose readiness is unknown counts as ready. Not-ready addresses are included
  too when the EndpointSlice carries the publish-not-ready-addresses
  annotation set to `"true"`. Duplicate addresses are returned once. A lookup
  can be narrowed to one cluster, or to one hostname within that cluster.
- Resources written by older exporters are still understood: per-cluster
  ServiceImports with `origin-name`/`origin-namespace` annotations, and
  EndpointSlices without the is-headless label. Records stay correct while
  clusters are upgraded.
- For headless services in the local cluster with globalnet enabled, the
  resolver can use the cluster's own EndpointSlices in place of the exported
  ones, when it is given a source for them.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `mcsresolver.model`: the resource and record types (`ServiceImport`,
  `ServiceImportType`, `EndpointSlice`, `Endpoint`, `EndpointPort`,
  `ObjectReference`, `ServicePort`, `DNSRecord`) and the label and annotation
  names they use.
- `mcsresolver.cluster_status`: `ClusterStatus` holds the local cluster ID
  (`local_cluster_id`) and the set of connected clusters. It has
  `is_connected`, `connect`, `disconnect` and `disconnect_all`.
- `mcsresolver.service_info`: per-service state (`ServiceInfo`,
  `ClusterInfo`) and the `WeightedRoundRobin` balancer.
- `mcsresolver.resolver`: `Resolver`, which answers lookups, and the
  `DNSLookup` result type.
- `mcsresolver.controller`: `ResourceStore`, an in-memory collection of
  EndpointSlices and ServiceImports with per-kind event subscriptions, and
  `Controller`, which passes the store's events to a `Resolver`.
- `mcsresolver.ingress_ip`: `parse_ingress_ip` reads a GlobalIngressIP object
  in dictionary form into an `IngressIP`. `GlobalIngressIPCache` keeps these
  objects keyed by service, pod or headless endpoints IP.

## Usage

```python
from mcsresolver.cluster_status import ClusterStatus
from mcsresolver.model import (
    FALSE,
    LABEL_IS_HEADLESS,
    LABEL_SERVICE_NAME,
    LABEL_SOURCE_NAMESPACE,
    MCS_LABEL_SOURCE_CLUSTER,
    Endpoint,
    EndpointPort,
    EndpointSlice,
    ServiceImport,
)
from mcsresolver.resolver import Resolver

status = ClusterStatus("", "cluster1", "cluster2")
resolver = Resolver(status)

resolver.put_service_import(ServiceImport(name="service1", namespace="namespace1"))

requeue = resolver.put_endpoint_slices(
    EndpointSlice(
        name="service1-abcde",
        namespace="namespace1",
        labels={
            LABEL_SERVICE_NAME: "service1",
            LABEL_SOURCE_NAMESPACE: "namespace1",
            MCS_LABEL_SOURCE_CLUSTER: "cluster1",
            LABEL_IS_HEADLESS: FALSE,
        },
        ports=[EndpointPort(name="http", protocol="TCP", port=8080)],
        endpoints=[Endpoint(addresses=["192.168.56.21"], ready=True)],
    )
)

lookup = resolver.get_dns_records("namespace1", "service1", "", "")
if lookup.found and lookup.records:
    for record in lookup.records:
        print(record.ip, record.ports, record.cluster_name)
```

`get_dns_records` returns a `DNSLookup` named tuple of `records`,
`is_headless` and `found`. `records` is `None` when nothing could be returned.

`put_endpoint_slices` returns `True` when the slices should be offered again
later, for example because their ServiceImport has not arrived yet. An
EndpointSlice that lacks the service-name, source-namespace or source-cluster
label is ignored.

### Driving a resolver from a store

```python
from mcsresolver.controller import Controller, ResourceStore

store = ResourceStore()
resolver = Resolver(status, store)

with Controller(resolver, store):
    store.create(service_import)
    store.create(endpoint_slice)
```

`Controller.start()` subscribes to the store's EndpointSlice and ServiceImport
events, and `Controller.stop()` unsubscribes. A controller can also be used as
a context manager. Only EndpointSlices with the managed-by label are handled.
Slices on the broker (whose namespace differs from their source-namespace
label) are ignored. When a handler asks for a retry, the store retries it after
each later change. Passing the store to `Resolver` lets the resolver fetch the
local cluster's own EndpointSlices through `ResourceStore.list_endpoint_slices`.
If they cannot be fetched, the resolver raises `LocalEndpointSliceError`
internally and asks for a retry.

## What it does not do

The package does not serve DNS. It neither listens on a socket nor speaks the
DNS wire protocol. A DNS server has to call `Resolver.get_dns_records`
itself. The package does not connect to a cluster API either. Resources reach
it only through the `Resolver` methods or through an in-memory
`ResourceStore`. It has no command-line program.