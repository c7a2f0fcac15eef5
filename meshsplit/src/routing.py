from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from meshsplit.src.matching import leveled_equal, most_specific_workload

ISTIO_GROUP = "networking.istio.io"
ISTIO_VERSION = "v1alpha3"
ISTIO_API_VERSION = f"{ISTIO_GROUP}/{ISTIO_VERSION}"


@dataclass(frozen=True)
class HttpRoute:
    """One HTTP route of a VirtualService.

    The default route has no header predicate and no subset.  Conditional
    routes match ``header == header_value`` exactly and target ``subset``.
    """

    destination: str
    subset: str | None = None
    header: str | None = None
    header_value: str | None = None

    @property
    def is_conditional(self) -> bool:
        return self.header is not None


@dataclass(frozen=True)
class RoutingPolicy:
    """Desired or observed VirtualService spec: a host and its ordered routes."""

    host: str
    routes: tuple[HttpRoute, ...] = ()

    @property
    def conditional_routes(self) -> tuple[HttpRoute, ...]:
        return tuple(route for route in self.routes if route.is_conditional)


@dataclass(frozen=True)
class Subset:
    """A named DestinationRule subset.

    ``labels`` accepts any mapping and is stored as sorted ``(key, value)``
    pairs so the subset stays immutable and hashable.
    """

    name: str
    labels: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        labels: Any = self.labels
        pairs = labels.items() if isinstance(labels, Mapping) else labels
        object.__setattr__(self, "labels", tuple(sorted((str(k), str(v)) for k, v in pairs)))

    def label(self, key: str) -> str | None:
        for name, value in self.labels:
            if name == key:
                return value
        return None


@dataclass(frozen=True)
class SubsetPolicy:
    """Desired or observed DestinationRule spec: a host and its named subsets."""

    host: str
    subsets: tuple[Subset, ...] = ()

    def find(self, name: str) -> Subset | None:
        for subset in self.subsets:
            if subset.name == name:
                return subset
        return None


def _match_route(
    service_name: str,
    related: Mapping[str, str],
    env_value: str,
    header_key: str,
    separator: str,
) -> HttpRoute | None:
    matched = {
        workload: value
        for workload, value in related.items()
        if leveled_equal(value, env_value, separator)
    }
    if not matched:
        return None
    return HttpRoute(
        destination=service_name,
        subset=most_specific_workload(matched),
        header=header_key,
        header_value=env_value,
    )


def build_routing_policy(
    service_name: str,
    namespace: str,
    environment_values: Iterable[str],
    related: Mapping[str, str],
    header_key: str,
    separator: str,
) -> RoutingPolicy:
    """Build the VirtualService spec for *service_name*.

    The first route is the catch-all to the service itself.  Each environment
    value (in sorted order) adds one route keyed on *header_key* and pointing
    at the most specific related workload whose value leveled-matches it.
    Values that match no related workload add nothing.

    *namespace* does not affect the spec; it is accepted so that both builders
    share the call shape used by the reconciler.
    """
    routes = [HttpRoute(destination=service_name)]
    for env_value in sorted(set(environment_values)):
        route = _match_route(service_name, related, env_value, header_key, separator)
        if route is not None:
            routes.append(route)
    return RoutingPolicy(host=service_name, routes=tuple(routes))


def build_subset_policy(
    service_name: str,
    namespace: str,
    related: Mapping[str, str],
    env_key: str,
) -> SubsetPolicy:
    """Build the DestinationRule spec: one subset per related workload, named after it."""
    subsets = tuple(
        Subset(name=workload, labels=((env_key, related[workload]),))
        for workload in sorted(related)
    )
    return SubsetPolicy(host=service_name, subsets=subsets)


def _route_to_dict(route: HttpRoute) -> dict[str, Any]:
    destination: dict[str, Any] = {"host": route.destination}
    if route.subset is not None:
        destination["subset"] = route.subset
    rendered: dict[str, Any] = {"route": [{"destination": destination}]}
    if route.is_conditional:
        rendered["match"] = [{"headers": {route.header: {"exact": route.header_value}}}]
    return rendered


def _object_meta(name: str, namespace: str, labels: Mapping[str, str] | None) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name, "namespace": namespace}
    if labels:
        metadata["labels"] = dict(labels)
    return metadata


def virtual_service_spec(policy: RoutingPolicy) -> dict[str, Any]:
    return {
        "hosts": [policy.host],
        "http": [_route_to_dict(route) for route in policy.routes],
    }


def destination_rule_spec(policy: SubsetPolicy) -> dict[str, Any]:
    return {
        "host": policy.host,
        "subsets": [
            {"name": subset.name, "labels": dict(subset.labels)} for subset in policy.subsets
        ],
    }


def virtual_service_manifest(
    policy: RoutingPolicy,
    name: str,
    namespace: str,
    labels: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Render a full ``VirtualService`` body for the CustomObjects API."""
    return {
        "apiVersion": ISTIO_API_VERSION,
        "kind": "VirtualService",
        "metadata": _object_meta(name, namespace, labels),
        "spec": virtual_service_spec(policy),
    }


def destination_rule_manifest(
    policy: SubsetPolicy,
    name: str,
    namespace: str,
    labels: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Render a full ``DestinationRule`` body for the CustomObjects API."""
    return {
        "apiVersion": ISTIO_API_VERSION,
        "kind": "DestinationRule",
        "metadata": _object_meta(name, namespace, labels),
        "spec": destination_rule_spec(policy),
    }


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _route_from_dict(raw: Any, header_key: str) -> HttpRoute | None:
    raw = _as_dict(raw)
    destinations = _as_list(raw.get("route"))
    if not destinations:
        return None
    destination = _as_dict(_as_dict(destinations[0]).get("destination"))
    host = destination.get("host")
    if not isinstance(host, str):
        return None
    subset = destination.get("subset")
    subset = subset if isinstance(subset, str) else None

    matches = _as_list(raw.get("match"))
    if not matches:
        return HttpRoute(destination=host, subset=subset)

    headers = _as_dict(_as_dict(matches[0]).get("headers"))
    exact = _as_dict(headers.get(header_key)).get("exact")
    # A match on some other header still counts as a conditional route.
    return HttpRoute(
        destination=host,
        subset=subset,
        header=header_key,
        header_value=exact if isinstance(exact, str) else None,
    )


def routing_policy_from_spec(spec: Any, header_key: str) -> RoutingPolicy:
    """Read a live VirtualService ``spec`` dict back into a :class:`RoutingPolicy`.

    Routes without a usable destination are dropped; unknown fields are ignored.
    """
    spec = _as_dict(spec)
    hosts = [host for host in _as_list(spec.get("hosts")) if isinstance(host, str)]
    routes = []
    for raw in _as_list(spec.get("http")):
        route = _route_from_dict(raw, header_key)
        if route is not None:
            routes.append(route)
    return RoutingPolicy(host=hosts[0] if hosts else "", routes=tuple(routes))


def subset_policy_from_spec(spec: Any) -> SubsetPolicy:
    """Read a live DestinationRule ``spec`` dict back into a :class:`SubsetPolicy`."""
    spec = _as_dict(spec)
    host = spec.get("host")
    subsets = []
    for raw in _as_list(spec.get("subsets")):
        raw = _as_dict(raw)
        name = raw.get("name")
        if not isinstance(name, str):
            continue
        labels = {
            k: str(v) for k, v in _as_dict(raw.get("labels")).items() if isinstance(k, str)
        }
        subsets.append(Subset(name=name, labels=tuple(labels.items())))
    return SubsetPolicy(host=host if isinstance(host, str) else "", subsets=tuple(subsets))
