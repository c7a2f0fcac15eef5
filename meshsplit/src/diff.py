from __future__ import annotations

from meshsplit.src.routing import HttpRoute, RoutingPolicy, SubsetPolicy


def _has_matching_route(routes: tuple[HttpRoute, ...], target: HttpRoute, header_key: str) -> bool:
    for route in routes:
        if not route.is_conditional:
            continue
        if route.subset == target.subset and _header_value(route, header_key) == _header_value(
            target, header_key
        ):
            return True
    return False


def _header_value(route: HttpRoute, header_key: str) -> str | None:
    return route.header_value if route.header == header_key else None


def routing_policy_changed(old: RoutingPolicy, new: RoutingPolicy, header_key: str) -> bool:
    """Return True if the observed VirtualService spec differs from the desired one.

    Route counts are compared first.  With equal counts, every conditional
    route of *new* must appear in *old* with the same subset and header value;
    the default route is not compared.  Routes only present in *old* are not
    looked for separately.
    """
    if len(old.routes) != len(new.routes):
        return True
    return any(
        not _has_matching_route(old.routes, route, header_key) for route in new.conditional_routes
    )


def subset_policy_changed(old: SubsetPolicy, new: SubsetPolicy, env_key: str) -> bool:
    """Return True if the observed DestinationRule spec differs from the desired one.

    Subset counts are compared first.  With equal counts, every subset of
    *old* must exist by name in *new* with the same *env_key* label value.
    """
    if len(old.subsets) != len(new.subsets):
        return True
    for subset in old.subsets:
        counterpart = new.find(subset.name)
        if counterpart is None:
            return True
        if subset.label(env_key) != counterpart.label(env_key):
            return True
    return False
