from __future__ import annotations

from meshsplit.src.diff import routing_policy_changed, subset_policy_changed
from meshsplit.src.routing import (
    HttpRoute,
    RoutingPolicy,
    Subset,
    SubsetPolicy,
    build_routing_policy,
    build_subset_policy,
)

HEADER = "x-env"
RELATED = {"web-a": "prod", "web-b": "prod.canary", "web-c": "dev"}


def _route(value: str, subset: str) -> HttpRoute:
    return HttpRoute(destination="web", subset=subset, header=HEADER, header_value=value)


def _policy(*routes: HttpRoute) -> RoutingPolicy:
    return RoutingPolicy(host="web", routes=(HttpRoute(destination="web"), *routes))


def test_routing_policy_unchanged_against_itself() -> None:
    policy = build_routing_policy("web", "shop", set(RELATED.values()), RELATED, HEADER, ".")

    assert not routing_policy_changed(policy, policy, HEADER)


def test_routing_policy_changed_on_route_count() -> None:
    old = _policy(_route("prod", "web-a"))
    new = _policy(_route("prod", "web-a"), _route("dev", "web-c"))

    assert routing_policy_changed(old, new, HEADER)
    assert routing_policy_changed(new, old, HEADER)


def test_routing_policy_changed_when_subset_moves() -> None:
    old = _policy(_route("prod", "web-a"))
    new = _policy(_route("prod", "web-b"))

    assert routing_policy_changed(old, new, HEADER)


def test_routing_policy_changed_when_header_value_differs() -> None:
    old = _policy(_route("prod", "web-a"))
    new = _policy(_route("staging", "web-a"))

    assert routing_policy_changed(old, new, HEADER)


def test_routing_policy_ignores_route_order() -> None:
    old = _policy(_route("prod", "web-a"), _route("dev", "web-c"))
    new = _policy(_route("dev", "web-c"), _route("prod", "web-a"))

    assert not routing_policy_changed(old, new, HEADER)


def test_routing_policy_ignores_default_route_destination() -> None:
    old = RoutingPolicy(
        host="web", routes=(HttpRoute(destination="other"), _route("prod", "web-a"))
    )
    new = _policy(_route("prod", "web-a"))

    assert not routing_policy_changed(old, new, HEADER)


def test_routing_policy_check_is_asymmetric() -> None:
    # Only routes of new are looked up in old, so a route dropped from old
    # goes unnoticed when a duplicate keeps the count equal.
    old = _policy(_route("prod", "web-a"), _route("dev", "web-c"))
    new = _policy(_route("prod", "web-a"), _route("prod", "web-a"))

    assert not routing_policy_changed(old, new, HEADER)
    assert routing_policy_changed(new, old, HEADER)


def test_routing_policy_compares_configured_header_only() -> None:
    old = _policy(
        HttpRoute(destination="web", subset="web-a", header="x-other", header_value="prod")
    )
    new = _policy(_route("prod", "web-a"))

    assert routing_policy_changed(old, new, HEADER)


def test_subset_policy_unchanged_against_itself() -> None:
    policy = build_subset_policy("web", "shop", RELATED, "env")

    assert not subset_policy_changed(policy, policy, "env")


def test_subset_policy_changed_on_count() -> None:
    old = build_subset_policy("web", "shop", {"web-a": "prod"}, "env")
    new = build_subset_policy("web", "shop", RELATED, "env")

    assert subset_policy_changed(old, new, "env")


def test_subset_policy_changed_on_label_value() -> None:
    old = build_subset_policy("web", "shop", RELATED, "env")
    new = build_subset_policy("web", "shop", {**RELATED, "web-c": "dev.v2"}, "env")

    assert subset_policy_changed(old, new, "env")


def test_subset_policy_changed_on_renamed_subset() -> None:
    old = build_subset_policy("web", "shop", {"web-a": "prod"}, "env")
    new = build_subset_policy("web", "shop", {"web-z": "prod"}, "env")

    assert subset_policy_changed(old, new, "env")


def test_subset_policy_ignores_other_labels_and_order() -> None:
    old = SubsetPolicy(
        host="web",
        subsets=(
            Subset(name="web-b", labels={"env": "dev", "extra": "1"}),
            Subset(name="web-a", labels={"env": "prod"}),
        ),
    )
    new = build_subset_policy("web", "shop", {"web-a": "prod", "web-b": "dev"}, "env")

    assert not subset_policy_changed(old, new, "env")
