from __future__ import annotations

from meshsplit.src.labels import (
    distinct_environment_values,
    matches_selector,
    related_workloads,
)

WORKLOADS = {
    "w1": {"app": "x", "env": "a.b"},
    "w2": {"app": "y", "env": "a.b"},
    "w3": {"app": "x"},
}


def test_related_workloads_filters_by_selector_and_label() -> None:
    assert related_workloads(WORKLOADS, {"app": "x"}, "env") == {"w1": "a.b"}


def test_related_workloads_empty_selector_matches_everything_labelled() -> None:
    assert related_workloads(WORKLOADS, {}, "env") == {"w1": "a.b", "w2": "a.b"}


def test_related_workloads_skips_empty_env_value() -> None:
    workloads = {"w1": {"env": ""}, "w2": {"env": "prod"}}

    assert related_workloads(workloads, {}, "env") == {"w2": "prod"}


def test_related_workloads_requires_every_selector_key() -> None:
    workloads = {"w1": {"app": "x", "env": "prod"}}

    assert related_workloads(workloads, {"app": "x", "tier": "web"}, "env") == {}


def test_related_workloads_on_empty_snapshot() -> None:
    assert related_workloads({}, {"app": "x"}, "env") == {}


def test_distinct_environment_values_ignores_selector_and_collapses_duplicates() -> None:
    workloads = {
        **WORKLOADS,
        "w4": {"app": "z", "env": "a.b.c"},
    }

    assert sorted(distinct_environment_values(workloads, "env")) == ["a.b", "a.b.c"]


def test_distinct_environment_values_without_label_is_empty() -> None:
    assert distinct_environment_values({"w1": {"app": "x"}}, "env") == set()


def test_matches_selector_requires_exact_value() -> None:
    assert matches_selector({"app": "web"}, {"app": "web"})
    assert not matches_selector({"app": "web-2"}, {"app": "web"})
    assert not matches_selector({}, {"app": "web"})
