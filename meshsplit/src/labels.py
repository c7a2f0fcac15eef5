from __future__ import annotations

from collections.abc import Mapping

WorkloadLabelSet = Mapping[str, Mapping[str, str]]


def matches_selector(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    """Return True if *labels* contain every key-value pair from *selector*."""
    return all(k in labels and labels[k] == v for k, v in selector.items())


def related_workloads(
    workloads: WorkloadLabelSet,
    selector: Mapping[str, str],
    env_key: str,
) -> dict[str, str]:
    """Map each workload that matches *selector* and carries *env_key* to its env value.

    Workloads without the label, or with an empty value, are left out rather
    than treated as errors.
    """
    related: dict[str, str] = {}
    for name, labels in workloads.items():
        if not matches_selector(labels, selector):
            continue
        value = labels.get(env_key)
        if value:
            related[name] = value
    return related


def distinct_environment_values(workloads: WorkloadLabelSet, env_key: str) -> set[str]:
    """Collect every value of *env_key* across all workloads, ignoring any selector."""
    return {labels[env_key] for labels in workloads.values() if env_key in labels}
