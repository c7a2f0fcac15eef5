#!/usr/bin/env python3
"""Offline rendering of the routing objects the controller would write.

Reads Deployment and Service manifests from YAML files and prints the
DestinationRule and VirtualService for each requested Service, without
talking to a cluster.
"""
from __future__ import annotations

import argparse
import sys
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, TextIO

import yaml

from meshsplit.src.config import ControllerConfig
from meshsplit.src.controller import MANAGED_BY_LABELS
from meshsplit.src.labels import distinct_environment_values, related_workloads
from meshsplit.src.routing import (
    build_routing_policy,
    build_subset_policy,
    destination_rule_manifest,
    virtual_service_manifest,
)


class ManifestError(RuntimeError):
    """Raised when an input file cannot be read or parsed."""


def load_documents(paths: Iterable[Path]) -> list[dict[str, Any]]:
    docs: list[dict[str, Any]] = []
    for path in paths:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ManifestError(f"{path}: {exc.strerror or exc}") from exc
        try:
            docs.extend(doc for doc in yaml.safe_load_all(text) if isinstance(doc, dict))
        except yaml.YAMLError as exc:
            raise ManifestError(f"{path}: invalid YAML ({exc})") from exc
    return docs


def _in_namespace(doc: dict[str, Any], namespace: str) -> bool:
    metadata = doc.get("metadata") or {}
    return metadata.get("namespace", namespace) == namespace


def _string_labels(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    return {str(k): ("" if v is None else str(v)) for k, v in raw.items()}


def collect_workloads(docs: Iterable[dict[str, Any]], namespace: str) -> dict[str, dict[str, str]]:
    """Map Deployment name to pod template labels, as the controller snapshots them."""
    workloads: dict[str, dict[str, str]] = {}
    for doc in docs:
        if doc.get("kind") != "Deployment" or not _in_namespace(doc, namespace):
            continue
        metadata = doc.get("metadata") or {}
        name = metadata.get("name")
        if not name:
            continue
        template = ((doc.get("spec") or {}).get("template") or {}).get("metadata") or {}
        labels = template.get("labels")
        if not isinstance(labels, dict):
            labels = metadata.get("labels")
        workloads[name] = _string_labels(labels)
    return workloads


def collect_selectors(docs: Iterable[dict[str, Any]], namespace: str) -> dict[str, dict[str, str]]:
    selectors: dict[str, dict[str, str]] = {}
    for doc in docs:
        if doc.get("kind") != "Service" or not _in_namespace(doc, namespace):
            continue
        name = (doc.get("metadata") or {}).get("name")
        if name:
            selectors[name] = _string_labels((doc.get("spec") or {}).get("selector"))
    return selectors


def render_service(
    service: str,
    selector: dict[str, str],
    workloads: dict[str, dict[str, str]],
    config: ControllerConfig,
) -> list[dict[str, Any]]:
    """Return ``[DestinationRule, VirtualService]`` for *service*, or ``[]`` when nothing routes.

    An empty *selector* means a selectorless Service, which fronts no workloads.
    """
    if not selector:
        return []
    related = related_workloads(workloads, selector, config.env_label)
    if not related:
        return []
    env_values = distinct_environment_values(workloads, config.env_label)
    routing = build_routing_policy(
        service, config.namespace, env_values, related, config.header_key, config.separator
    )
    subsets = build_subset_policy(service, config.namespace, related, config.env_label)
    return [
        destination_rule_manifest(subsets, service, config.namespace, MANAGED_BY_LABELS),
        virtual_service_manifest(routing, service, config.namespace, MANAGED_BY_LABELS),
    ]


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render VirtualService and DestinationRule objects from workload manifests"
    )
    parser.add_argument("files", nargs="+", type=Path, help="YAML manifest files to read")
    parser.add_argument("--namespace", default="default", help="Namespace to render for")
    parser.add_argument(
        "--service",
        dest="services",
        action="append",
        help="Service to render (defaults to every Service found). Can be repeated.",
    )
    parser.add_argument("--env-label", default="virtual-env")
    parser.add_argument("--header", dest="header_key", default="x-virtual-env")
    parser.add_argument("--separator", default=".")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None, out: TextIO | None = None) -> int:
    args = _parse_args(argv)
    out = out or sys.stdout

    try:
        docs = load_documents(args.files)
    except ManifestError as exc:
        print(f"Failed to load manifests: {exc}", file=sys.stderr)
        return 1

    workloads = collect_workloads(docs, args.namespace)
    selectors = collect_selectors(docs, args.namespace)
    services = args.services or sorted(selectors)
    config = ControllerConfig(
        namespace=args.namespace,
        services=tuple(services),
        env_label=args.env_label,
        header_key=args.header_key,
        separator=args.separator,
    )

    errors: list[str] = []
    rendered: list[dict[str, Any]] = []
    for service in services:
        if service not in selectors:
            errors.append(f"Service {args.namespace}/{service} not found in input")
            continue
        if not selectors[service]:
            print(f"[{service}] has no pod selector; nothing to render", file=sys.stderr)
            continue
        objects = render_service(service, selectors[service], workloads, config)
        if not objects:
            print(
                f"[{service}] no workloads carry label {args.env_label}; nothing to render",
                file=sys.stderr,
            )
        rendered.extend(objects)

    if rendered:
        yaml.safe_dump_all(rendered, out, sort_keys=False)

    if errors:
        print("Rendering failed:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
