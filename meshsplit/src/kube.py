from __future__ import annotations

import functools
import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from meshsplit.src.routing import ISTIO_GROUP, ISTIO_VERSION

LOGGER = logging.getLogger(__name__)

VIRTUAL_SERVICES = "virtualservices"
DESTINATION_RULES = "destinationrules"


class KubeObjectError(RuntimeError):
    """Base class for failures of the fetch-then-delete helper."""

    def __init__(self, namespace: str, name: str, message: str) -> None:
        super().__init__(f"{namespace}/{name}: {message}")
        self.namespace = namespace
        self.name = name


class ObjectNotFoundError(KubeObjectError):
    """The object did not exist when it was fetched."""


class DeleteFailedError(KubeObjectError):
    """The API server rejected the delete call."""


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, CustomObjectsApi]:
    """Return CoreV1, AppsV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.CustomObjectsApi()


def delete_object(
    fetch: Callable[..., Any],
    delete: Callable[..., Any],
    namespace: str,
    name: str,
) -> None:
    """Fetch ``namespace/name`` with *fetch*, then remove it with *delete*.

    Raises :class:`ObjectNotFoundError` when the fetch returns 404 and
    :class:`DeleteFailedError` when the delete call fails.  Other fetch
    errors propagate as :class:`ApiException`.  No retries happen here.
    """
    try:
        fetch(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            raise ObjectNotFoundError(namespace, name, "not found") from exc
        raise
    try:
        delete(name=name, namespace=namespace)
    except ApiException as exc:
        raise DeleteFailedError(namespace, name, f"delete rejected ({exc.status})") from exc


def delete_istio_object(
    custom_api: CustomObjectsApi, plural: str, namespace: str, name: str
) -> None:
    """Fetch-then-delete an Istio ``virtualservices`` or ``destinationrules`` object."""
    fetch = functools.partial(
        custom_api.get_namespaced_custom_object,
        group=ISTIO_GROUP,
        version=ISTIO_VERSION,
        plural=plural,
    )
    delete = functools.partial(
        custom_api.delete_namespaced_custom_object,
        group=ISTIO_GROUP,
        version=ISTIO_VERSION,
        plural=plural,
    )
    delete_object(fetch, delete, namespace=namespace, name=name)


def get_istio_object(
    custom_api: CustomObjectsApi, plural: str, namespace: str, name: str
) -> dict[str, Any] | None:
    """Return the live object as a dict, or ``None`` when it does not exist."""
    try:
        return custom_api.get_namespaced_custom_object(
            group=ISTIO_GROUP,
            version=ISTIO_VERSION,
            namespace=namespace,
            plural=plural,
            name=name,
        )
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise


def create_istio_object(
    custom_api: CustomObjectsApi, plural: str, namespace: str, body: dict[str, Any]
) -> None:
    custom_api.create_namespaced_custom_object(
        group=ISTIO_GROUP,
        version=ISTIO_VERSION,
        namespace=namespace,
        plural=plural,
        body=body,
    )


def replace_istio_object(
    custom_api: CustomObjectsApi,
    plural: str,
    namespace: str,
    body: dict[str, Any],
    resource_version: str | None,
) -> None:
    """Replace a live object, carrying over its ``resourceVersion`` for optimistic concurrency."""
    if resource_version:
        body = {**body, "metadata": {**body["metadata"], "resourceVersion": resource_version}}
    custom_api.replace_namespaced_custom_object(
        group=ISTIO_GROUP,
        version=ISTIO_VERSION,
        namespace=namespace,
        plural=plural,
        name=body["metadata"]["name"],
        body=body,
    )


def service_selector(core_api: CoreV1Api, namespace: str, name: str) -> dict[str, str] | None:
    """Return the pod selector of a Service, or ``None`` when the Service is gone.

    A selectorless Service (for example one backed by manual Endpoints) yields
    ``{}``; callers must not treat that as "match every workload".
    """
    try:
        service = core_api.read_namespaced_service(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            return None
        raise
    selector = getattr(getattr(service, "spec", None), "selector", None)
    return dict(selector) if isinstance(selector, dict) else {}


def list_workload_labels(
    apps_api: AppsV1Api, namespace: str
) -> tuple[dict[str, dict[str, str]], str | None]:
    """Snapshot ``deployment name -> pod template labels`` for every Deployment in *namespace*.

    Pod template labels are used because DestinationRule subsets select pods.
    Deployments without template labels fall back to their own labels.  The
    list's ``resourceVersion`` is returned alongside so a watch can resume
    from it.
    """
    deployments = apps_api.list_namespaced_deployment(namespace=namespace)
    workloads: dict[str, dict[str, str]] = {}
    for deployment in deployments.items or []:
        name = getattr(getattr(deployment, "metadata", None), "name", None)
        if name:
            workloads[name] = deployment_labels(deployment)
    resource_version = getattr(getattr(deployments, "metadata", None), "resource_version", None)
    return workloads, resource_version


def deployment_labels(deployment: Any) -> dict[str, str]:
    """Return a Deployment's pod template labels (or its own labels) as ``dict[str, str]``."""
    metadata = getattr(deployment, "metadata", None)
    template = getattr(getattr(deployment, "spec", None), "template", None)
    labels = getattr(getattr(template, "metadata", None), "labels", None)
    if not isinstance(labels, dict):
        labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return {k: ("" if v is None else str(v)) for k, v in labels.items() if isinstance(k, str)}
