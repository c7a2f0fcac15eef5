from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from meshsplit.src.config import ControllerConfig
from meshsplit.src.diff import routing_policy_changed, subset_policy_changed
from meshsplit.src.kube import (
    DESTINATION_RULES,
    VIRTUAL_SERVICES,
    KubeObjectError,
    ObjectNotFoundError,
    create_istio_object,
    delete_istio_object,
    deployment_labels,
    get_istio_object,
    list_workload_labels,
    replace_istio_object,
    service_selector,
)
from meshsplit.src.labels import WorkloadLabelSet, distinct_environment_values, related_workloads
from meshsplit.src.metrics import METRICS
from meshsplit.src.routing import (
    build_routing_policy,
    build_subset_policy,
    destination_rule_manifest,
    routing_policy_from_spec,
    subset_policy_from_spec,
    virtual_service_manifest,
)

MANAGED_BY_LABELS = {"app.kubernetes.io/managed-by": "meshsplit"}


@dataclass(frozen=True)
class ReconcileResult:
    """Immutable record of one reconcile pass for a managed service.

    ``virtual_service`` and ``destination_rule`` hold the action taken on each
    object: ``created``, ``updated``, ``unchanged``, ``deleted`` or ``absent``
    (``unknown`` when the pass failed).
    """

    service: str
    outcome: str
    related_workloads: int
    routes: int
    virtual_service: str
    destination_rule: str


class VirtualEnvReconciler:
    """Keeps a VirtualService/DestinationRule pair in line with virtual-env labelled workloads.

    Each pass lists Deployments once, then for every managed Service derives
    the related workloads from the Service's selector, synthesizes the desired
    specs and writes an object only when the differ reports drift.  Services
    that disappear, or that have no labelled workloads left, get their routing
    objects removed.

    Between passes the controller watches Deployments and reconciles again
    whenever a Deployment that carries (or used to carry) the virtual-env
    label changes.  The watch timeout doubles as the periodic resync.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        custom_api: CustomObjectsApi,
        config: ControllerConfig,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.custom_api = custom_api
        self.config = config
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        # Deployments last seen with the virtual-env label.
        self._labelled: set[str] = set()
        self._status: dict[str, ReconcileResult] = {}
        self._status_lock = threading.Lock()

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def status_snapshot(self) -> dict[str, dict[str, Any]]:
        """Return the last result per service as plain dicts, for the ``/status`` endpoint."""
        with self._status_lock:
            return {service: asdict(result) for service, result in self._status.items()}

    def _record(self, result: ReconcileResult) -> None:
        with self._status_lock:
            self._status[result.service] = result
        METRICS.reconciles_total.labels(service=result.service, outcome=result.outcome).inc()

    def _apply(
        self,
        service: str,
        plural: str,
        kind: str,
        manifest: dict[str, Any],
        changed: Callable[[Any], bool],
    ) -> str:
        """Create *manifest*, replace it if *changed* reports drift, or leave it alone."""
        namespace = self.config.namespace
        name = manifest["metadata"]["name"]
        live = get_istio_object(self.custom_api, plural, namespace, name)
        if live is None:
            create_istio_object(self.custom_api, plural, namespace, manifest)
            action = "created"
        elif changed(live.get("spec")):
            resource_version = (live.get("metadata") or {}).get("resourceVersion")
            replace_istio_object(self.custom_api, plural, namespace, manifest, resource_version)
            action = "updated"
        else:
            self.logger.debug("%s %s/%s is up to date", kind, namespace, name)
            return "unchanged"

        METRICS.writes_total.labels(kind=kind, action=action).inc()
        self.logger.info(
            "%s %s %s/%s", action.capitalize(), kind, namespace, name, extra={"service": service}
        )
        return action

    def _remove(self, plural: str, kind: str, name: str) -> str:
        try:
            delete_istio_object(self.custom_api, plural, self.config.namespace, name)
        except ObjectNotFoundError:
            return "absent"
        METRICS.writes_total.labels(kind=kind, action="deleted").inc()
        self.logger.info("Deleted stale %s %s/%s", kind, self.config.namespace, name)
        return "deleted"

    def _cleanup(self, service: str) -> ReconcileResult:
        # Routes reference subsets, so the VirtualService goes first.
        vs_action = self._remove(VIRTUAL_SERVICES, "VirtualService", service)
        dr_action = self._remove(DESTINATION_RULES, "DestinationRule", service)
        METRICS.routes.labels(service=service).set(0)
        return ReconcileResult(
            service=service,
            outcome="cleaned",
            related_workloads=0,
            routes=0,
            virtual_service=vs_action,
            destination_rule=dr_action,
        )

    def reconcile_service(self, service: str, workloads: WorkloadLabelSet) -> ReconcileResult:
        """Run one reconcile pass for *service* against a workload label snapshot.

        Raises :class:`ApiException` or :class:`KubeObjectError` on API failures;
        :meth:`reconcile_all` turns those into an ``error`` result.
        """
        cfg = self.config
        selector = service_selector(self.core_api, cfg.namespace, service)
        if selector is None:
            self.logger.debug(
                "Service %s/%s not found; removing routing objects", cfg.namespace, service
            )
            return self._cleanup(service)
        if not selector:
            # A selectorless Service fronts no Deployments, however they are labelled.
            self.logger.info(
                "Service %s/%s has no pod selector; removing routing objects",
                cfg.namespace,
                service,
                extra={"service": service},
            )
            return self._cleanup(service)

        related = related_workloads(workloads, selector, cfg.env_label)
        if not related:
            self.logger.debug(
                "No workloads of %s/%s carry label %s; removing routing objects",
                cfg.namespace,
                service,
                cfg.env_label,
            )
            return self._cleanup(service)

        env_values = distinct_environment_values(workloads, cfg.env_label)
        routing = build_routing_policy(
            service, cfg.namespace, env_values, related, cfg.header_key, cfg.separator
        )
        subsets = build_subset_policy(service, cfg.namespace, related, cfg.env_label)

        # Subsets must exist before routes point at them.
        dr_action = self._apply(
            service,
            DESTINATION_RULES,
            "DestinationRule",
            destination_rule_manifest(subsets, service, cfg.namespace, MANAGED_BY_LABELS),
            lambda spec: subset_policy_changed(
                subset_policy_from_spec(spec), subsets, cfg.env_label
            ),
        )
        vs_action = self._apply(
            service,
            VIRTUAL_SERVICES,
            "VirtualService",
            virtual_service_manifest(routing, service, cfg.namespace, MANAGED_BY_LABELS),
            lambda spec: routing_policy_changed(
                routing_policy_from_spec(spec, cfg.header_key), routing, cfg.header_key
            ),
        )

        routes = len(routing.conditional_routes)
        METRICS.routes.labels(service=service).set(routes)
        return ReconcileResult(
            service=service,
            outcome="synced",
            related_workloads=len(related),
            routes=routes,
            virtual_service=vs_action,
            destination_rule=dr_action,
        )

    def reconcile_all(self, workloads: WorkloadLabelSet) -> list[ReconcileResult]:
        """Reconcile every managed service against one snapshot.

        A failure for one service is logged and recorded without stopping the
        others.  ``401`` / ``403`` are re-raised so the caller can stop.
        """
        results = []
        for service in self.config.services:
            started = self.clock()
            try:
                result = self.reconcile_service(service, workloads)
            except ApiException as exc:
                if exc.status in {401, 403}:
                    raise
                self.logger.exception(
                    "Reconcile of %s/%s failed",
                    self.config.namespace,
                    service,
                    extra={"service": service},
                )
                METRICS.errors_total.labels(service=service).inc()
                result = self._error_result(service)
            except KubeObjectError:
                self.logger.exception(
                    "Cleanup of %s/%s failed",
                    self.config.namespace,
                    service,
                    extra={"service": service},
                )
                METRICS.errors_total.labels(service=service).inc()
                result = self._error_result(service)
            finally:
                METRICS.reconcile_duration_seconds.observe(max(0.0, self.clock() - started))
            self._record(result)
            results.append(result)
        return results

    @staticmethod
    def _error_result(service: str) -> ReconcileResult:
        return ReconcileResult(
            service=service,
            outcome="error",
            related_workloads=0,
            routes=0,
            virtual_service="unknown",
            destination_rule="unknown",
        )

    def resync(self) -> str | None:
        """List Deployments once, reconcile every service, and return the list's resourceVersion."""
        workloads, resource_version = list_workload_labels(self.apps_api, self.config.namespace)
        self._labelled = {
            name for name, labels in workloads.items() if self.config.env_label in labels
        }
        self.reconcile_all(workloads)
        return resource_version

    def is_relevant_event(self, event_type: str, deployment: Any) -> bool:
        """Return True if a Deployment event can change the desired routing.

        That is the case when the Deployment carries the virtual-env label now,
        or carried it the last time it was seen.
        """
        name = getattr(getattr(deployment, "metadata", None), "name", None)
        if not name:
            return False
        was_labelled = name in self._labelled
        if event_type == "DELETED":
            self._labelled.discard(name)
            return was_labelled

        is_labelled = self.config.env_label in deployment_labels(deployment)
        if is_labelled:
            self._labelled.add(name)
        else:
            self._labelled.discard(name)
        return is_labelled or was_labelled

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _access_denied(self, exc: ApiException, phase: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            exc.status,
        )
        self.ready.clear()

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Main control loop: resync, then watch Deployments until shutdown.

        1. Retries the initial resync with jittered exponential backoff so
           transient API startup failures do not crash-loop the controller.
        2. Opens a Deployment watch from the initial list's ``resourceVersion``
           with ``timeout_seconds`` set to the resync period.
        3. Reconciles after every relevant event and again whenever the
           stream times out.
        4. On ``410 Gone`` resyncs and resumes from the fresh version.
        5. Other errors back off with jitter, capped at 30 s.

        ``401`` / ``403`` responses end the loop at once; retrying cannot fix RBAC.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self.resync()
                self.ready.set()
                self.logger.info("Starting watch from resourceVersion %s", resource_version)
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(exc, "initial resync")
                    return
                self.logger.exception("Initial resync failed")
                METRICS.watch_errors_total.inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.apps_api.list_namespaced_deployment,
                    namespace=self.config.namespace,
                    resource_version=resource_version,
                    timeout_seconds=self.config.resync_seconds,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    metadata = getattr(obj, "metadata", None)
                    if metadata and metadata.resource_version:
                        resource_version = metadata.resource_version

                    event_type = str(event.get("type", ""))
                    if self.is_relevant_event(event_type, obj):
                        self.logger.debug(
                            "%s event for deployment %s; reconciling", event_type, metadata.name
                        )
                        self.resync()

                if not self._should_stop(stop):
                    self.resync()
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("Watch resource version expired, resyncing")
                    try:
                        resource_version = self.resync()
                    except ApiException as resync_exc:
                        if resync_exc.status in {401, 403}:
                            self._access_denied(resync_exc, "410 resync")
                            return
                        self.logger.exception("Failed to resync after 410")
                        METRICS.watch_errors_total.inc()
                        resource_version = None
                    continue
                if exc.status in {401, 403}:
                    METRICS.watch_errors_total.inc()
                    self._access_denied(exc, "watch")
                    return

                self.logger.exception("Kubernetes API watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error")
                METRICS.watch_errors_total.inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()


def build_reconciler(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    custom_api: CustomObjectsApi,
    config: ControllerConfig,
) -> VirtualEnvReconciler:
    """Construct a :class:`VirtualEnvReconciler` and log the settings it runs with."""
    logging.getLogger(__name__).info(
        "Managing services %s in namespace %s (label=%s header=%s separator=%r)",
        ", ".join(config.services),
        config.namespace,
        config.env_label,
        config.header_key,
        config.separator,
    )
    return VirtualEnvReconciler(
        core_api=core_api, apps_api=apps_api, custom_api=custom_api, config=config
    )

