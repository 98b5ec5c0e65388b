from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from typing import Any

from kubernetes.client import ApiException
from urllib3.exceptions import HTTPError

from monitoring.src.kube import ObjectStore, is_not_found
from monitoring.src.metrics import METRICS
from monitoring.src.resources import ResourceKind

LOGGER = logging.getLogger(__name__)

FEATURE_GATE_NAME = "EnableManagedTenantQuota"
FEATURE_GATE_FIELD = "enableManagedTenantQuota"
FEATURE_GATE_PATH = f"/spec/featureGates/{FEATURE_GATE_FIELD}"
MTQ_NAME_PREFIX = "mtq"
WORKER_NODE_SELECTOR = "node-role.kubernetes.io/worker"
MULTI_TENANT_SELECTOR = "app.kubernetes.io/component=multi-tenant"
CONDITION_AVAILABLE = "Available"

# Admission failures; retrying the same patch cannot succeed.
_REJECTION_STATUSES = frozenset({400, 403, 422})

# Errors a poll treats as "not yet": API responses and transport failures.
_RETRYABLE_ERRORS = (ApiException, HTTPError)


class FeatureGateRejectedError(ValueError):
    """Raised when a feature gate change is not allowed on this cluster."""


class WaitTimeoutError(TimeoutError):
    """Raised when a polled condition is not observed before the deadline."""

    def __init__(
        self, condition: str, timeout_seconds: float, last_error: BaseException | None = None
    ) -> None:
        message = f"timed out after {timeout_seconds:g}s waiting for {condition}"
        if last_error is not None:
            message = f"{message} (last error: {last_error})"
        super().__init__(message)
        self.condition = condition
        self.timeout_seconds = timeout_seconds
        self.last_error = last_error


class WaitCancelledError(RuntimeError):
    """Raised when the stop event fires while waiting for a condition."""

    def __init__(self, condition: str) -> None:
        super().__init__(f"cancelled while waiting for {condition}")
        self.condition = condition


def poll_until(
    condition: Callable[[], bool],
    *,
    description: str,
    timeout_seconds: float,
    interval_seconds: float,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    logger: logging.Logger | None = None,
) -> float:
    """Call *condition* every *interval_seconds* until it returns True.

    ``ApiException`` or a urllib3 transport error raised by *condition* counts
    as "not yet" and is retried; any other exception propagates. Returns the
    elapsed seconds. Raises :class:`WaitTimeoutError` once *timeout_seconds*
    have passed and :class:`WaitCancelledError` as soon as *stop_event* is set.
    """
    log = logger or LOGGER
    stop = stop_event or threading.Event()
    started = clock()
    deadline = started + timeout_seconds
    last_error: BaseException | None = None

    while True:
        if stop.is_set():
            raise WaitCancelledError(description)
        try:
            if condition():
                return clock() - started
        except _RETRYABLE_ERRORS as exc:
            last_error = exc
            log.debug("Retrying %s after error: %s", description, exc)

        now = clock()
        if now >= deadline:
            raise WaitTimeoutError(description, timeout_seconds, last_error)
        if stop.wait(timeout=min(interval_seconds, deadline - now)):
            raise WaitCancelledError(description)


def feature_gate_patch(enable: bool) -> list[dict[str, Any]]:
    return [{"op": "replace", "path": FEATURE_GATE_PATH, "value": enable}]


def is_single_worker_cluster(store: ObjectStore) -> bool:
    """Return True when the cluster has at most one schedulable worker node."""
    workers = store.list(ResourceKind.NODE, label_selector=WORKER_NODE_SELECTOR)
    return len(workers) <= 1


def condition_is_true(obj: Mapping[str, Any], condition_type: str) -> bool:
    status = obj.get("status") or {}
    for condition in status.get("conditions") or []:
        if condition.get("type") == condition_type:
            return str(condition.get("status")) == "True"
    return False


class FeatureGateObserver:
    """Toggles the managed tenant quota feature gate and waits for the outcome.

    The tenant quota resource itself is created and deleted by another
    controller once the gate on the HyperConverged resource flips; this class
    only patches the gate and polls the store until the resource (and, when
    enabling, its workloads) reached the expected state.
    """

    def __init__(
        self,
        store: ObjectStore,
        hc_name: str,
        hc_namespace: str,
        *,
        timeout_seconds: float = 300.0,
        interval_seconds: float = 1.0,
        patch_timeout_seconds: float = 10.0,
        patch_interval_seconds: float = 0.1,
        expected_deployments: int = 3,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must be >= 0")
        self.store = store
        self.hc_name = hc_name
        self.hc_namespace = hc_namespace
        self.timeout_seconds = timeout_seconds
        self.interval_seconds = interval_seconds
        self.patch_timeout_seconds = patch_timeout_seconds
        self.patch_interval_seconds = patch_interval_seconds
        self.expected_deployments = expected_deployments
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.logger = logger or LOGGER

    @property
    def resource_name(self) -> str:
        return f"{MTQ_NAME_PREFIX}-{self.hc_name}"

    def _poll(
        self,
        condition: Callable[[], bool],
        description: str,
        timeout: float,
        interval: float,
        metric_label: str,
    ) -> None:
        elapsed = poll_until(
            condition,
            description=description,
            timeout_seconds=timeout,
            interval_seconds=interval,
            stop_event=self.stop_event,
            clock=self.clock,
            logger=self.logger,
        )
        METRICS.feature_gate_wait_seconds.labels(condition=metric_label).observe(elapsed)

    def is_enabled(self) -> bool:
        hyperconverged = self.store.get(ResourceKind.HYPERCONVERGED, self.hc_name, self.hc_namespace)
        gates = (hyperconverged.get("spec") or {}).get("featureGates") or {}
        return bool(gates.get(FEATURE_GATE_FIELD, False))

    def set_feature_gate(self, enable: bool) -> None:
        """Patch the gate and block until the tenant quota resource follows.

        Enabling is refused up front on single worker clusters; no patch is
        sent in that case.
        """
        if enable and is_single_worker_cluster(self.store):
            raise FeatureGateRejectedError(
                f"the {FEATURE_GATE_NAME} feature gate is not supported on a single worker cluster"
            )

        self._apply_patch(enable)
        if enable:
            self.wait_for_available()
            if self.expected_deployments > 0:
                self.wait_for_workloads()
        else:
            self.wait_for_removed()

    def _apply_patch(self, enable: bool) -> None:
        operations = feature_gate_patch(enable)

        def _patched() -> bool:
            try:
                self.store.patch(
                    ResourceKind.HYPERCONVERGED, self.hc_name, operations, namespace=self.hc_namespace
                )
            except ApiException as exc:
                if exc.status in _REJECTION_STATUSES:
                    raise FeatureGateRejectedError(
                        f"the {FEATURE_GATE_NAME} feature gate change was rejected: "
                        f"{exc.body or exc.reason}"
                    ) from exc
                raise
            return True

        self._poll(
            _patched,
            f"{FEATURE_GATE_NAME}={str(enable).lower()} patch",
            self.patch_timeout_seconds,
            self.patch_interval_seconds,
            "patch",
        )
        self.logger.info("Set the %s feature gate to %s", FEATURE_GATE_NAME, enable)

    def _resource_available(self) -> bool:
        try:
            resource = self.store.get(ResourceKind.MTQ, self.resource_name)
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise
        return condition_is_true(resource, CONDITION_AVAILABLE)

    def _resource_removed(self) -> bool:
        try:
            self.store.get(ResourceKind.MTQ, self.resource_name)
        except ApiException as exc:
            if is_not_found(exc):
                return True
            raise
        return False

    def _workloads_ready(self) -> bool:
        deployments = self.store.list(
            ResourceKind.DEPLOYMENT, namespace=self.hc_namespace, label_selector=MULTI_TENANT_SELECTOR
        )
        if len(deployments) != self.expected_deployments:
            return False

        expected_pods = 0
        for deployment in deployments:
            status = deployment.get("status") or {}
            replicas = status.get("replicas") or 0
            if (status.get("readyReplicas") or 0) != replicas:
                return False
            expected_pods += replicas

        pods = self.store.list(
            ResourceKind.POD, namespace=self.hc_namespace, label_selector=MULTI_TENANT_SELECTOR
        )
        return len(pods) == expected_pods

    def wait_for_available(self) -> None:
        self._poll(
            self._resource_available,
            f"MTQ {self.resource_name} to report {CONDITION_AVAILABLE}",
            self.timeout_seconds,
            self.interval_seconds,
            "available",
        )

    def wait_for_removed(self) -> None:
        self._poll(
            self._resource_removed,
            f"MTQ {self.resource_name} to be removed",
            self.timeout_seconds,
            self.interval_seconds,
            "removed",
        )

    def wait_for_workloads(self) -> None:
        self._poll(
            self._workloads_ready,
            f"{self.expected_deployments} ready multi-tenant deployments",
            self.timeout_seconds,
            self.interval_seconds,
            "workloads",
        )
