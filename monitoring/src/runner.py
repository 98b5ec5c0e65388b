from __future__ import annotations

import logging
import random
import threading
from typing import Any

from kubernetes.client import ApiException

from monitoring.src.config import OperatorConfig
from monitoring.src.events import EVENT_TYPE_WARNING, EventSink
from monitoring.src.feature_gate import FeatureGateObserver
from monitoring.src.kube import ObjectStore, is_not_found
from monitoring.src.metrics import METRICS
from monitoring.src.reconciler import MonitoringReconciler, ReconcileRequest
from monitoring.src.resources import ParentReference, ResourceKind, build_descriptors


def resolve_parent(store: ObjectStore, config: OperatorConfig) -> ParentReference:
    """Read the operator Deployment once and freeze it as the owner of all resources."""
    deployment = store.get(ResourceKind.DEPLOYMENT, config.operator_deployment, config.namespace)
    return ParentReference.from_object(deployment)


class MonitoringOperator:
    """Drives the monitoring reconciler on a fixed resync period.

    Every pass reconciles the managed resources and then projects them into
    ``status.relatedObjects`` of the HyperConverged resource, persisting the
    status only when it changed. A failed pass is retried from the top with
    exponential backoff and jitter (1 s doubling to 30 s); the algorithm is
    idempotent so re-running it is always safe.

    The feature gate, when configured, is applied once on a separate thread
    because waiting for the tenant quota resource can take minutes.
    """

    def __init__(
        self,
        store: ObjectStore,
        reconciler: MonitoringReconciler,
        events: EventSink,
        config: OperatorConfig,
        feature_gate: FeatureGateObserver | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.events = events
        self.config = config
        self.feature_gate = feature_gate
        self.logger = logger or logging.getLogger(__name__)
        self.ready = threading.Event()
        self._feature_gate_thread: threading.Thread | None = None

    def _read_hyperconverged(self) -> dict[str, Any] | None:
        try:
            return self.store.get(
                ResourceKind.HYPERCONVERGED, self.config.hc_name, self.config.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def run_once(self) -> ReconcileRequest | None:
        """Run one full pass. Store errors propagate unchanged."""
        self.reconciler.reconcile()

        hyperconverged = self._read_hyperconverged()
        if hyperconverged is None:
            self.logger.info(
                "HyperConverged %s/%s not found; skipping related objects status",
                self.config.namespace,
                self.config.hc_name,
            )
            return None

        request = ReconcileRequest(instance=hyperconverged)
        self.reconciler.update_related_objects(request)
        if request.status_dirty:
            self.store.update_status(ResourceKind.HYPERCONVERGED, request.instance)
            METRICS.status_updates_total.inc()
        return request

    def apply_feature_gate(self) -> None:
        desired = self.config.enable_tenant_quota
        if self.feature_gate is None or desired is None:
            return
        if self.feature_gate.is_enabled() == desired:
            self.logger.info("Managed tenant quota feature gate already %s", desired)
            return
        self.feature_gate.set_feature_gate(desired)

    def _apply_feature_gate_logged(self) -> None:
        try:
            self.apply_feature_gate()
        except Exception:
            self.logger.exception("Failed to apply the managed tenant quota feature gate")

    def start_feature_gate(self) -> threading.Thread | None:
        if self.feature_gate is None or self.config.enable_tenant_quota is None:
            return None
        thread = threading.Thread(target=self._apply_feature_gate_logged, daemon=True)
        thread.start()
        self._feature_gate_thread = thread
        return thread

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Resync loop until *shutdown_event* is set.

        ``401`` / ``403`` responses are treated as RBAC misconfiguration and
        stop the loop instead of retrying forever.
        """
        stop = shutdown_event or threading.Event()
        if self.feature_gate is not None:
            self.feature_gate.stop_event = stop
        self.start_feature_gate()

        backoff_seconds = 1
        while not stop.is_set():
            try:
                self.run_once()
            except ApiException as exc:
                METRICS.reconcile_passes_total.labels(result="error").inc()
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied during reconcile (status=%s). "
                        "Check operator RBAC and service account permissions.",
                        exc.status,
                    )
                    self.ready.clear()
                    return
                self.logger.exception("Monitoring reconcile pass failed")
                self.events.emit(
                    EVENT_TYPE_WARNING,
                    "ReconcileError",
                    f"Monitoring reconcile failed: {exc.reason}",
                )
            except Exception as exc:
                METRICS.reconcile_passes_total.labels(result="error").inc()
                self.logger.exception("Unexpected error during monitoring reconcile pass")
                self.events.emit(
                    EVENT_TYPE_WARNING, "ReconcileError", f"Monitoring reconcile failed: {exc}"
                )
            else:
                METRICS.reconcile_passes_total.labels(result="success").inc()
                METRICS.last_success_timestamp_seconds.set_to_current_time()
                self.ready.set()
                backoff_seconds = 1
                stop.wait(timeout=self.config.resync_seconds)
                continue

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)

        self.ready.clear()


def build_operator(
    config: OperatorConfig,
    store: ObjectStore,
    events: EventSink,
    parent: ParentReference,
) -> MonitoringOperator:
    reconciler = MonitoringReconciler(
        store=store,
        events=events,
        parent=parent,
        descriptors=build_descriptors(config.monitoring_settings()),
    )
    feature_gate = FeatureGateObserver(
        store,
        hc_name=config.hc_name,
        hc_namespace=config.namespace,
        timeout_seconds=config.feature_gate_timeout_seconds,
        interval_seconds=config.feature_gate_poll_seconds,
    )
    return MonitoringOperator(
        store=store,
        reconciler=reconciler,
        events=events,
        config=config,
        feature_gate=feature_gate,
    )
