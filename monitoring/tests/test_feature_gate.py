from __future__ import annotations

import threading
from typing import Any

import pytest
from kubernetes.client import ApiException
from urllib3.exceptions import MaxRetryError, ProtocolError

from monitoring.src.feature_gate import (
    FeatureGateObserver,
    FeatureGateRejectedError,
    WaitCancelledError,
    WaitTimeoutError,
    condition_is_true,
    feature_gate_patch,
    is_single_worker_cluster,
    poll_until,
)
from monitoring.src.resources import ResourceKind
from monitoring.tests.fakes import FakeObjectStore

NAMESPACE = "kubevirt-hyperconverged"
HC_NAME = "kubevirt-hyperconverged"
MTQ_NAME = "mtq-kubevirt-hyperconverged"


class FakeClock:
    """Monotonic clock that advances by *step* on every read."""

    def __init__(self, step: float = 1.0) -> None:
        self.now = 0.0
        self.step = step

    def __call__(self) -> float:
        self.now += self.step
        return self.now


def node(name: str, worker: bool = True) -> dict[str, Any]:
    role = "worker" if worker else "master"
    labels = {f"node-role.kubernetes.io/{role}": ""}
    return {"metadata": {"name": name, "labels": labels}}


def hyperconverged(enabled: bool = False) -> dict[str, Any]:
    return {
        "metadata": {"name": HC_NAME, "namespace": NAMESPACE},
        "spec": {"featureGates": {"enableManagedTenantQuota": enabled}},
    }


def mtq(available: bool) -> dict[str, Any]:
    return {
        "metadata": {"name": MTQ_NAME},
        "status": {
            "conditions": [
                {"type": "Progressing", "status": "False"},
                {"type": "Available", "status": "True" if available else "False"},
            ]
        },
    }


def deployment(name: str, replicas: int, ready: int) -> dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "labels": {"app.kubernetes.io/component": "multi-tenant"},
        },
        "status": {"replicas": replicas, "readyReplicas": ready},
    }


def pod(name: str) -> dict[str, Any]:
    return {
        "metadata": {
            "name": name,
            "namespace": NAMESPACE,
            "labels": {"app.kubernetes.io/component": "multi-tenant"},
        }
    }


def make_store(workers: int = 3) -> FakeObjectStore:
    store = FakeObjectStore([(ResourceKind.HYPERCONVERGED, hyperconverged())])
    for index in range(workers):
        store.put(ResourceKind.NODE, node(f"worker-{index}"))
    store.put(ResourceKind.NODE, node("master-0", worker=False))
    return store


def make_observer(store: FakeObjectStore, **kwargs: Any) -> FeatureGateObserver:
    options: dict[str, Any] = {
        "timeout_seconds": 10,
        "interval_seconds": 0,
        "patch_timeout_seconds": 5,
        "patch_interval_seconds": 0,
        "expected_deployments": 0,
        "clock": FakeClock(),
    }
    options.update(kwargs)
    return FeatureGateObserver(store, HC_NAME, NAMESPACE, **options)


def install_tenant_quota(store: FakeObjectStore, kind: ResourceKind, name: str) -> None:
    gates = store.stored(ResourceKind.HYPERCONVERGED, HC_NAME, NAMESPACE)["spec"]["featureGates"]
    if gates["enableManagedTenantQuota"]:
        store.put(ResourceKind.MTQ, mtq(available=True))
        for index in range(3):
            store.put(ResourceKind.DEPLOYMENT, deployment(f"mtq-{index}", replicas=1, ready=1))
            store.put(ResourceKind.POD, pod(f"mtq-{index}-pod"))
    else:
        store.delete(ResourceKind.MTQ, MTQ_NAME)


class TestPollUntil:
    def test_returns_when_condition_holds(self) -> None:
        results = iter([False, False, True])

        elapsed = poll_until(
            lambda: next(results),
            description="thing",
            timeout_seconds=100,
            interval_seconds=0,
            clock=FakeClock(),
        )

        assert elapsed > 0

    def test_api_errors_are_retried(self) -> None:
        calls = {"count": 0}

        def condition() -> bool:
            calls["count"] += 1
            if calls["count"] < 3:
                raise ApiException(status=500, reason="boom")
            return True

        poll_until(
            condition,
            description="thing",
            timeout_seconds=100,
            interval_seconds=0,
            clock=FakeClock(),
        )

        assert calls["count"] == 3

    def test_transport_errors_are_retried(self) -> None:
        errors = iter(
            [
                MaxRetryError(None, "/apis/mtq", reason="connection refused"),
                ProtocolError("Connection aborted."),
            ]
        )

        def condition() -> bool:
            error = next(errors, None)
            if error is not None:
                raise error
            return True

        poll_until(
            condition,
            description="thing",
            timeout_seconds=100,
            interval_seconds=0,
            clock=FakeClock(),
        )

        assert next(errors, None) is None

    @pytest.mark.parametrize("error", [KeyError("broken"), ConnectionResetError("reset")])
    def test_other_errors_propagate(self, error: Exception) -> None:
        def condition() -> bool:
            raise error

        with pytest.raises(type(error)):
            poll_until(
                condition,
                description="thing",
                timeout_seconds=100,
                interval_seconds=0,
                clock=FakeClock(),
            )

    def test_timeout_names_the_condition(self) -> None:
        with pytest.raises(WaitTimeoutError) as exc_info:
            poll_until(
                lambda: False,
                description="the answer",
                timeout_seconds=5,
                interval_seconds=0,
                clock=FakeClock(),
            )

        assert exc_info.value.condition == "the answer"
        assert "the answer" in str(exc_info.value)
        assert exc_info.value.last_error is None

    def test_timeout_keeps_last_api_error(self) -> None:
        error = ApiException(status=503, reason="unavailable")

        def condition() -> bool:
            raise error

        with pytest.raises(WaitTimeoutError) as exc_info:
            poll_until(
                condition,
                description="x",
                timeout_seconds=3,
                interval_seconds=0,
                clock=FakeClock(),
            )

        assert exc_info.value.last_error is error

    def test_timeout_keeps_last_transport_error(self) -> None:
        error = ProtocolError("Connection aborted.")

        def condition() -> bool:
            raise error

        with pytest.raises(WaitTimeoutError) as exc_info:
            poll_until(
                condition,
                description="x",
                timeout_seconds=3,
                interval_seconds=0,
                clock=FakeClock(),
            )

        assert exc_info.value.last_error is error
        assert "Connection aborted." in str(exc_info.value)

    def test_stop_event_cancels(self) -> None:
        stop = threading.Event()
        stop.set()

        with pytest.raises(WaitCancelledError) as exc_info:
            poll_until(
                lambda: True,
                description="cancelled thing",
                timeout_seconds=100,
                interval_seconds=0,
                stop_event=stop,
            )

        assert "cancelled thing" in str(exc_info.value)

    def test_stop_event_interrupts_sleep(self) -> None:
        stop = threading.Event()
        timer = threading.Timer(0.05, stop.set)
        timer.start()
        try:
            with pytest.raises(WaitCancelledError):
                poll_until(
                    lambda: False,
                    description="slow thing",
                    timeout_seconds=60,
                    interval_seconds=30,
                    stop_event=stop,
                )
        finally:
            timer.cancel()


def test_feature_gate_patch_shape() -> None:
    assert feature_gate_patch(True) == [
        {"op": "replace", "path": "/spec/featureGates/enableManagedTenantQuota", "value": True}
    ]


def test_condition_is_true() -> None:
    assert condition_is_true(mtq(available=True), "Available")
    assert not condition_is_true(mtq(available=False), "Available")
    assert not condition_is_true({"status": {}}, "Available")


@pytest.mark.parametrize(("workers", "expected"), [(0, True), (1, True), (2, False), (3, False)])
def test_is_single_worker_cluster(workers: int, expected: bool) -> None:
    assert is_single_worker_cluster(make_store(workers=workers)) is expected


class TestSetFeatureGate:
    def test_enable_is_rejected_on_single_worker_cluster(self) -> None:
        store = make_store(workers=1)
        observer = make_observer(store)

        with pytest.raises(FeatureGateRejectedError) as exc_info:
            observer.set_feature_gate(True)

        assert "the EnableManagedTenantQuota feature gate" in str(exc_info.value)
        assert store.patches == []

    def test_disable_is_allowed_on_single_worker_cluster(self) -> None:
        store = make_store(workers=1)

        make_observer(store).set_feature_gate(False)

        assert store.patches == [(ResourceKind.HYPERCONVERGED, HC_NAME, feature_gate_patch(False))]

    def test_enable_waits_for_available_resource_and_workloads(self) -> None:
        store = make_store()
        store.on_patch = install_tenant_quota
        observer = make_observer(store, expected_deployments=3)

        observer.set_feature_gate(True)

        assert store.patches == [(ResourceKind.HYPERCONVERGED, HC_NAME, feature_gate_patch(True))]
        assert observer.is_enabled() is True

    def test_enable_waits_until_resource_reports_available(self) -> None:
        store = make_store()
        store.put(ResourceKind.MTQ, mtq(available=False))
        reads = {"count": 0}

        def flip_available(kind: ResourceKind, name: str) -> None:
            if kind is ResourceKind.MTQ:
                reads["count"] += 1
                if reads["count"] == 3:
                    store.put(ResourceKind.MTQ, mtq(available=True))
            return None

        store.get_error = flip_available

        make_observer(store).set_feature_gate(True)

        assert reads["count"] == 3

    def test_enable_times_out_when_resource_never_appears(self) -> None:
        store = make_store()
        observer = make_observer(store)

        with pytest.raises(WaitTimeoutError) as exc_info:
            observer.set_feature_gate(True)

        assert MTQ_NAME in str(exc_info.value)
        assert "Available" in exc_info.value.condition

    def test_enable_times_out_when_workloads_are_not_ready(self) -> None:
        store = make_store()
        store.put(ResourceKind.MTQ, mtq(available=True))
        store.put(ResourceKind.DEPLOYMENT, deployment("mtq-controller", replicas=2, ready=2))
        store.put(ResourceKind.DEPLOYMENT, deployment("mtq-lock-server", replicas=2, ready=1))
        store.put(ResourceKind.DEPLOYMENT, deployment("mtq-operator", replicas=1, ready=1))
        observer = make_observer(store, expected_deployments=3)

        with pytest.raises(WaitTimeoutError) as exc_info:
            observer.set_feature_gate(True)

        assert "multi-tenant deployments" in str(exc_info.value)

    def test_workloads_require_matching_pod_count(self) -> None:
        store = make_store()
        for index in range(3):
            store.put(ResourceKind.DEPLOYMENT, deployment(f"mtq-{index}", replicas=1, ready=1))
        store.put(ResourceKind.POD, pod("only-one"))
        observer = make_observer(store, expected_deployments=3)

        with pytest.raises(WaitTimeoutError):
            observer.wait_for_workloads()

        for index in range(2):
            store.put(ResourceKind.POD, pod(f"extra-{index}"))
        observer.wait_for_workloads()

    def test_disable_waits_for_removal(self) -> None:
        store = make_store()
        store.put(ResourceKind.MTQ, mtq(available=True))
        store.on_patch = install_tenant_quota

        make_observer(store).set_feature_gate(False)

        assert store.patches == [(ResourceKind.HYPERCONVERGED, HC_NAME, feature_gate_patch(False))]
        with pytest.raises(ApiException):
            store.get(ResourceKind.MTQ, MTQ_NAME)

    def test_disable_times_out_while_resource_remains(self) -> None:
        store = make_store()
        store.put(ResourceKind.MTQ, mtq(available=True))

        with pytest.raises(WaitTimeoutError) as exc_info:
            make_observer(store).set_feature_gate(False)

        assert "removed" in exc_info.value.condition

    def test_disable_retries_transient_read_errors(self) -> None:
        store = make_store()
        errors = iter([ApiException(status=500, reason="boom"), ApiException(status=429, reason="slow")])
        store.get_error = lambda kind, name: next(errors, None) if kind is ResourceKind.MTQ else None

        make_observer(store).set_feature_gate(False)

        assert next(errors, None) is None

    def test_disable_retries_connection_errors(self) -> None:
        store = make_store()
        store.on_patch = install_tenant_quota
        errors = iter([MaxRetryError(None, "/apis/mtq", reason="connection refused")])
        store.get_error = lambda kind, name: next(errors, None) if kind is ResourceKind.MTQ else None

        make_observer(store, timeout_seconds=2).set_feature_gate(False)

        assert next(errors, None) is None
        assert len(store.patches) == 1

    def test_patch_is_retried_on_connection_errors(self) -> None:
        store = make_store()
        errors = iter([ProtocolError("Connection aborted.")])
        store.patch_error = lambda: next(errors, None)

        make_observer(store).set_feature_gate(False)

        assert len(store.patches) == 1

    def test_patch_is_retried_on_transient_errors(self) -> None:
        store = make_store()
        errors = iter([ApiException(status=500, reason="boom")])
        store.patch_error = lambda: next(errors, None)

        make_observer(store).set_feature_gate(False)

        assert len(store.patches) == 1

    def test_admission_rejection_is_not_retried(self) -> None:
        store = make_store()
        store.patch_error = lambda: ApiException(status=400, reason="Bad Request")

        with pytest.raises(FeatureGateRejectedError) as exc_info:
            make_observer(store).set_feature_gate(True)

        assert "the EnableManagedTenantQuota feature gate" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ApiException)

    def test_wait_is_cancelled_by_stop_event(self) -> None:
        store = make_store()
        store.put(ResourceKind.MTQ, mtq(available=True))
        stop = threading.Event()
        stop.set()

        with pytest.raises(WaitCancelledError):
            make_observer(store, stop_event=stop).wait_for_removed()

    def test_is_enabled_reads_the_parent_spec(self) -> None:
        store = FakeObjectStore([(ResourceKind.HYPERCONVERGED, hyperconverged(enabled=True))])

        assert make_observer(store).is_enabled() is True

    def test_invalid_timeout_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            FeatureGateObserver(make_store(), HC_NAME, NAMESPACE, timeout_seconds=0)
