from __future__ import annotations

import copy
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import Any


class ResourceKind(str, Enum):
    """Closed set of object kinds the operator reads or writes.

    The first five members are the managed monitoring resources; the rest are
    only read (or patched) through the object store.
    """

    PROMETHEUS_RULE = "PrometheusRule"
    ROLE = "Role"
    ROLE_BINDING = "RoleBinding"
    SERVICE = "Service"
    SERVICE_MONITOR = "ServiceMonitor"
    DEPLOYMENT = "Deployment"
    POD = "Pod"
    NODE = "Node"
    HYPERCONVERGED = "HyperConverged"
    MTQ = "MTQ"

    @property
    def api_version(self) -> str:
        return _API_VERSIONS[self]


_API_VERSIONS: dict[ResourceKind, str] = {
    ResourceKind.PROMETHEUS_RULE: "monitoring.coreos.com/v1",
    ResourceKind.ROLE: "rbac.authorization.k8s.io/v1",
    ResourceKind.ROLE_BINDING: "rbac.authorization.k8s.io/v1",
    ResourceKind.SERVICE: "v1",
    ResourceKind.SERVICE_MONITOR: "monitoring.coreos.com/v1",
    ResourceKind.DEPLOYMENT: "apps/v1",
    ResourceKind.POD: "v1",
    ResourceKind.NODE: "v1",
    ResourceKind.HYPERCONVERGED: "hco.kubevirt.io/v1beta1",
    ResourceKind.MTQ: "mtq.kubevirt.io/v1alpha1",
}

APP_LABEL = "app"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
VERSION_LABEL = "app.kubernetes.io/version"
PART_OF_LABEL = "app.kubernetes.io/part-of"
COMPONENT_LABEL = "app.kubernetes.io/component"

PART_OF_VALUE = "hyperconverged-cluster"
MONITORING_COMPONENT = "monitoring"
RUNBOOK_URL_PREFIX = "https://kubevirt.io/monitoring/runbooks/"


@dataclass(frozen=True)
class ParentReference:
    """Identity of the object every managed resource is owned by.

    The operator Deployment plays this role, so garbage collection removes
    the monitoring resources together with the operator.
    """

    name: str
    namespace: str
    uid: str
    kind: str = "Deployment"
    api_version: str = "apps/v1"

    @classmethod
    def from_object(
        cls,
        obj: Mapping[str, Any],
        *,
        kind: str = "Deployment",
        api_version: str = "apps/v1",
    ) -> ParentReference:
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            uid=metadata["uid"],
            kind=obj.get("kind") or kind,
            api_version=obj.get("apiVersion") or api_version,
        )

    def owner_reference(self) -> dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": False,
            "blockOwnerDeletion": False,
        }


@dataclass(frozen=True)
class MonitoringSettings:
    """Names, ports and namespaces the desired monitoring resources are built from."""

    namespace: str
    hc_name: str = "kubevirt-hyperconverged"
    operator_name: str = "hyperconverged-cluster-operator"
    operator_version: str = "unknown"
    managed_by: str = "hco-operator"
    monitoring_namespace: str = "openshift-monitoring"
    metrics_port: int = 8383
    port_name: str = "http-metrics"
    rule_name: str = "kubevirt-hyperconverged-prometheus-rule"
    role_name: str = "hco-operator-metrics"
    service_name: str = "kubevirt-hyperconverged-operator-metrics"
    prometheus_service_account: str = "prometheus-k8s"


def canonical_labels(settings: MonitoringSettings) -> dict[str, str]:
    """Return the identifying label set every managed resource must carry."""
    return {
        APP_LABEL: settings.hc_name,
        MANAGED_BY_LABEL: settings.managed_by,
        VERSION_LABEL: settings.operator_version,
        PART_OF_LABEL: PART_OF_VALUE,
        COMPONENT_LABEL: MONITORING_COMPONENT,
    }


def _object_meta(
    settings: MonitoringSettings, name: str, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "name": name,
        "namespace": settings.namespace,
        "labels": canonical_labels(settings),
        "ownerReferences": [dict(owner_ref)],
    }


def _alert(
    name: str,
    expr: str,
    description: str,
    summary: str,
    severity: str,
    health_impact: str,
    duration: str | None = None,
) -> dict[str, Any]:
    rule: dict[str, Any] = {"alert": name, "expr": expr}
    if duration is not None:
        rule["for"] = duration
    rule["annotations"] = {
        "description": description,
        "summary": summary,
        "runbook_url": RUNBOOK_URL_PREFIX + name,
    }
    rule["labels"] = {
        "severity": severity,
        "operator_health_impact": health_impact,
        "kubernetes_operator_part_of": "kubevirt",
        "kubernetes_operator_component": "hyperconverged-cluster-operator",
    }
    return rule


def prometheus_rule_spec(settings: MonitoringSettings) -> dict[str, Any]:
    """Return the alerting rule group shipped with the operator."""
    rules = [
        _alert(
            "KubeVirtCRModified",
            "sum by(component_name) ((round(increase(kubevirt_hco_out_of_band_modifications_total[10m]))>0 "
            "and kubevirt_hco_out_of_band_modifications_total offset 10m) or "
            "(kubevirt_hco_out_of_band_modifications_total != 0 unless "
            "kubevirt_hco_out_of_band_modifications_total offset 10m))",
            "Out-of-band modification for {{ $labels.component_name }}.",
            "{{ $value }} out-of-band CR modifications were detected in the last 10 minutes.",
            "warning",
            "warning",
        ),
        _alert(
            "UnsupportedHCOModification",
            "sum by(annotation_name) ((kubevirt_hco_unsafe_modifications)>0)",
            "Unsafe modification for the {{ $labels.annotation_name }} annotation in the "
            "HyperConverged resource.",
            "Unsafe modifications were detected in the HyperConverged resource.",
            "info",
            "none",
        ),
        _alert(
            "HCOInstallationIncomplete",
            "kubevirt_hco_hyperconverged_cr_exists == 0",
            "the installation was not completed; the HyperConverged custom resource is "
            "missing. In order to complete the installation of the Hyperconverged Cluster "
            "Operator you should create the HyperConverged custom resource.",
            "the installation was not completed; to complete the installation, create a "
            "HyperConverged custom resource.",
            "info",
            "none",
            duration="1h",
        ),
        _alert(
            "HCOOperatorDown",
            f'sum(up{{namespace="{settings.namespace}", pod=~"hco-operator-.*"}} or vector(0)) == 0',
            "The HyperConverged Cluster Operator is down or cannot be scraped.",
            "The HyperConverged Cluster Operator has been down for more than 5 minutes.",
            "critical",
            "critical",
            duration="5m",
        ),
        {
            "record": "kubevirt_hyperconverged_operator_health_status",
            "expr": (
                "label_replace(vector(2) and on() ((kubevirt_hco_system_health_status>1) or "
                '(count(ALERTS{kubernetes_operator_part_of="kubevirt", alertstate="firing", '
                'operator_health_impact="critical"})>0)) or (vector(1) and on() '
                "((kubevirt_hco_system_health_status==1) or "
                '(count(ALERTS{kubernetes_operator_part_of="kubevirt", alertstate="firing", '
                'operator_health_impact="warning"})>0))) or vector(0),'
                f'"name","{settings.hc_name}","","")'
            ),
        },
    ]
    return {"groups": [{"name": "kubevirt.hyperconverged.rules", "rules": rules}]}


def build_prometheus_rule(
    settings: MonitoringSettings, parent: ParentReference, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": ResourceKind.PROMETHEUS_RULE.api_version,
        "kind": ResourceKind.PROMETHEUS_RULE.value,
        "metadata": _object_meta(settings, settings.rule_name, owner_ref),
        "spec": prometheus_rule_spec(settings),
    }


def build_role(
    settings: MonitoringSettings, parent: ParentReference, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": ResourceKind.ROLE.api_version,
        "kind": ResourceKind.ROLE.value,
        "metadata": _object_meta(settings, settings.role_name, owner_ref),
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["services", "endpoints", "pods"],
                "verbs": ["get", "list", "watch"],
            }
        ],
    }


def build_role_binding(
    settings: MonitoringSettings, parent: ParentReference, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": ResourceKind.ROLE_BINDING.api_version,
        "kind": ResourceKind.ROLE_BINDING.value,
        "metadata": _object_meta(settings, settings.role_name, owner_ref),
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": ResourceKind.ROLE.value,
            "name": settings.role_name,
        },
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": settings.prometheus_service_account,
                "namespace": settings.monitoring_namespace,
            }
        ],
    }


def build_service(
    settings: MonitoringSettings, parent: ParentReference, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": ResourceKind.SERVICE.api_version,
        "kind": ResourceKind.SERVICE.value,
        "metadata": _object_meta(settings, settings.service_name, owner_ref),
        "spec": {
            "ports": [
                {
                    "name": settings.port_name,
                    "port": settings.metrics_port,
                    "protocol": "TCP",
                    "targetPort": settings.metrics_port,
                }
            ],
            "selector": {"name": settings.operator_name},
        },
    }


def build_service_monitor(
    settings: MonitoringSettings, parent: ParentReference, owner_ref: Mapping[str, Any]
) -> dict[str, Any]:
    return {
        "apiVersion": ResourceKind.SERVICE_MONITOR.api_version,
        "kind": ResourceKind.SERVICE_MONITOR.value,
        "metadata": _object_meta(settings, settings.service_name, owner_ref),
        "spec": {
            "selector": {"matchLabels": canonical_labels(settings)},
            "endpoints": [{"port": settings.port_name}],
        },
    }


Builder = Callable[[ParentReference, Mapping[str, Any]], dict[str, Any]]

# Per kind: desired-state builder and the payload paths owned by the operator.
# Service only owns ports and selector; the API server defaults the rest of its spec.
_KIND_TABLE: dict[
    ResourceKind,
    tuple[Callable[..., dict[str, Any]], tuple[tuple[str, ...], ...]],
] = {
    ResourceKind.PROMETHEUS_RULE: (build_prometheus_rule, (("spec",),)),
    ResourceKind.ROLE: (build_role, (("rules",),)),
    ResourceKind.ROLE_BINDING: (build_role_binding, (("roleRef",), ("subjects",))),
    ResourceKind.SERVICE: (build_service, (("spec", "ports"), ("spec", "selector"))),
    ResourceKind.SERVICE_MONITOR: (build_service_monitor, (("spec",),)),
}


def _lookup(obj: Mapping[str, Any] | None, path: tuple[str, ...]) -> Any:
    current: Any = obj
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _assign(obj: dict[str, Any], path: tuple[str, ...], value: Any) -> None:
    current = obj
    for key in path[:-1]:
        child = current.get(key)
        if not isinstance(child, dict):
            child = {}
            current[key] = child
        current = child
    current[path[-1]] = value


@dataclass(frozen=True)
class ResourceDescriptor:
    """One managed resource: its identity, desired-state builder and owned fields."""

    kind: ResourceKind
    namespace: str
    name: str
    builder: Builder = field(compare=False)
    managed_fields: tuple[tuple[str, ...], ...]

    def desired(self, parent: ParentReference) -> dict[str, Any]:
        return self.builder(parent, parent.owner_reference())

    def spec_differs(self, observed: Mapping[str, Any], desired: Mapping[str, Any]) -> bool:
        return any(_lookup(observed, path) != _lookup(desired, path) for path in self.managed_fields)

    def differs(self, observed: Mapping[str, Any], desired: Mapping[str, Any]) -> bool:
        """Return True when labels, ownership or the kind payload drifted.

        Absent labels or owner references compare unequal to the desired
        values, so they take the same path as any other drift.
        """
        observed_meta = observed.get("metadata") or {}
        desired_meta = desired["metadata"]
        if observed_meta.get("labels") != desired_meta["labels"]:
            return True
        if observed_meta.get("ownerReferences") != desired_meta["ownerReferences"]:
            return True
        return self.spec_differs(observed, desired)

    def heal(self, observed: Mapping[str, Any], desired: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of *observed* with labels, owners and payload replaced wholesale."""
        healed = copy.deepcopy(dict(observed))
        metadata = healed.setdefault("metadata", {})
        metadata["labels"] = copy.deepcopy(desired["metadata"]["labels"])
        metadata["ownerReferences"] = copy.deepcopy(desired["metadata"]["ownerReferences"])
        for path in self.managed_fields:
            _assign(healed, path, copy.deepcopy(_lookup(desired, path)))
        return healed

    def related_object(self) -> dict[str, str]:
        return {
            "apiVersion": self.kind.api_version,
            "kind": self.kind.value,
            "name": self.name,
            "namespace": self.namespace,
        }


MANAGED_KINDS: tuple[ResourceKind, ...] = (
    ResourceKind.PROMETHEUS_RULE,
    ResourceKind.ROLE,
    ResourceKind.ROLE_BINDING,
    ResourceKind.SERVICE,
    ResourceKind.SERVICE_MONITOR,
)


def _resource_name(settings: MonitoringSettings, kind: ResourceKind) -> str:
    if kind is ResourceKind.PROMETHEUS_RULE:
        return settings.rule_name
    if kind in {ResourceKind.ROLE, ResourceKind.ROLE_BINDING}:
        return settings.role_name
    return settings.service_name


def build_descriptors(settings: MonitoringSettings) -> tuple[ResourceDescriptor, ...]:
    """Return the ordered, immutable descriptor list for the managed resources."""
    descriptors = []
    for kind in MANAGED_KINDS:
        builder, managed_fields = _KIND_TABLE[kind]
        descriptors.append(
            ResourceDescriptor(
                kind=kind,
                namespace=settings.namespace,
                name=_resource_name(settings, kind),
                builder=partial(builder, settings),
                managed_fields=managed_fields,
            )
        )
    return tuple(descriptors)
