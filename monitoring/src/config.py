from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from monitoring.src.resources import MonitoringSettings


class ConfigError(RuntimeError):
    """Raised when the operator configuration is invalid."""


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        namespace: Namespace the operator and its monitoring resources live in.
        operator_deployment: Name of the operator Deployment that owns the
            monitoring resources.
        enable_tenant_quota: Desired state of the managed tenant quota feature
            gate; ``None`` leaves the gate alone.
    """

    namespace: str
    operator_deployment: str
    operator_name: str
    operator_version: str
    managed_by: str
    hc_name: str
    monitoring_namespace: str
    metrics_port: int
    resync_seconds: int
    health_port: int
    feature_gate_timeout_seconds: int
    feature_gate_poll_seconds: float
    enable_tenant_quota: bool | None

    def monitoring_settings(self) -> MonitoringSettings:
        return MonitoringSettings(
            namespace=self.namespace,
            hc_name=self.hc_name,
            operator_name=self.operator_name,
            operator_version=self.operator_version,
            managed_by=self.managed_by,
            monitoring_namespace=self.monitoring_namespace,
            metrics_port=self.metrics_port,
        )


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    ``ENABLE_MANAGED_TENANT_QUOTA`` is tri-state: unset or empty means the
    operator never touches the feature gate.
    """
    values = env if env is not None else os.environ

    namespace = values.get("OPERATOR_NAMESPACE", "kubevirt-hyperconverged")
    if not namespace.strip():
        raise ConfigError("OPERATOR_NAMESPACE must be a non-empty string")

    operator_name = values.get("OPERATOR_NAME", "hyperconverged-cluster-operator")
    raw_gate = values.get("ENABLE_MANAGED_TENANT_QUOTA")
    enable_tenant_quota = parse_bool(raw_gate) if raw_gate and raw_gate.strip() else None

    return OperatorConfig(
        namespace=namespace,
        operator_deployment=values.get("OPERATOR_DEPLOYMENT", "hco-operator"),
        operator_name=operator_name,
        operator_version=values.get("OPERATOR_VERSION", "unknown"),
        managed_by=values.get("OPERATOR_MANAGED_BY", "hco-operator"),
        hc_name=values.get("HC_NAME", "kubevirt-hyperconverged"),
        monitoring_namespace=values.get("MONITORING_NAMESPACE", "openshift-monitoring"),
        metrics_port=env_int("METRICS_PORT", 8383, minimum=1, maximum=65535, env=values),
        resync_seconds=env_int("RESYNC_SECONDS", 60, minimum=1, env=values),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=values),
        feature_gate_timeout_seconds=env_int(
            "FEATURE_GATE_TIMEOUT_SECONDS", 300, minimum=1, env=values
        ),
        feature_gate_poll_seconds=env_int(
            "FEATURE_GATE_POLL_MILLISECONDS", 1000, minimum=10, maximum=60000, env=values
        )
        / 1000,
        enable_tenant_quota=enable_tenant_quota,
    )
