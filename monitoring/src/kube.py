from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client import (
    ApiClient,
    ApiException,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from monitoring.src.resources import ResourceKind

LOGGER = logging.getLogger(__name__)


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


def is_not_found(exc: BaseException) -> bool:
    """Return True when *exc* is the API server's 404 response."""
    return isinstance(exc, ApiException) and exc.status == 404


class ObjectStore(Protocol):
    """Typed-object access the reconciler and the feature-gate observer rely on.

    Objects are JSON-shaped dicts. A missing object raises ``ApiException``
    with ``status == 404``.
    """

    def get(self, kind: ResourceKind, name: str, namespace: str | None = None) -> dict[str, Any]: ...

    def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def update_status(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]: ...

    def patch(
        self,
        kind: ResourceKind,
        name: str,
        operations: list[dict[str, Any]],
        namespace: str | None = None,
    ) -> dict[str, Any]: ...

    def list(
        self, kind: ResourceKind, namespace: str | None = None, label_selector: str = ""
    ) -> list[dict[str, Any]]: ...


@dataclass(frozen=True)
class _TypedRoute:
    api: str
    suffix: str
    namespaced: bool = True


@dataclass(frozen=True)
class _CustomRoute:
    group: str
    version: str
    plural: str
    namespaced: bool = True


_ROUTES: dict[ResourceKind, _TypedRoute | _CustomRoute] = {
    ResourceKind.PROMETHEUS_RULE: _CustomRoute("monitoring.coreos.com", "v1", "prometheusrules"),
    ResourceKind.SERVICE_MONITOR: _CustomRoute("monitoring.coreos.com", "v1", "servicemonitors"),
    ResourceKind.ROLE: _TypedRoute("rbac", "namespaced_role"),
    ResourceKind.ROLE_BINDING: _TypedRoute("rbac", "namespaced_role_binding"),
    ResourceKind.SERVICE: _TypedRoute("core", "namespaced_service"),
    ResourceKind.POD: _TypedRoute("core", "namespaced_pod"),
    ResourceKind.NODE: _TypedRoute("core", "node", namespaced=False),
    ResourceKind.DEPLOYMENT: _TypedRoute("apps", "namespaced_deployment"),
    ResourceKind.HYPERCONVERGED: _CustomRoute("hco.kubevirt.io", "v1beta1", "hyperconvergeds"),
    ResourceKind.MTQ: _CustomRoute("mtq.kubevirt.io", "v1alpha1", "mtqs", namespaced=False),
}


class KubeObjectStore:
    """``ObjectStore`` backed by the Kubernetes Python client.

    Built-in kinds go through their typed API (``CoreV1Api``, ``AppsV1Api``,
    ``RbacAuthorizationV1Api``); CRD kinds go through ``CustomObjectsApi``.
    Typed models are converted back to camelCase dicts so every caller sees
    the same shape regardless of route.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        rbac_api: RbacAuthorizationV1Api,
        custom_api: CustomObjectsApi,
        api_client: ApiClient | None = None,
    ) -> None:
        self._typed_apis: dict[str, Any] = {"core": core_api, "apps": apps_api, "rbac": rbac_api}
        self.custom_api = custom_api
        self.api_client = api_client or ApiClient()

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self.api_client.sanitize_for_serialization(obj)

    @staticmethod
    def _identity(body: dict[str, Any]) -> tuple[str, str | None]:
        metadata = body.get("metadata") or {}
        return metadata["name"], metadata.get("namespace")

    def _typed_call(self, route: _TypedRoute, verb: str, namespace: str | None, **kwargs: Any) -> Any:
        method = getattr(self._typed_apis[route.api], f"{verb}_{route.suffix}")
        if route.namespaced:
            kwargs["namespace"] = namespace
        return method(**kwargs)

    def _custom_call(
        self,
        route: _CustomRoute,
        verb: str,
        namespace: str | None,
        *,
        suffix: str = "",
        **kwargs: Any,
    ) -> Any:
        scope = "namespaced" if route.namespaced else "cluster"
        method = getattr(self.custom_api, f"{verb}_{scope}_custom_object{suffix}")
        if route.namespaced:
            kwargs["namespace"] = namespace
        return method(group=route.group, version=route.version, plural=route.plural, **kwargs)

    def get(self, kind: ResourceKind, name: str, namespace: str | None = None) -> dict[str, Any]:
        route = _ROUTES[kind]
        if isinstance(route, _CustomRoute):
            return self._custom_call(route, "get", namespace, name=name)
        return self._to_dict(self._typed_call(route, "read", namespace, name=name))

    def create(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        route = _ROUTES[kind]
        _, namespace = self._identity(body)
        if isinstance(route, _CustomRoute):
            return self._custom_call(route, "create", namespace, body=body)
        return self._to_dict(self._typed_call(route, "create", namespace, body=body))

    def update(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        route = _ROUTES[kind]
        name, namespace = self._identity(body)
        if isinstance(route, _CustomRoute):
            return self._custom_call(route, "replace", namespace, name=name, body=body)
        return self._to_dict(self._typed_call(route, "replace", namespace, name=name, body=body))

    def update_status(self, kind: ResourceKind, body: dict[str, Any]) -> dict[str, Any]:
        route = _ROUTES[kind]
        name, namespace = self._identity(body)
        if isinstance(route, _CustomRoute):
            return self._custom_call(
                route, "replace", namespace, name=name, body=body, suffix="_status"
            )
        return self._to_dict(
            self._typed_call(
                _TypedRoute(route.api, f"{route.suffix}_status", route.namespaced),
                "replace",
                namespace,
                name=name,
                body=body,
            )
        )

    def patch(
        self,
        kind: ResourceKind,
        name: str,
        operations: list[dict[str, Any]],
        namespace: str | None = None,
    ) -> dict[str, Any]:
        """Apply a JSON patch.

        The client picks ``application/json-patch+json`` because the body is
        a list of operations.
        """
        route = _ROUTES[kind]
        if isinstance(route, _CustomRoute):
            return self._custom_call(route, "patch", namespace, name=name, body=operations)
        return self._to_dict(self._typed_call(route, "patch", namespace, name=name, body=operations))

    def list(
        self, kind: ResourceKind, namespace: str | None = None, label_selector: str = ""
    ) -> list[dict[str, Any]]:
        route = _ROUTES[kind]
        if isinstance(route, _CustomRoute):
            result = self._custom_call(route, "list", namespace, label_selector=label_selector)
            return list(result.get("items") or [])
        result = self._typed_call(route, "list", namespace, label_selector=label_selector)
        return [self._to_dict(item) for item in (result.items or [])]


def build_object_store() -> KubeObjectStore:
    """Return a ``KubeObjectStore`` wired to clients using the active kube configuration."""
    api_client = client.ApiClient()
    return KubeObjectStore(
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        rbac_api=client.RbacAuthorizationV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        api_client=api_client,
    )
