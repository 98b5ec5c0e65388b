from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from monitoring.src.events import (
    EVENT_TYPE_NORMAL,
    REASON_CREATED,
    REASON_UPDATED,
    EventSink,
)
from monitoring.src.kube import ObjectStore, is_not_found
from monitoring.src.metrics import METRICS
from monitoring.src.resources import ParentReference, ResourceDescriptor


@dataclass
class ReconcileRequest:
    """The parent HyperConverged object for one pass plus its status write flag.

    ``status_dirty`` tells the caller that ``instance["status"]`` changed and
    has to be persisted.
    """

    instance: dict[str, Any]
    status_dirty: bool = False

    @property
    def related_objects(self) -> list[dict[str, Any]]:
        status = self.instance.get("status") or {}
        return list(status.get("relatedObjects") or [])


def _reference_keys(references: Iterable[Mapping[str, Any]]) -> Counter[tuple[Any, ...]]:
    return Counter(
        (ref.get("apiVersion"), ref.get("kind"), ref.get("namespace"), ref.get("name"))
        for ref in references
    )


class MonitoringReconciler:
    """Keeps the monitoring resources of the operator present and undrifted.

    Each call to :meth:`reconcile` walks the descriptor list in order. A
    missing resource is created; an existing one is compared on labels, owner
    references and its kind-specific payload and, when anything differs, those
    three facets are overwritten with the desired values and written back.
    Nothing is written (and no event recorded) for a resource that already
    matches.

    The first store failure aborts the pass and is re-raised as-is; resources
    handled earlier in the pass are left in their new state and the caller is
    expected to run the whole pass again later.
    """

    def __init__(
        self,
        store: ObjectStore,
        events: EventSink,
        parent: ParentReference,
        descriptors: Sequence[ResourceDescriptor],
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.events = events
        self.parent = parent
        self.descriptors = tuple(descriptors)
        self.logger = logger or logging.getLogger(__name__)

    def reconcile(self) -> None:
        for descriptor in self.descriptors:
            try:
                self._reconcile_resource(descriptor)
            except Exception:
                METRICS.reconcile_errors_total.labels(kind=descriptor.kind.value).inc()
                self.logger.error(
                    "Failed to reconcile %s %s/%s",
                    descriptor.kind.value,
                    descriptor.namespace,
                    descriptor.name,
                )
                raise

    def _reconcile_resource(self, descriptor: ResourceDescriptor) -> None:
        kind = descriptor.kind.value
        desired = descriptor.desired(self.parent)
        try:
            observed: dict[str, Any] | None = self.store.get(
                descriptor.kind, descriptor.name, descriptor.namespace
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            observed = None

        if observed is None:
            self.store.create(descriptor.kind, desired)
            METRICS.resource_actions_total.labels(kind=kind, action="created").inc()
            self.logger.info("Created %s %s/%s", kind, descriptor.namespace, descriptor.name)
            self.events.emit(EVENT_TYPE_NORMAL, REASON_CREATED, f"Created {kind} {descriptor.name}")
            return

        if not descriptor.differs(observed, desired):
            self.logger.debug("%s %s/%s is up to date", kind, descriptor.namespace, descriptor.name)
            return

        self.store.update(descriptor.kind, descriptor.heal(observed, desired))
        METRICS.resource_actions_total.labels(kind=kind, action="updated").inc()
        self.logger.info(
            "Reverted drift on %s %s/%s", kind, descriptor.namespace, descriptor.name
        )
        self.events.emit(EVENT_TYPE_NORMAL, REASON_UPDATED, f"Updated {kind} {descriptor.name}")

    def related_objects(self) -> list[dict[str, str]]:
        return [descriptor.related_object() for descriptor in self.descriptors]

    def update_related_objects(self, request: ReconcileRequest) -> None:
        """Project the managed resources into ``status.relatedObjects`` of the parent.

        The comparison ignores ordering and any extra reference fields
        (``uid``, ``resourceVersion``); only apiVersion, kind, namespace and
        name identify an entry. On any difference the stored list is replaced
        and the request is marked dirty.
        """
        desired = self.related_objects()
        if _reference_keys(request.related_objects) == _reference_keys(desired):
            return

        status = request.instance.get("status")
        if not isinstance(status, dict):
            status = {}
            request.instance["status"] = status
        status["relatedObjects"] = desired
        request.status_dirty = True
        self.logger.info(
            "Related objects of %s changed; %d entries",
            (request.instance.get("metadata") or {}).get("name", "<unknown>"),
            len(desired),
        )
