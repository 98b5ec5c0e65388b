from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    CoreV1Event,
    V1EventSource,
    V1ObjectMeta,
    V1ObjectReference,
)

from monitoring.src.resources import ParentReference

LOGGER = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
REASON_CREATED = "Created"
REASON_UPDATED = "Updated"


@dataclass(frozen=True)
class EventRecord:
    event_type: str
    reason: str
    message: str


class EventSink(Protocol):
    """Receives audit events. Delivery is best-effort; nothing is returned."""

    def emit(self, event_type: str, reason: str, message: str) -> None: ...


class KubeEventEmitter:
    """Writes ``CoreV1Event`` objects against the owning parent.

    Event delivery never fails the caller: an API error is logged and dropped.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        parent: ParentReference,
        component: str = "hyperconverged-cluster-operator",
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.parent = parent
        self.component = component
        self.logger = logger or LOGGER

    def _build_event(self, event_type: str, reason: str, message: str) -> CoreV1Event:
        now = datetime.now(UTC)
        return CoreV1Event(
            metadata=V1ObjectMeta(
                generate_name=f"{self.parent.name}-",
                namespace=self.parent.namespace,
            ),
            involved_object=V1ObjectReference(
                api_version=self.parent.api_version,
                kind=self.parent.kind,
                name=self.parent.name,
                namespace=self.parent.namespace,
                uid=self.parent.uid,
            ),
            type=event_type,
            reason=reason,
            message=message,
            first_timestamp=now,
            last_timestamp=now,
            count=1,
            reporting_component=self.component,
            source=V1EventSource(component=self.component),
        )

    def emit(self, event_type: str, reason: str, message: str) -> None:
        event = self._build_event(event_type, reason, message)
        try:
            self.core_api.create_namespaced_event(namespace=self.parent.namespace, body=event)
        except ApiException as exc:
            self.logger.warning(
                "Failed to record %s event %r for %s/%s: %s",
                reason,
                message,
                self.parent.namespace,
                self.parent.name,
                exc.reason,
            )
