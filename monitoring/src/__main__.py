from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from kubernetes import client

from monitoring.src.config import load_config
from monitoring.src.events import KubeEventEmitter
from monitoring.src.health import start_health_server
from monitoring.src.kube import build_object_store, load_kube_configuration
from monitoring.src.metrics import METRICS
from monitoring.src.runner import build_operator, resolve_parent

RUNTIME_VERSION = "0.1.0"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))


def main() -> None:
    """Operator entrypoint: configure logging, resolve the owner and run the resync loop."""
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    config = load_config()
    METRICS.build_info.info(
        {
            "version": config.operator_version,
            "runtime": os.getenv("APP_VERSION", RUNTIME_VERSION),
        }
    )

    load_kube_configuration()
    store = build_object_store()
    parent = resolve_parent(store, config)
    events = KubeEventEmitter(core_api=client.CoreV1Api(), parent=parent)
    operator = build_operator(config=config, store=store, events=events, parent=parent)

    health_server = start_health_server(ready=operator.ready, port=config.health_port)
    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logging.getLogger(__name__).info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    logging.getLogger(__name__).info(
        "Reconciling monitoring resources in %s owned by %s/%s",
        config.namespace,
        parent.kind,
        parent.name,
    )
    operator.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    logging.getLogger(__name__).info("Operator stopped")


if __name__ == "__main__":
    main()
