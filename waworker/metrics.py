from __future__ import annotations

from prometheus_client import Counter, Gauge


INSTANCES_CONNECTED = Gauge(
    "waworker_instances_connected",
    "Number of instances with an open connection",
)
INSTANCES_QR_PENDING = Gauge(
    "waworker_instances_qr_pending",
    "Number of instances waiting for the pairing code to be scanned",
)
INSTANCES_DISCONNECTED = Gauge(
    "waworker_instances_disconnected",
    "Number of instances whose connection dropped",
)
INSTANCES_INITIALIZING = Gauge(
    "waworker_instances_initializing",
    "Number of instances started but not yet paired",
)
WEBHOOK_DELIVERIES = Counter(
    "waworker_webhook_deliveries_total",
    "Webhook deliveries grouped by outcome",
    labelnames=("outcome",),
)
EVENTS_IGNORED = Counter(
    "waworker_events_ignored_total",
    "Adapter events ignored by the state machine",
    labelnames=("event",),
)
RESTORE_FAILURES = Counter(
    "waworker_restore_failures_total",
    "Instances that could not be restored on boot",
    labelnames=("reason",),
)
SEND_TOTAL = Counter(
    "waworker_send_total",
    "Outbound sends grouped by kind and status",
    labelnames=("kind", "status"),
)

__all__ = [
    "INSTANCES_CONNECTED",
    "INSTANCES_QR_PENDING",
    "INSTANCES_DISCONNECTED",
    "INSTANCES_INITIALIZING",
    "WEBHOOK_DELIVERIES",
    "EVENTS_IGNORED",
    "RESTORE_FAILURES",
    "SEND_TOTAL",
]
