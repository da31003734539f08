from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from .adapter import (
    AdapterEvent,
    AdapterHandle,
    MessageReceived,
    PairingCodeReady,
    StatusChanged,
)


INITIALIZING = "initializing"
QR_PENDING = "qr_pending"
CONNECTED = "connected"
DISCONNECTED = "disconnected"
CLOSED = "closed"

STATUSES = (INITIALIZING, QR_PENDING, CONNECTED, DISCONNECTED, CLOSED)

PAIRING_CODE_READY = "pairing_code_ready"
MESSAGE_RECEIVED = "message_received"
STATUS_PREFIX = "status:"
STATUS_CONNECTED = STATUS_PREFIX + CONNECTED
STATUS_DISCONNECTED = STATUS_PREFIX + DISCONNECTED

# (event, current status) -> next status. Anything missing is ignored.
TRANSITIONS: Dict[tuple[str, str], str] = {
    (PAIRING_CODE_READY, INITIALIZING): QR_PENDING,
    (PAIRING_CODE_READY, QR_PENDING): QR_PENDING,
    (PAIRING_CODE_READY, DISCONNECTED): QR_PENDING,
    (STATUS_CONNECTED, INITIALIZING): CONNECTED,
    (STATUS_CONNECTED, QR_PENDING): CONNECTED,
    (STATUS_CONNECTED, DISCONNECTED): CONNECTED,
    (STATUS_CONNECTED, CONNECTED): CONNECTED,
    (STATUS_DISCONNECTED, CONNECTED): DISCONNECTED,
}


def event_name(event: AdapterEvent) -> str:
    if isinstance(event, PairingCodeReady):
        return PAIRING_CODE_READY
    if isinstance(event, MessageReceived):
        return MESSAGE_RECEIVED
    if isinstance(event, StatusChanged):
        status = (event.status or "").strip().lower() or "unknown"
        return f"{STATUS_PREFIX}{status}"
    return type(event).__name__


def next_status(current: str, event: AdapterEvent) -> Optional[str]:
    """Status reached by applying ``event`` to ``current``, or ``None`` if ignored."""
    if current == CLOSED:
        return None
    return TRANSITIONS.get((event_name(event), current))


@dataclass(slots=True)
class InstanceSummary:
    id: str
    status: str
    name: str
    webhook_url: Optional[str]

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "name": self.name,
            "webhook": self.webhook_url,
        }


@dataclass(slots=True)
class InstanceState:
    id: str
    name: str
    webhook_url: Optional[str] = None
    status: str = INITIALIZING
    pairing_code: Optional[str] = None
    connection_info: Any = None
    created_at: Optional[int] = None
    last_error: Optional[str] = None
    handle: Optional[AdapterHandle] = None

    def summary(self) -> InstanceSummary:
        return InstanceSummary(
            id=self.id,
            status=self.status,
            name=self.name,
            webhook_url=self.webhook_url,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "webhook": self.webhook_url,
            "status": self.status,
            "qr": self.pairing_code,
            "info": self.connection_info,
            "created_at": self.created_at,
            "last_error": self.last_error,
        }


__all__ = [
    "INITIALIZING",
    "QR_PENDING",
    "CONNECTED",
    "DISCONNECTED",
    "CLOSED",
    "STATUSES",
    "TRANSITIONS",
    "InstanceState",
    "InstanceSummary",
    "event_name",
    "next_status",
]
