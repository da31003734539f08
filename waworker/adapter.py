"""Boundary between the instance manager and the messaging network client.

The manager never talks to the network itself. An adapter starts one
connection per instance and reports what happens on it by pushing events
into the sink it was given at start; the returned handle carries the
outbound operations.
"""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union


@dataclass(frozen=True, slots=True)
class PairingCodeReady:
    code: str


@dataclass(frozen=True, slots=True)
class StatusChanged:
    status: str
    info: Any = None
    reason: Optional[str] = None


@dataclass(frozen=True, slots=True)
class MessageReceived:
    payload: Any


AdapterEvent = Union[PairingCodeReady, StatusChanged, MessageReceived]
EventSink = Callable[[AdapterEvent], None]


@dataclass(frozen=True, slots=True)
class AdapterConfig:
    name: str
    webhook_url: Optional[str]
    auth_dir: Path


class AdapterHandle:
    """Outbound side of one live connection."""

    async def send_text(self, address: str, text: str) -> Dict[str, Any]:
        raise NotImplementedError

    async def send_media(
        self,
        address: str,
        data: bytes,
        caption: str = "",
        *,
        mimetype: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


class ConnectionAdapter:
    async def start(
        self, instance_id: str, config: AdapterConfig, emit: EventSink
    ) -> AdapterHandle:
        raise NotImplementedError

    def dispatch(self, instance_id: str, payload: Dict[str, Any]) -> bool:
        """Route a raw event pushed from outside the process; ``False`` if unowned."""
        return False

    async def aclose(self) -> None:
        return None


__all__ = [
    "PairingCodeReady",
    "StatusChanged",
    "MessageReceived",
    "AdapterEvent",
    "EventSink",
    "AdapterConfig",
    "AdapterHandle",
    "ConnectionAdapter",
]
