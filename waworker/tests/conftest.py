from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[2]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - path setup
    sys.path.insert(0, str(PROJECT_ROOT))

from waworker.adapter import (
    AdapterConfig,
    AdapterEvent,
    AdapterHandle,
    ConnectionAdapter,
    EventSink,
)
from waworker.bridge import translate_bridge_event
from waworker.errors import AdapterFailure


@pytest.fixture
def anyio_backend():
    return "asyncio"


class FakeHandle(AdapterHandle):
    def __init__(self, instance_id: str, emit: EventSink) -> None:
        self.instance_id = instance_id
        self.emit = emit
        self.sent: list[tuple[Any, ...]] = []
        self.closed = False
        self.close_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    async def _enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0.01)

    async def send_text(self, address: str, text: str) -> Dict[str, Any]:
        try:
            await self._enter()
            if self.send_error is not None:
                raise self.send_error
            self.sent.append(("text", address, text))
        finally:
            self.active -= 1
        return {"id": f"{self.instance_id}-{len(self.sent)}", "to": address}

    async def send_media(
        self,
        address: str,
        data: bytes,
        caption: str = "",
        *,
        mimetype: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            await self._enter()
            self.sent.append(("media", address, data, caption, mimetype, filename))
        finally:
            self.active -= 1
        return {"id": f"{self.instance_id}-{len(self.sent)}", "to": address}

    async def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeAdapter(ConnectionAdapter):
    def __init__(self) -> None:
        self.handles: Dict[str, FakeHandle] = {}
        self.configs: Dict[str, AdapterConfig] = {}
        self.started: list[str] = []
        self.fail_ids: set[str] = set()
        self.hang_ids: set[str] = set()

    async def start(
        self, instance_id: str, config: AdapterConfig, emit: EventSink
    ) -> AdapterHandle:
        if instance_id in self.hang_ids:
            await asyncio.Event().wait()
        if instance_id in self.fail_ids:
            raise AdapterFailure(f"cannot start {instance_id}")
        handle = FakeHandle(instance_id, emit)
        self.handles[instance_id] = handle
        self.configs[instance_id] = config
        self.started.append(instance_id)
        return handle

    def emit(self, instance_id: str, event: AdapterEvent) -> None:
        self.handles[instance_id].emit(event)

    def dispatch(self, instance_id: str, payload: Dict[str, Any]) -> bool:
        handle = self.handles.get(instance_id)
        event = translate_bridge_event(payload)
        if handle is None or event is None:
            return False
        handle.emit(event)
        return True


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter()
