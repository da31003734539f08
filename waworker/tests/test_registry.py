from __future__ import annotations

import pytest

from conftest import settle
from waworker.adapter import MessageReceived, PairingCodeReady, StatusChanged
from waworker.errors import InvalidArgument, NotFound
from waworker.registry import InstanceRegistry
from waworker.state import (
    CLOSED,
    CONNECTED,
    DISCONNECTED,
    INITIALIZING,
    QR_PENDING,
    InstanceState,
    next_status,
)


@pytest.mark.parametrize(
    "current,event,expected",
    [
        (INITIALIZING, PairingCodeReady("a"), QR_PENDING),
        (QR_PENDING, PairingCodeReady("b"), QR_PENDING),
        (DISCONNECTED, PairingCodeReady("c"), QR_PENDING),
        (CONNECTED, PairingCodeReady("d"), None),
        (INITIALIZING, StatusChanged("connected"), CONNECTED),
        (QR_PENDING, StatusChanged("CONNECTED"), CONNECTED),
        (DISCONNECTED, StatusChanged("connected"), CONNECTED),
        (CONNECTED, StatusChanged("disconnected"), DISCONNECTED),
        (QR_PENDING, StatusChanged("disconnected"), None),
        (INITIALIZING, StatusChanged("qrReadSuccess"), None),
        (CLOSED, StatusChanged("connected"), None),
        (QR_PENDING, StatusChanged("pairing_code_ready"), None),
        (INITIALIZING, StatusChanged("pairing_code_ready"), None),
        (CONNECTED, StatusChanged("message_received"), None),
        (CONNECTED, MessageReceived({}), None),
    ],
)
def test_next_status_table(current, event, expected):
    assert next_status(current, event) == expected


@pytest.mark.anyio
async def test_register_rejects_duplicate_ids():
    registry = InstanceRegistry()
    await registry.register(InstanceState(id="a", name="A"), registry.new_channel())
    with pytest.raises(InvalidArgument):
        await registry.register(InstanceState(id="a", name="A"), registry.new_channel())
    await registry.unregister_all()


@pytest.mark.anyio
async def test_update_status_patches_only_given_fields():
    registry = InstanceRegistry()
    await registry.register(
        InstanceState(id="a", name="A", connection_info={"user": "1"}),
        registry.new_channel(),
    )
    updated = await registry.update_status("a", QR_PENDING, {"pairing_code": "xyz"})
    assert updated is not None
    assert updated.pairing_code == "xyz"
    assert updated.connection_info == {"user": "1"}

    updated = await registry.update_status("a", CONNECTED)
    assert updated.pairing_code is None
    assert updated.connection_info == {"user": "1"}

    with pytest.raises(ValueError):
        await registry.update_status("a", CONNECTED, {"handle": None})
    await registry.unregister_all()


@pytest.mark.anyio
async def test_get_returns_detached_snapshot():
    registry = InstanceRegistry()
    await registry.register(InstanceState(id="a", name="A"), registry.new_channel())
    snapshot = registry.get("a")
    snapshot.status = CONNECTED
    assert registry.get("a").status == INITIALIZING
    assert [item.to_payload() for item in registry.list()] == [
        {"id": "a", "status": INITIALIZING, "name": "A", "webhook": None}
    ]
    await registry.unregister_all()


@pytest.mark.anyio
async def test_unregister_marks_closed_and_stops_events():
    seen: list[dict] = []
    registry = InstanceRegistry(listener=lambda state, event: seen.append(event))
    channel = registry.new_channel()
    await registry.register(InstanceState(id="a", name="A"), channel)

    removed = await registry.unregister("a")
    assert removed is not None
    assert removed.status == CLOSED
    assert registry.get("a") is None
    assert await registry.unregister("a") is None

    channel.put_nowait(StatusChanged("connected"))
    await settle()
    assert seen == []
    with pytest.raises(NotFound):
        async with registry.exclusive("a"):
            pass


@pytest.mark.anyio
async def test_listener_failure_does_not_stop_pump():
    calls: list[str] = []

    def _listener(state, event):
        calls.append(event["type"])
        if len(calls) == 1:
            raise RuntimeError("listener exploded")

    registry = InstanceRegistry(listener=_listener)
    channel = registry.new_channel()
    await registry.register(InstanceState(id="a", name="A"), channel)
    channel.put_nowait(MessageReceived({"n": 1}))
    channel.put_nowait(StatusChanged("connected"))
    await settle()
    assert calls == ["message", "connected"]
    assert registry.get("a").status == CONNECTED
    assert registry.stats_snapshot()[CONNECTED] == 1
    await registry.unregister_all()
