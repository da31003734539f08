from __future__ import annotations

import time
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import FakeAdapter
from waworker.api import create_app
from waworker.forwarder import EventForwarder
from waworker.manager import InstanceManager


API_KEY = "test-key"
AUTH = {"X-Api-Key": API_KEY}


def _media_handler(request: httpx.Request) -> httpx.Response:
    if request.url.host == "bad-host":
        raise httpx.ConnectError("unreachable", request=request)
    return httpx.Response(200, content=b"img", headers={"Content-Type": "image/png"}, request=request)


@pytest.fixture
def api_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    monkeypatch.setattr(
        "waworker.api.worker_config",
        lambda: SimpleNamespace(
            data_dir=tmp_path,
            port=8080,
            api_key=API_KEY,
            bridge_url="http://waweb:9001",
            bridge_token="bridge-token",
            public_url="http://waworker:8080",
            restore_timeout=1.0,
            media_fetch_timeout=1.0,
            media_max_bytes=1024,
            webhook_timeout=1.0,
            webhook_token=None,
        ),
    )
    adapter = FakeAdapter()

    def _manager(store, _bridge, **kwargs):
        return InstanceManager(
            store,
            adapter,
            forwarder=EventForwarder(
                client=httpx.AsyncClient(
                    transport=httpx.MockTransport(lambda request: httpx.Response(200))
                )
            ),
            http=httpx.AsyncClient(transport=httpx.MockTransport(_media_handler)),
        )

    monkeypatch.setattr("waworker.api.InstanceManager", _manager)
    app = create_app()
    with TestClient(app) as client:
        yield client, adapter


def _wait_for_status(client: TestClient, instance_id: str, status: str) -> dict:
    payload: dict = {}
    for _ in range(50):
        payload = client.get(f"/instance/{instance_id}/qr", headers=AUTH).json()
        if payload.get("status") == status:
            return payload
        time.sleep(0.01)
    raise AssertionError(f"instance {instance_id} never reached {status}: {payload}")


def _bridge_event(client: TestClient, body: dict):
    return client.post("/bridge/events", json=body, headers={"X-Provider-Token": "bridge-token"})


def test_public_endpoints_do_not_need_api_key(api_client):
    client, _ = api_client
    assert client.get("/").status_code == 200
    assert client.get("/version").json()["name"] == "waworker"
    health = client.get("/health").json()
    assert health["ok"] is True
    assert health["connected_count"] == 0
    assert client.get("/metrics").status_code == 200


def test_api_key_is_enforced(api_client):
    client, _ = api_client
    assert client.get("/instance/list").status_code == 401
    assert client.get("/instance/list", headers={"X-Api-Key": "wrong"}).status_code == 401
    assert client.get("/instance/list", params={"apiKey": API_KEY}).status_code == 200


def test_instance_lifecycle_over_http(api_client):
    client, adapter = api_client
    created = client.post(
        "/instance/create",
        json={"id": "acct1", "name": "Acct One", "webhook": "http://x/hook"},
        headers=AUTH,
    )
    assert created.status_code == 200
    body = created.json()
    assert body["id"] == "acct1"
    assert body["info"]["status"] == "initializing"
    assert isinstance(body["createdAt"], int)

    duplicate = client.post("/instance/create", json={"id": "acct1"}, headers=AUTH)
    assert duplicate.status_code == 400
    assert duplicate.json()["error"] == "invalid_argument"

    assert _bridge_event(client, {"instance": "acct1", "event": "qr", "qr": "ABC123"}).json() == {
        "ok": True,
        "accepted": True,
    }
    qr = _wait_for_status(client, "acct1", "qr_pending")
    assert qr["qr"] == "ABC123"
    png = client.get("/instance/acct1/qr.png", headers=AUTH)
    assert png.status_code == 200
    assert png.headers["content-type"] == "image/png"

    _bridge_event(client, {"instance": "acct1", "event": "ready", "user": "5511"})
    connected = _wait_for_status(client, "acct1", "connected")
    assert connected["qr"] is None
    status = client.get("/instance/acct1/status", headers=AUTH).json()
    assert status == {"id": "acct1", "status": "connected", "info": {"user": "5511"}}

    listing = client.get("/instance/list", headers=AUTH).json()
    assert listing == {
        "instances": [
            {"id": "acct1", "status": "connected", "name": "Acct One", "webhook": "http://x/hook"}
        ]
    }

    sent = client.post(
        "/instance/acct1/send-message", json={"to": "1234", "text": "hi"}, headers=AUTH
    )
    assert sent.status_code == 200
    assert sent.json()["result"]["to"] == "1234@s.whatsapp.net"

    media = client.post(
        "/instance/acct1/send-media",
        json={"to": "1234", "url": "http://cdn.test/a.png", "caption": "c"},
        headers=AUTH,
    )
    assert media.status_code == 200

    failed = client.post(
        "/instance/acct1/send-media",
        json={"to": "1234", "url": "http://bad-host/x.png"},
        headers=AUTH,
    )
    assert failed.status_code == 502
    assert failed.json()["error"] == "upstream_fetch_error"

    deleted = client.delete("/instance/acct1", headers=AUTH)
    assert deleted.json() == {"id": "acct1", "deleted": True}
    assert adapter.handles["acct1"].closed is True
    assert client.get("/instance/acct1", headers=AUTH).status_code == 404
    assert client.delete("/instance/acct1", headers=AUTH).json() == {"id": "acct1", "deleted": True}


def test_unknown_instance_errors_carry_kind(api_client):
    client, _ = api_client
    response = client.post(
        "/instance/missing-id/send-message", json={"to": "1234", "text": "hi"}, headers=AUTH
    )
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
    assert client.get("/instance/missing-id/qr.png", headers=AUTH).status_code == 404


def test_bridge_events_require_token(api_client):
    client, _ = api_client
    response = client.post("/bridge/events", json={"instance": "acct1", "event": "qr", "qr": "x"})
    assert response.status_code == 401
    unknown = _bridge_event(client, {"instance": "nobody", "event": "qr", "qr": "x"})
    assert unknown.json() == {"ok": True, "accepted": False}
    assert _bridge_event(client, {"event": "qr"}).status_code == 422
