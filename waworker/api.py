from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field

from config import worker_config

from .bridge import BRIDGE_EVENTS_PATH, BridgeAdapter
from .errors import InstanceError
from .forwarder import EventForwarder
from .manager import InstanceManager
from .store import FileMetadataStore


logger = logging.getLogger("waworker.api")

SERVICE_NAME = "waworker"
SERVICE_VERSION = "1.0.0"

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}

ERROR_STATUS = {
    "invalid_argument": 400,
    "not_found": 404,
    "adapter_failure": 502,
    "upstream_fetch_error": 502,
    "persistence_failure": 500,
}


class CreateInstanceRequest(BaseModel):
    id: str = Field(..., min_length=1)
    name: Optional[str] = None
    webhook: Optional[str] = None


class SendMessageRequest(BaseModel):
    to: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)


class SendMediaRequest(BaseModel):
    to: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1)
    caption: Optional[str] = None


def _error_response(exc: InstanceError) -> JSONResponse:
    return JSONResponse(
        exc.to_payload(),
        status_code=ERROR_STATUS.get(exc.kind, 500),
        headers=dict(NO_STORE_HEADERS),
    )


def create_app() -> FastAPI:
    cfg = worker_config()
    logger.info(
        "stage=config_resolved data_dir=%s bridge=%s api_key_present=%s",
        cfg.data_dir,
        cfg.bridge_url,
        "true" if cfg.api_key else "false",
    )
    adapter = BridgeAdapter(
        cfg.bridge_url,
        public_url=cfg.public_url,
        token=cfg.bridge_token,
    )
    manager = InstanceManager(
        FileMetadataStore(cfg.data_dir),
        adapter,
        forwarder=EventForwarder(
            timeout=cfg.webhook_timeout, webhook_token=cfg.webhook_token
        ),
        restore_timeout=cfg.restore_timeout,
        media_fetch_timeout=cfg.media_fetch_timeout,
        media_max_bytes=cfg.media_max_bytes,
    )

    app = FastAPI(title=SERVICE_NAME)
    app.state.instance_manager = manager

    @app.exception_handler(InstanceError)
    async def _instance_error_handler(_: Request, exc: InstanceError) -> JSONResponse:
        return _error_response(exc)

    def _request_api_key(request: Request) -> str:
        header = request.headers.get("X-Api-Key", "").strip()
        if header:
            return header
        return (request.query_params.get("apiKey") or "").strip()

    def require_api_key(request: Request) -> None:
        if not cfg.api_key:
            return
        if _request_api_key(request) != cfg.api_key:
            logger.warning("event=api_key_invalid route=%s", request.url.path)
            raise HTTPException(status_code=401, detail="Unauthorized - invalid API key")

    def _safe_stats_snapshot() -> dict[str, int]:
        try:
            snapshot = manager.stats_snapshot()
            if isinstance(snapshot, dict):
                return snapshot
        except Exception:
            logger.warning("event=stats_snapshot_failed", exc_info=True)
        return {"initializing": 0, "qr_pending": 0, "connected": 0, "disconnected": 0}

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await manager.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await manager.shutdown()

    @app.get("/")
    async def index():
        return {"status": f"{SERVICE_NAME} running", "version": SERVICE_VERSION}

    @app.get("/version")
    async def version():
        return {"version": SERVICE_VERSION, "name": SERVICE_NAME}

    @app.get("/health")
    async def health():
        stats = _safe_stats_snapshot()
        return {
            "ok": True,
            "connected_count": int(stats.get("connected", 0) or 0),
            "qr_pending_count": int(stats.get("qr_pending", 0) or 0),
            "disconnected_count": int(stats.get("disconnected", 0) or 0),
            "initializing_count": int(stats.get("initializing", 0) or 0),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @app.get("/server/status")
    async def server_status(request: Request):
        require_api_key(request)
        instances = [item.to_payload() for item in manager.list()]
        return {"status": "ok", "instancesCount": len(instances), "instances": instances}

    @app.get("/instance/list")
    async def instance_list(request: Request):
        require_api_key(request)
        return {"instances": [item.to_payload() for item in manager.list()]}

    @app.post("/instance/create")
    async def instance_create(payload: CreateInstanceRequest, request: Request):
        require_api_key(request)
        summary = await manager.create(
            payload.id, name=payload.name, webhook_url=payload.webhook
        )
        state = manager.get_state(payload.id)
        return {"id": summary.id, "createdAt": state.created_at, "info": summary.to_payload()}

    @app.get("/instance/{instance_id}")
    async def instance_get(instance_id: str, request: Request):
        require_api_key(request)
        state = manager.get_state(instance_id)
        return {
            "id": state.id,
            "status": state.status,
            "name": state.name,
            "webhook": state.webhook_url,
            "info": state.connection_info,
        }

    @app.get("/instance/{instance_id}/status")
    async def instance_status(instance_id: str, request: Request):
        require_api_key(request)
        state = manager.get_state(instance_id)
        return JSONResponse(
            {"id": state.id, "status": state.status, "info": state.connection_info},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/instance/{instance_id}/qr")
    async def instance_qr(instance_id: str, request: Request):
        require_api_key(request)
        state = manager.get_state(instance_id)
        return JSONResponse(
            {"id": state.id, "status": state.status, "qr": state.pairing_code},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/instance/{instance_id}/qr.png")
    async def instance_qr_png(instance_id: str, request: Request):
        require_api_key(request)
        png = manager.qr_png(instance_id)
        return Response(content=png, media_type="image/png", headers=dict(NO_STORE_HEADERS))

    @app.post("/instance/{instance_id}/send-message")
    async def instance_send_message(
        instance_id: str, payload: SendMessageRequest, request: Request
    ):
        require_api_key(request)
        result = await manager.send_text(instance_id, payload.to, payload.text)
        return {"ok": True, "result": result}

    @app.post("/instance/{instance_id}/send-media")
    async def instance_send_media(
        instance_id: str, payload: SendMediaRequest, request: Request
    ):
        require_api_key(request)
        result = await manager.send_media_by_url(
            instance_id, payload.to, payload.url, payload.caption or ""
        )
        return {"ok": True, "result": result}

    @app.delete("/instance/{instance_id}")
    async def instance_delete(instance_id: str, request: Request):
        require_api_key(request)
        return await manager.delete(instance_id)

    @app.post(BRIDGE_EVENTS_PATH)
    async def bridge_events(request: Request):
        expected = cfg.bridge_token
        if expected:
            token = (
                request.headers.get("X-Provider-Token")
                or request.query_params.get("token")
                or ""
            ).strip()
            if token != expected:
                logger.warning("event=bridge_token_invalid")
                raise HTTPException(status_code=401, detail="unauthorized")
        try:
            payload: Any = await request.json()
        except json.JSONDecodeError:
            raise HTTPException(status_code=422, detail="invalid_json")
        if not isinstance(payload, dict):
            raise HTTPException(status_code=422, detail="invalid_payload")
        instance_id = str(payload.get("instance") or payload.get("id") or "").strip()
        if not instance_id:
            raise HTTPException(status_code=422, detail="invalid_instance")
        accepted = manager.dispatch_bridge_event(instance_id, payload)
        if not accepted:
            logger.info(
                "event=bridge_event_unrouted instance=%s event=%s",
                instance_id,
                payload.get("event"),
            )
        return {"ok": True, "accepted": accepted}

    return app


__all__ = ["create_app"]
