from __future__ import annotations

import asyncio
import base64
import logging
from typing import Any, Dict, Optional

import httpx

from .adapter import (
    AdapterConfig,
    AdapterEvent,
    AdapterHandle,
    ConnectionAdapter,
    EventSink,
    MessageReceived,
    PairingCodeReady,
    StatusChanged,
)
from .errors import AdapterFailure


LOGGER = logging.getLogger("waworker.bridge")

BRIDGE_EVENTS_PATH = "/bridge/events"

_QR_EVENTS = {"qr", "wa_qr", "pairing_code"}
_CONNECTED_EVENTS = {"ready", "connected", "open", "authenticated"}
_DISCONNECTED_EVENTS = {"disconnected", "close", "closed", "logout"}
_MESSAGE_EVENTS = {"messages.incoming", "message", "messages.upsert"}


def _body_hint(response: httpx.Response) -> str:
    try:
        text = response.text
    except Exception:
        return ""
    return text.strip()[:200]


def translate_bridge_event(payload: Dict[str, Any]) -> Optional[AdapterEvent]:
    """Map a raw sidecar payload onto an adapter event."""
    raw_event = str(payload.get("event") or "").strip().lower()
    if not raw_event:
        return None
    if raw_event in _QR_EVENTS:
        code = payload.get("qr") or payload.get("code") or payload.get("qr_png")
        if not code:
            return None
        return PairingCodeReady(code=str(code))
    if raw_event in _CONNECTED_EVENTS:
        info = payload.get("info")
        if info is None and payload.get("user") is not None:
            info = {"user": payload.get("user")}
        return StatusChanged(status="connected", info=info)
    if raw_event in _DISCONNECTED_EVENTS:
        reason = payload.get("reason") or payload.get("status_code")
        return StatusChanged(
            status="disconnected", reason=str(reason) if reason is not None else None
        )
    if raw_event in _MESSAGE_EVENTS:
        messages = payload.get("messages")
        if messages is None:
            messages = payload.get("message", payload)
        return MessageReceived(payload=messages)
    state_value = payload.get("state") or payload.get("status") or raw_event
    return StatusChanged(status=str(state_value), info=payload)


class BridgeHandle(AdapterHandle):
    def __init__(
        self, adapter: "BridgeAdapter", instance_id: str, emit: EventSink
    ) -> None:
        self._adapter = adapter
        self.instance_id = instance_id
        self._emit = emit

    def dispatch(self, payload: Dict[str, Any]) -> bool:
        event = translate_bridge_event(payload)
        if event is None:
            LOGGER.info(
                "stage=bridge_event_dropped instance=%s event=%s",
                self.instance_id,
                payload.get("event"),
            )
            return False
        self._emit(event)
        return True

    async def send_text(self, address: str, text: str) -> Dict[str, Any]:
        return await self._adapter._post(
            "/send",
            {"instance": self.instance_id, "to": address, "text": text},
            operation="send_text",
        )

    async def send_media(
        self,
        address: str,
        data: bytes,
        caption: str = "",
        *,
        mimetype: Optional[str] = None,
        filename: Optional[str] = None,
    ) -> Dict[str, Any]:
        body = {
            "instance": self.instance_id,
            "to": address,
            "caption": caption or "",
            "media": base64.b64encode(data).decode("ascii"),
            "mimetype": mimetype or "application/octet-stream",
            "filename": filename,
        }
        return await self._adapter._post("/send", body, operation="send_media")

    async def close(self) -> None:
        self._adapter._forget(self)
        await self._adapter._post(
            "/session/logout", {"instance": self.instance_id}, operation="close"
        )


class BridgeAdapter(ConnectionAdapter):
    """Drives instances hosted by a WhatsApp Web bridge sidecar over HTTP.

    Commands go out as JSON POSTs; the sidecar reports back by posting events
    to ``{public_url}/bridge/events``, which the HTTP layer hands to
    :meth:`dispatch`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        public_url: str,
        token: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._events_url = f"{public_url.rstrip('/')}{BRIDGE_EVENTS_PATH}"
        self._token = (token or "").strip() or None
        self._owns_client = client is None
        self._http = client or httpx.AsyncClient(timeout=timeout)
        self._handles: Dict[str, BridgeHandle] = {}
        self._cleanup: set[asyncio.Task[None]] = set()

    @property
    def token(self) -> Optional[str]:
        return self._token

    async def start(
        self, instance_id: str, config: AdapterConfig, emit: EventSink
    ) -> AdapterHandle:
        handle = BridgeHandle(self, instance_id, emit)
        self._handles[instance_id] = handle
        try:
            await self._post(
                "/session/start",
                {
                    "instance": instance_id,
                    "name": config.name,
                    "webhook_url": self._events_url,
                    "auth_dir": str(config.auth_dir),
                },
                operation="start",
            )
        except AdapterFailure:
            self._forget(handle)
            raise
        except asyncio.CancelledError:
            self._forget(handle)
            self._spawn_logout(instance_id)
            raise
        LOGGER.info("stage=bridge_session_started instance=%s", instance_id)
        return handle

    def dispatch(self, instance_id: str, payload: Dict[str, Any]) -> bool:
        handle = self._handles.get(instance_id)
        if handle is None:
            return False
        return handle.dispatch(payload)

    async def aclose(self) -> None:
        self._handles.clear()
        if self._cleanup:
            await asyncio.gather(*self._cleanup, return_exceptions=True)
        if self._owns_client:
            await self._http.aclose()

    def _forget(self, handle: BridgeHandle) -> None:
        if self._handles.get(handle.instance_id) is handle:
            self._handles.pop(handle.instance_id, None)

    def _spawn_logout(self, instance_id: str) -> None:
        task = asyncio.get_running_loop().create_task(
            self._logout_quietly(instance_id), name=f"bridge-logout-{instance_id}"
        )
        self._cleanup.add(task)
        task.add_done_callback(self._cleanup.discard)

    async def _logout_quietly(self, instance_id: str) -> None:
        try:
            await self._post(
                "/session/logout", {"instance": instance_id}, operation="close"
            )
        except AdapterFailure as exc:
            LOGGER.warning(
                "stage=bridge_cleanup_failed instance=%s error=%s", instance_id, exc.message
            )

    async def _post(
        self, path: str, body: Dict[str, Any], *, operation: str
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {"Content-Type": "application/json; charset=utf-8"}
        if self._token:
            headers["X-Auth-Token"] = self._token
        instance_id = body.get("instance")
        try:
            response = await self._http.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            LOGGER.error(
                "stage=bridge_request_failed op=%s instance=%s error=%s",
                operation,
                instance_id,
                exc,
            )
            raise AdapterFailure(f"bridge {operation} failed: {exc}") from exc
        if not response.is_success:
            hint = _body_hint(response)
            LOGGER.error(
                "stage=bridge_request_failed op=%s instance=%s status=%s body=%s",
                operation,
                instance_id,
                response.status_code,
                hint,
            )
            raise AdapterFailure(
                f"bridge {operation} returned {response.status_code}: {hint}".strip()
            )
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"result": data}


__all__ = ["BridgeAdapter", "BridgeHandle", "translate_bridge_event", "BRIDGE_EVENTS_PATH"]
