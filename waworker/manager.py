from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import io
import logging
import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, AsyncIterator, Dict, Optional
from urllib.parse import urlsplit

import httpx
import qrcode

from .adapter import AdapterConfig, ConnectionAdapter
from .errors import (
    AdapterFailure,
    InstanceError,
    InvalidArgument,
    NotFound,
    UpstreamFetchError,
)
from .forwarder import EventForwarder
from .metrics import RESTORE_FAILURES, SEND_TOTAL
from .registry import InstanceRegistry
from .state import INITIALIZING, InstanceState, InstanceSummary
from .store import InstanceRecord, MetadataStore


LOGGER = logging.getLogger("waworker")

USER_SUFFIX = "@s.whatsapp.net"
RESTORE_TIMEOUT = 30.0
MEDIA_FETCH_TIMEOUT = 20.0
MEDIA_MAX_BYTES = 16 * 1024 * 1024
CLOSE_TIMEOUT = 10.0

_ADDRESS_NOISE = re.compile(r"[\s\-()+.]")
_DATA_URL_PNG = "data:image/png;base64,"


def normalize_address(to: str) -> str:
    """Turn a bare phone number into the network's user address."""
    cleaned = (to or "").strip()
    if not cleaned:
        raise InvalidArgument("missing_recipient")
    if "@" in cleaned:
        return cleaned
    digits = _ADDRESS_NOISE.sub("", cleaned)
    if not digits:
        raise InvalidArgument("missing_recipient")
    return f"{digits}{USER_SUFFIX}"


def _validate_http_url(value: str, *, error: str) -> str:
    cleaned = (value or "").strip()
    try:
        parts = urlsplit(cleaned)
    except ValueError as exc:
        raise InvalidArgument(error) from exc
    if parts.scheme not in {"http", "https"} or not parts.netloc:
        raise InvalidArgument(error)
    return cleaned


def _filename_from_url(url: str) -> Optional[str]:
    name = PurePosixPath(urlsplit(url).path).name
    return name or None


@dataclass(slots=True)
class _OpLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class InstanceManager:
    """Create, restore, query and tear down messaging instances.

    The manager persists an :class:`InstanceRecord` before an instance's
    adapter is started, so every record on disk is either live in the
    registry or restorable by the next :meth:`start`. Operations on one id
    are serialized; operations on different ids run independently.
    """

    def __init__(
        self,
        store: MetadataStore,
        adapter: ConnectionAdapter,
        *,
        forwarder: Optional[EventForwarder] = None,
        registry: Optional[InstanceRegistry] = None,
        restore_timeout: float = RESTORE_TIMEOUT,
        media_fetch_timeout: float = MEDIA_FETCH_TIMEOUT,
        media_max_bytes: int = MEDIA_MAX_BYTES,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._store = store
        self._adapter = adapter
        self._forwarder = forwarder or EventForwarder()
        self._registry = registry or InstanceRegistry()
        self._registry.set_listener(self._on_event)
        self._restore_timeout = restore_timeout
        self._media_fetch_timeout = media_fetch_timeout
        self._media_max_bytes = media_max_bytes
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(
            timeout=media_fetch_timeout, follow_redirects=True
        )
        self._op_locks: Dict[str, _OpLock] = {}
        self._started = False

    @property
    def registry(self) -> InstanceRegistry:
        return self._registry

    @contextlib.asynccontextmanager
    async def _op_lock(self, instance_id: str) -> AsyncIterator[None]:
        """Serialize create, restore and delete for one id.

        The entry is dropped once nobody holds or waits on it, so ids that
        are looked up once do not accumulate.
        """
        entry = self._op_locks.get(instance_id)
        if entry is None:
            entry = _OpLock()
            self._op_locks[instance_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._op_locks.get(instance_id) is entry:
                del self._op_locks[instance_id]

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        records = await self._store.list_all()
        tasks = [
            asyncio.get_running_loop().create_task(
                self._restore(record), name=f"restore-{record.id}"
            )
            for record in records
        ]
        if tasks:
            await asyncio.gather(*tasks)
        LOGGER.info(
            "stage=manager_started restored=%s total=%s",
            len(self._registry),
            len(records),
        )

    async def _restore(self, record: InstanceRecord) -> None:
        try:
            async with self._op_lock(record.id):
                if record.id in self._registry:
                    return
                await self._start_instance(record)
        except AdapterFailure as exc:
            RESTORE_FAILURES.labels("adapter").inc()
            LOGGER.warning(
                "stage=restore_failed instance=%s error=%s", record.id, exc.message
            )
        except Exception:
            RESTORE_FAILURES.labels("exception").inc()
            LOGGER.exception("stage=restore_failed instance=%s", record.id)

    async def shutdown(self) -> None:
        states = await self._registry.unregister_all()
        for state in states:
            await self._close_handle(state)
        await self._forwarder.aclose()
        await self._adapter.aclose()
        if self._owns_http:
            await self._http.aclose()
        self._started = False
        LOGGER.info("stage=manager_stopped closed=%s", len(states))

    async def create(
        self,
        instance_id: str,
        *,
        name: Optional[str] = None,
        webhook_url: Optional[str] = None,
    ) -> InstanceSummary:
        if not instance_id or not instance_id.strip():
            raise InvalidArgument("missing_id")
        webhook = (webhook_url or "").strip() or None
        if webhook is not None:
            webhook = _validate_http_url(webhook, error="invalid_webhook_url")
        display_name = (name or "").strip() or instance_id

        async with self._op_lock(instance_id):
            if instance_id in self._registry:
                raise InvalidArgument("instance_already_active")
            existing = await self._store.get(instance_id)
            record = InstanceRecord(
                id=instance_id, name=display_name, webhook_url=webhook
            )
            if existing is not None and existing.created_at:
                record.created_at = existing.created_at
            await self._store.put(record)
            state = await self._start_instance(record)
        LOGGER.info(
            "stage=created instance=%s restarted=%s",
            instance_id,
            "true" if existing is not None else "false",
        )
        return state.summary()

    async def _start_instance(self, record: InstanceRecord) -> InstanceState:
        channel = self._registry.new_channel()
        config = AdapterConfig(
            name=record.name,
            webhook_url=record.webhook_url,
            auth_dir=self._store.auxiliary_path(record.id),
        )
        try:
            handle = await asyncio.wait_for(
                self._adapter.start(record.id, config, channel.put_nowait),
                timeout=self._restore_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise AdapterFailure(
                f"adapter start for {record.id} timed out after {self._restore_timeout:g}s"
            ) from exc
        except InstanceError:
            raise
        except Exception as exc:
            LOGGER.exception("stage=adapter_start_failed instance=%s", record.id)
            raise AdapterFailure(str(exc) or "adapter_start_failed") from exc

        state = InstanceState(
            id=record.id,
            name=record.name,
            webhook_url=record.webhook_url,
            status=INITIALIZING,
            created_at=record.created_at,
            handle=handle,
        )
        try:
            await self._registry.register(state, channel)
        except InstanceError:
            await self._close_handle(state)
            raise
        return state

    def get_state(self, instance_id: str) -> InstanceState:
        state = self._registry.get(instance_id)
        if state is None:
            raise NotFound(f"instance {instance_id} not found")
        return state

    def list(self) -> list[InstanceSummary]:
        return self._registry.list()

    def stats_snapshot(self) -> Dict[str, int]:
        return self._registry.stats_snapshot()

    async def send_text(self, instance_id: str, to: str, text: str) -> Dict[str, Any]:
        self.get_state(instance_id)
        if not text or not text.strip():
            raise InvalidArgument("missing_text")
        address = normalize_address(to)
        async with self._registry.exclusive(instance_id) as state:
            return await self._send(
                state, "text", lambda handle: handle.send_text(address, text)
            )

    async def send_media_by_url(
        self, instance_id: str, to: str, url: str, caption: str = ""
    ) -> Dict[str, Any]:
        self.get_state(instance_id)
        address = normalize_address(to)
        media_url = _validate_http_url(url, error="invalid_media_url")
        data, mimetype = await self._fetch_media(instance_id, media_url)
        filename = _filename_from_url(media_url)
        async with self._registry.exclusive(instance_id) as state:
            return await self._send(
                state,
                "media",
                lambda handle: handle.send_media(
                    address,
                    data,
                    caption or "",
                    mimetype=mimetype,
                    filename=filename,
                ),
            )

    async def _send(self, state: InstanceState, kind: str, operation) -> Dict[str, Any]:
        handle = state.handle
        if handle is None:
            SEND_TOTAL.labels(kind, "no_adapter").inc()
            raise NotFound(f"instance {state.id} has no active connection")
        try:
            result = await operation(handle)
        except InstanceError:
            SEND_TOTAL.labels(kind, "failed").inc()
            LOGGER.error("stage=send_fail instance=%s kind=%s", state.id, kind)
            raise
        except Exception as exc:
            SEND_TOTAL.labels(kind, "failed").inc()
            LOGGER.exception("stage=send_fail instance=%s kind=%s", state.id, kind)
            raise AdapterFailure(str(exc) or "send_failed") from exc
        SEND_TOTAL.labels(kind, "ok").inc()
        LOGGER.info("stage=send_ok instance=%s kind=%s", state.id, kind)
        return result

    async def _fetch_media(self, instance_id: str, url: str) -> tuple[bytes, Optional[str]]:
        try:
            return await asyncio.wait_for(
                self._download(url), timeout=self._media_fetch_timeout
            )
        except asyncio.TimeoutError as exc:
            LOGGER.warning("stage=media_fetch_timeout instance=%s url=%s", instance_id, url)
            raise UpstreamFetchError(
                f"media fetch timed out after {self._media_fetch_timeout:g}s"
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            LOGGER.warning(
                "stage=media_fetch_failed instance=%s url=%s error=%s",
                instance_id,
                url,
                exc.__class__.__name__,
            )
            raise UpstreamFetchError(f"media fetch failed: {exc}") from exc

    async def _download(self, url: str) -> tuple[bytes, Optional[str]]:
        async with self._http.stream("GET", url) as response:
            if not response.is_success:
                raise UpstreamFetchError(f"media fetch returned {response.status_code}")
            buf = bytearray()
            async for chunk in response.aiter_bytes():
                buf.extend(chunk)
                if len(buf) > self._media_max_bytes:
                    raise UpstreamFetchError("media_too_large")
            mimetype = response.headers.get("content-type")
        if mimetype:
            mimetype = mimetype.split(";", 1)[0].strip() or None
        return bytes(buf), mimetype

    async def delete(self, instance_id: str) -> Dict[str, Any]:
        if not instance_id or not instance_id.strip():
            raise InvalidArgument("missing_id")
        async with self._op_lock(instance_id):
            state = await self._registry.unregister(instance_id)
            if state is not None:
                await self._close_handle(state)
            await self._store.remove(instance_id)
        LOGGER.info(
            "stage=deleted instance=%s was_active=%s",
            instance_id,
            "true" if state is not None else "false",
        )
        return {"id": instance_id, "deleted": True}

    async def _close_handle(self, state: InstanceState) -> None:
        handle = state.handle
        state.handle = None
        if handle is None:
            return
        try:
            await asyncio.wait_for(handle.close(), timeout=CLOSE_TIMEOUT)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning(
                "stage=close_failed instance=%s error=%s",
                state.id,
                str(exc) or exc.__class__.__name__,
            )

    def qr_png(self, instance_id: str) -> bytes:
        state = self.get_state(instance_id)
        code = state.pairing_code
        if not code:
            raise NotFound(f"instance {instance_id} has no pending pairing code")
        if code.startswith(_DATA_URL_PNG):
            with contextlib.suppress(binascii.Error, ValueError):
                return base64.b64decode(code[len(_DATA_URL_PNG) :], validate=True)
        return self._build_qr_png(code)

    def _build_qr_png(self, data: str) -> bytes:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(data)
        qr.make(fit=True)
        img = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
        buf = io.BytesIO()
        img.save(buf, format="PNG")
        return buf.getvalue()

    def dispatch_bridge_event(self, instance_id: str, payload: Dict[str, Any]) -> bool:
        if instance_id not in self._registry:
            return False
        return self._adapter.dispatch(instance_id, payload)

    def _on_event(self, state: InstanceState, event: Dict[str, Any]) -> None:
        self._forwarder.forward(state.id, state.webhook_url, event)


__all__ = ["InstanceManager", "normalize_address", "USER_SUFFIX"]
