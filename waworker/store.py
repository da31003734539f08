from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from .errors import PersistenceFailure
from .metrics import RESTORE_FAILURES


LOGGER = logging.getLogger("waworker.store")

META_PREFIX = "meta-"
META_SUFFIX = ".json"
AUTH_PREFIX = "auth-"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(slots=True)
class InstanceRecord:
    id: str
    name: str
    webhook_url: Optional[str] = None
    created_at: int = field(default_factory=_now_ms)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "webhook": self.webhook_url,
            "created_at": self.created_at,
        }

    @classmethod
    def from_payload(cls, data: Any) -> "InstanceRecord":
        if not isinstance(data, dict):
            raise ValueError("record_not_an_object")
        instance_id = str(data.get("id") or "").strip()
        if not instance_id:
            raise ValueError("record_missing_id")
        webhook = data.get("webhook") or data.get("webhook_url") or None
        created_raw = data.get("created_at", data.get("createdAt"))
        try:
            created_at = int(float(created_raw))
        except (TypeError, ValueError):
            created_at = 0
        return cls(
            id=instance_id,
            name=str(data.get("name") or instance_id),
            webhook_url=str(webhook) if webhook else None,
            created_at=created_at,
        )


class MetadataStore:
    """Durable key/record persistence for instance configuration."""

    async def put(self, record: InstanceRecord) -> None:
        raise NotImplementedError

    async def get(self, instance_id: str) -> Optional[InstanceRecord]:
        raise NotImplementedError

    async def list_all(self) -> list[InstanceRecord]:
        raise NotImplementedError

    async def remove(self, instance_id: str) -> None:
        raise NotImplementedError

    def auxiliary_path(self, instance_id: str) -> Path:
        raise NotImplementedError


class FileMetadataStore(MetadataStore):
    """One JSON file per instance under ``root``.

    Writes go to a temporary file that is fsynced and renamed over the
    target, so a reader never observes a partially written record. Ids are
    percent-encoded into file names; auxiliary adapter state for an id lives
    in ``auth-<id>`` next to its record.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    @staticmethod
    def _encode(instance_id: str) -> str:
        return quote(instance_id, safe="")

    def _record_path(self, instance_id: str) -> Path:
        return self._root / f"{META_PREFIX}{self._encode(instance_id)}{META_SUFFIX}"

    def auxiliary_path(self, instance_id: str) -> Path:
        return self._root / f"{AUTH_PREFIX}{self._encode(instance_id)}"

    async def put(self, record: InstanceRecord) -> None:
        try:
            await asyncio.to_thread(self._put_sync, record)
        except OSError as exc:
            LOGGER.error(
                "stage=store_put_failed instance=%s error=%s", record.id, exc
            )
            raise PersistenceFailure(f"failed to persist instance {record.id}: {exc}") from exc

    async def get(self, instance_id: str) -> Optional[InstanceRecord]:
        path = self._record_path(instance_id)
        try:
            return await asyncio.to_thread(self._read_sync, path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise PersistenceFailure(
                f"failed to read instance {instance_id}: {exc}"
            ) from exc

    async def list_all(self) -> list[InstanceRecord]:
        try:
            return await asyncio.to_thread(self._list_sync)
        except OSError as exc:
            raise PersistenceFailure(f"failed to list instances: {exc}") from exc

    async def remove(self, instance_id: str) -> None:
        try:
            await asyncio.to_thread(self._remove_sync, instance_id)
        except OSError as exc:
            LOGGER.error(
                "stage=store_remove_failed instance=%s error=%s", instance_id, exc
            )
            raise PersistenceFailure(
                f"failed to remove instance {instance_id}: {exc}"
            ) from exc

    def _put_sync(self, record: InstanceRecord) -> None:
        target = self._record_path(record.id)
        data = json.dumps(record.to_payload(), ensure_ascii=False).encode("utf-8")
        fd, tmp_name = tempfile.mkstemp(
            prefix=".tmp-", suffix=META_SUFFIX, dir=str(self._root)
        )
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, target)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        self._fsync_dir()

    def _fsync_dir(self) -> None:
        try:
            dir_fd = os.open(str(self._root), os.O_RDONLY)
        except OSError:
            return
        try:
            os.fsync(dir_fd)
        except OSError:
            pass
        finally:
            os.close(dir_fd)

    @staticmethod
    def _read_sync(path: Path) -> InstanceRecord:
        raw = path.read_text(encoding="utf-8")
        return InstanceRecord.from_payload(json.loads(raw))

    def _list_sync(self) -> list[InstanceRecord]:
        records: list[InstanceRecord] = []
        for path in sorted(self._root.glob(f"{META_PREFIX}*{META_SUFFIX}")):
            try:
                record = self._read_sync(path)
            except (OSError, ValueError) as exc:
                RESTORE_FAILURES.labels("unreadable_record").inc()
                LOGGER.warning(
                    "stage=restore_skipped path=%s error=%s", path.name, exc
                )
                continue
            expected = unquote(path.name[len(META_PREFIX) : -len(META_SUFFIX)])
            if record.id != expected:
                LOGGER.warning(
                    "stage=record_id_mismatch path=%s id=%s", path.name, record.id
                )
            records.append(record)
        return records

    def _remove_sync(self, instance_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self._record_path(instance_id).unlink()
        aux = self.auxiliary_path(instance_id)
        if aux.is_dir():
            shutil.rmtree(aux, ignore_errors=False)
        else:
            with contextlib.suppress(FileNotFoundError):
                aux.unlink()
        self._fsync_dir()


__all__ = ["InstanceRecord", "MetadataStore", "FileMetadataStore"]
