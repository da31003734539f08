"""Lightweight configuration helpers for the instance worker."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


DEFAULT_BRIDGE_URL = "http://waweb:9001"
DEFAULT_PUBLIC_URL = "http://waworker:8080"
DEFAULT_DATA_DIR = "/app/wa-instances"
DEFAULT_MEDIA_MAX_BYTES = 16 * 1024 * 1024


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("ms"):
        try:
            return float(cleaned[:-2]) / 1000.0
        except ValueError:
            return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    return value if value > 0 else default


def _resolve_data_dir(raw: str | None) -> Path:
    candidate = Path(raw or DEFAULT_DATA_DIR)
    try:
        candidate.mkdir(parents=True, exist_ok=True)
    except OSError:
        alt = Path("/tmp/wa-instances")
        alt.mkdir(parents=True, exist_ok=True)
        return alt
    return candidate


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    data_dir: Path
    port: int
    api_key: str
    bridge_url: str
    bridge_token: str | None
    public_url: str
    restore_timeout: float
    media_fetch_timeout: float
    media_max_bytes: int
    webhook_timeout: float
    webhook_token: str | None


def worker_config() -> WorkerConfig:
    data_dir = _resolve_data_dir(os.getenv("WAWORKER_DATA_DIR"))
    port = _coerce_int(
        os.getenv("WAWORKER_PORT") or os.getenv("SERVER_PORT"), default=8080
    )
    api_key = (os.getenv("SECRET_KEY") or "").strip()
    bridge_url = _normalize_url(os.getenv("WA_BRIDGE_URL"), DEFAULT_BRIDGE_URL)
    bridge_token = (os.getenv("WA_BRIDGE_TOKEN") or "").strip() or None
    public_url = _normalize_url(os.getenv("WAWORKER_PUBLIC_URL"), DEFAULT_PUBLIC_URL)

    restore_timeout = _parse_duration(
        os.getenv("WAWORKER_RESTORE_TIMEOUT"), default=30.0
    )
    media_fetch_timeout = _parse_duration(
        os.getenv("WAWORKER_MEDIA_TIMEOUT"), default=20.0
    )
    media_max_bytes = _coerce_int(
        os.getenv("WAWORKER_MEDIA_MAX_BYTES"), default=DEFAULT_MEDIA_MAX_BYTES
    )
    if media_max_bytes <= 0:
        media_max_bytes = DEFAULT_MEDIA_MAX_BYTES
    webhook_timeout = _parse_duration(
        os.getenv("WAWORKER_WEBHOOK_TIMEOUT"), default=10.0
    )
    webhook_token = (os.getenv("WEBHOOK_SECRET") or "").strip() or None

    return WorkerConfig(
        data_dir=data_dir,
        port=port,
        api_key=api_key,
        bridge_url=bridge_url,
        bridge_token=bridge_token,
        public_url=public_url,
        restore_timeout=restore_timeout,
        media_fetch_timeout=media_fetch_timeout,
        media_max_bytes=media_max_bytes,
        webhook_timeout=webhook_timeout,
        webhook_token=webhook_token,
    )


__all__ = [
    "WorkerConfig",
    "worker_config",
    "DEFAULT_BRIDGE_URL",
    "DEFAULT_PUBLIC_URL",
]
