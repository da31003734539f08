from __future__ import annotations

from typing import Any


class InstanceError(Exception):
    """Base class for failures surfaced by the instance manager."""

    kind = "instance_error"

    def __init__(self, message: str | None = None) -> None:
        self.message = (message or self.kind).strip() or self.kind
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.kind, "message": self.message}


class InvalidArgument(InstanceError):
    """Raised when caller input is missing or malformed."""

    kind = "invalid_argument"


class NotFound(InstanceError):
    """Raised when an operation targets an unknown instance id."""

    kind = "not_found"


class AdapterFailure(InstanceError):
    """Raised when the underlying connection could not start or send."""

    kind = "adapter_failure"


class UpstreamFetchError(InstanceError):
    """Raised when a media URL cannot be fetched."""

    kind = "upstream_fetch_error"


class PersistenceFailure(InstanceError):
    """Raised when instance metadata cannot be written or read."""

    kind = "persistence_failure"


__all__ = [
    "InstanceError",
    "InvalidArgument",
    "NotFound",
    "AdapterFailure",
    "UpstreamFetchError",
    "PersistenceFailure",
]
