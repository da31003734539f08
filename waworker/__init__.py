"""Multi-tenant messaging instance manager."""

from .api import create_app
from .manager import InstanceManager

__all__ = ["create_app", "InstanceManager"]
