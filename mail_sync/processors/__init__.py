"""Email processors."""

from .base import BaseProcessor
from .sync import SyncProcessor

__all__ = ["BaseProcessor", "SyncProcessor"]
