from .base import BaseDBManager, PageMarker
from .memory import InMemoryDBManager

__all__ = ["BaseDBManager", "InMemoryDBManager", "PageMarker"]
