from __future__ import annotations

from gravproxy.models.cache import CacheMetadata

__all__ = [
    "CacheMetadata",
]
