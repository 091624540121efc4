from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class CacheMetadata(BaseModel):
    """Read-only view over one cached avatar file."""

    model_config = ConfigDict(frozen=True)

    key: str  # 32 lowercase hex chars, also the file name
    size_bytes: int
    last_modified_at: datetime  # File mtime, UTC
