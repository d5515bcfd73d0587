"""Error taxonomy for the news ingestion pipeline.

Every error carries the workflow step and, where known, the feed item id that
produced it so log lines can be attributed to a specific tick or item.
"""

from __future__ import annotations

from typing import Optional


class DaydashError(Exception):
    """Base error with step / item context."""

    def __init__(
        self,
        message: str,
        *,
        step: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.item_id = item_id

    def __str__(self) -> str:
        parts = []
        if self.step:
            parts.append(f"step={self.step}")
        if self.item_id:
            parts.append(f"item={self.item_id}")
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ConfigurationError(DaydashError):
    """Missing credential or connection setting. Fatal at startup."""


class TransientFetchError(DaydashError):
    """Network failure or non-2xx response from an upstream."""

    def __init__(self, message: str, *, status: Optional[int] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.status = status


class DecodeError(DaydashError):
    """Malformed upstream JSON, HTML or image payload."""


class ImageProcessingError(DaydashError):
    """Image crop/resize/encode failed. Downgraded to a no-media update."""


class StoreError(DaydashError):
    """Connect, query or write failure in the story store."""


class StoryExistsError(StoreError):
    """Insert hit the unique canonical URL index."""


class DuplicateUpdateError(StoreError):
    """An update id is already stored on some story."""
