"""Data models for the news pipeline: feed input, stored stories, report output."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from daydash.errors import DecodeError


def id_sort_key(item_id: str) -> tuple:
    """Ordering key for feed identifiers.

    Digit strings compare numerically (by length, then lexically) so "10" sorts
    after "9" without converting to int. Non-numeric ids sort after every
    numeric one, by length and then lexically.
    """
    item_id = item_id or ""
    if item_id.isdigit():
        stripped = item_id.lstrip("0") or "0"
        return (0, len(stripped), stripped)
    return (1, len(item_id), item_id)


def max_id(ids: List[str]) -> str:
    """Return the highest identifier, or "" for an empty list."""
    ids = [i for i in ids if i]
    if not ids:
        return ""
    return max(ids, key=id_sort_key)


# --- Feed input ---

@dataclass
class LinkRef:
    """A link entity on a feed item."""

    url: str
    expanded_url: str = ""
    display_url: str = ""

    @property
    def target(self) -> str:
        """URL to resolve: the expanded form when present, else the short one."""
        return self.expanded_url or self.url


@dataclass
class Annotation:
    type: str
    normalized_text: str
    probability: float = 0.0


@dataclass
class FeedItem:
    """A single tweet from the timeline."""

    id: str
    text: str
    created_at: datetime
    links: List[LinkRef] = field(default_factory=list)
    annotations: List[Annotation] = field(default_factory=list)

    @property
    def link(self) -> Optional[LinkRef]:
        return self.links[0] if self.links else None

    @property
    def timestamp(self) -> int:
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        return int(created.timestamp())

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> FeedItem:
        """Build from a Twitter v2 tweet object."""
        if not isinstance(data, dict):
            raise DecodeError("tweet is not an object", step="decode")
        item_id = str(data.get("id") or "").strip()
        if not item_id:
            raise DecodeError("tweet has no id", step="decode")

        created_at = _parse_ts(data.get("created_at"))
        if created_at is None:
            raise DecodeError(
                f"tweet has unparsable created_at: {data.get('created_at')!r}",
                step="decode",
                item_id=item_id,
            )

        entities = data.get("entities") or {}
        links = [
            LinkRef(
                url=u.get("url", ""),
                expanded_url=u.get("expanded_url", "") or "",
                display_url=u.get("display_url", "") or "",
            )
            for u in entities.get("urls") or []
            if isinstance(u, dict) and (u.get("url") or u.get("expanded_url"))
        ]
        annotations = [
            Annotation(
                type=a.get("type", ""),
                normalized_text=a.get("normalized_text", ""),
                probability=float(a.get("probability") or 0.0),
            )
            for a in entities.get("annotations") or []
            if isinstance(a, dict) and a.get("normalized_text")
        ]
        return cls(
            id=item_id,
            text=data.get("text", "") or "",
            created_at=created_at,
            links=links,
            annotations=annotations,
        )


@dataclass
class FeedPage:
    """One timeline response. Only ``items`` is consumed by the pipeline."""

    items: List[FeedItem] = field(default_factory=list)
    oldest_id: str = ""
    newest_id: str = ""
    result_count: int = 0
    next_token: str = ""


# --- Stored stories ---

@dataclass
class Update:
    """One feed item's contribution to a story."""

    id: str
    text: str
    time: int
    media_url: str = ""
    media_data: str = ""

    def to_doc(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "time": self.time,
            "mediaurl": self.media_url,
            "mediadata": self.media_data,
        }

    @classmethod
    def from_doc(cls, doc: Dict[str, Any]) -> Update:
        return cls(
            id=str(doc["id"]),
            text=doc.get("text", ""),
            time=int(doc.get("time") or 0),
            media_url=doc.get("mediaurl", "") or "",
            media_data=doc.get("mediadata", "") or "",
        )


@dataclass
class Entity:
    type: str
    text: str


@dataclass
class Story:
    """All updates that point at the same canonical URL.

    Updates are kept in chronological append order: ``updates[-1]`` is the
    latest one.
    """

    url: str
    short_url: str
    updates: List[Update] = field(default_factory=list)
    entities: List[Entity] = field(default_factory=list)
    id: Optional[int] = None

    @property
    def latest_update(self) -> Optional[Update]:
        return self.updates[-1] if self.updates else None

    @property
    def update_ids(self) -> List[str]:
        return [u.id for u in self.updates]

    @property
    def updated_at(self) -> int:
        return max((u.time for u in self.updates), default=0)

    def has_update(self, update_id: str) -> bool:
        return any(u.id == update_id for u in self.updates)

    def add_entities(self, entities: List[Entity]) -> None:
        """Merge entities, keeping the first occurrence of each (type, text)."""
        seen = {(e.type, e.text) for e in self.entities}
        for entity in entities:
            key = (entity.type, entity.text)
            if key in seen:
                continue
            seen.add(key)
            self.entities.append(entity)

    def to_row(self) -> tuple:
        return (
            self.url,
            self.short_url,
            json.dumps([u.to_doc() for u in self.updates]),
            json.dumps([asdict(e) for e in self.entities]),
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> Story:
        updates = _parse_json(row.get("updates_json")) or []
        entities = _parse_json(row.get("entities_json")) or []
        return cls(
            id=row.get("id"),
            url=row["url"],
            short_url=row.get("short_url") or "",
            updates=[Update.from_doc(u) for u in updates],
            entities=[Entity(type=e.get("type", ""), text=e.get("text", "")) for e in entities],
        )


# --- Read side ---

@dataclass
class NewsItem:
    """Client-facing projection of a story's latest update."""

    id: str
    createtime: int
    text: str
    mediaurl: str
    mediadata: str
    storyurl: str
    shorturl: str

    @classmethod
    def from_story(cls, story: Story) -> Optional[NewsItem]:
        update = story.latest_update
        if update is None:
            return None
        return cls(
            id=update.id,
            createtime=update.time,
            text=update.text,
            mediaurl=update.media_url,
            mediadata=update.media_data,
            storyurl=story.url,
            shorturl=story.short_url,
        )


@dataclass
class NewsReport:
    items: List[NewsItem] = field(default_factory=list)
    version: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"items": [asdict(i) for i in self.items], "version": self.version}


# --- Helpers ---

def _parse_ts(val: Any) -> Optional[datetime]:
    """Parse a timestamp string or return None."""
    if val is None:
        return None
    if isinstance(val, datetime):
        return val
    try:
        from dateutil.parser import parse
        return parse(str(val))
    except (ValueError, TypeError, OverflowError):
        return None


def _parse_json(val: Any) -> Optional[Any]:
    """Parse a JSON string or return None."""
    if val is None:
        return None
    if isinstance(val, (dict, list)):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError):
        return None
