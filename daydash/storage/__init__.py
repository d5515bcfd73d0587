"""Storage layer - SQLite story documents with an update-id index."""

from daydash.storage.db import StoryStore
from daydash.storage.models import Entity, FeedItem, LinkRef, NewsItem, NewsReport, Story, Update

__all__ = [
    "StoryStore",
    "Entity",
    "FeedItem",
    "LinkRef",
    "NewsItem",
    "NewsReport",
    "Story",
    "Update",
]
