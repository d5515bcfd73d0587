"""Read side: map stored stories to the client-facing news report."""

from __future__ import annotations

from typing import Iterable

from daydash import __version__
from daydash.storage.db import DEFAULT_RECENT_LIMIT, StoryStore
from daydash.storage.models import NewsItem, NewsReport, Story


def build_news_report(stories: Iterable[Story], version: str = __version__) -> NewsReport:
    """One item per story (its latest update), newest first."""
    items = [item for item in (NewsItem.from_story(s) for s in stories) if item is not None]
    items.sort(key=lambda i: i.createtime, reverse=True)
    return NewsReport(items=items, version=version)


async def get_news_report(
    store: StoryStore, limit: int = DEFAULT_RECENT_LIMIT, version: str = __version__
) -> NewsReport:
    """Report over the ``limit`` most recent stories. Store failures propagate."""
    stories = await store.recent_stories(limit)
    return build_news_report(stories, version=version)
