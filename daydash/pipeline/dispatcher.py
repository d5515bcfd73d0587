"""Per-tweet workflow: dedup → resolve → image → upsert, run on a bounded worker pool.

Items are queued by the poller and consumed by a fixed number of workers.
Upserts for the same canonical URL are serialized with a keyed lock, so two
tweets about a new story arriving together produce one Story with two Updates.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Dict, List, Optional, Protocol

from daydash.connectors.resolver import Resolution
from daydash.errors import DaydashError, DuplicateUpdateError, StoreError, StoryExistsError
from daydash.pipeline.tasklog import LoggerLike, TaskLogger
from daydash.storage.db import StoryStore
from daydash.storage.models import Entity, FeedItem, LinkRef, Story, Update

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 100
DEFAULT_IMAGE_WIDTH = 600
DEFAULT_IMAGE_HEIGHT = 300


class Resolver(Protocol):
    async def resolve(self, url: str, item_id: Optional[str] = None) -> Resolution:
        ...


class ImageRenderer(Protocol):
    async def process(
        self, url: str, width: int, height: int, item_id: Optional[str] = None
    ) -> str:
        ...


class Outcome(str, Enum):
    DISCARDED_NO_LINK = "discarded_no_link"
    DISCARDED_DUPLICATE = "discarded_duplicate"
    DISCARDED_RESOLVE_FAILED = "discarded_resolve_failed"
    CREATED = "created"
    APPENDED = "appended"
    STORE_FAILED = "store_failed"

    @property
    def upserted(self) -> bool:
        return self in (Outcome.CREATED, Outcome.APPENDED)


@dataclass
class DispatchResult:
    item_id: str
    outcome: Outcome
    story_url: str = ""
    has_media: bool = False
    error: Optional[str] = None


@dataclass
class DispatchSummary:
    """Running totals across everything the dispatcher has processed."""

    counts: Counter = field(default_factory=Counter)
    dropped: int = 0

    def add(self, result: DispatchResult) -> None:
        self.counts[result.outcome] += 1

    @property
    def processed(self) -> int:
        return sum(self.counts.values())

    @property
    def upserted(self) -> int:
        return self.counts[Outcome.CREATED] + self.counts[Outcome.APPENDED]

    def as_dict(self) -> Dict[str, int]:
        out = {o.value: self.counts[o] for o in Outcome}
        out["dropped"] = self.dropped
        return out


class KeyedLock:
    """One asyncio.Lock per key, discarded once nobody holds or waits on it."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def strip_link(text: str, link: LinkRef) -> str:
    """Remove the first occurrence of the link's short URL from the tweet text."""
    if link.url:
        text = text.replace(link.url, "", 1)
    return text.strip()


class TweetDispatcher:
    """Runs the per-tweet workflow for items handed over by the poller.

    Usage:
        dispatcher = TweetDispatcher(store, StoryResolver(), ImageProcessor())
        await dispatcher.start()
        await dispatcher.submit(item)
        await dispatcher.join()
        await dispatcher.stop()
    """

    def __init__(
        self,
        store: StoryStore,
        resolver: Resolver,
        images: ImageRenderer,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        image_width: int = DEFAULT_IMAGE_WIDTH,
        image_height: int = DEFAULT_IMAGE_HEIGHT,
        log: Optional[LoggerLike] = None,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.images = images
        self.workers = workers
        self.image_width = image_width
        self.image_height = image_height
        self.log = TaskLogger(log or logger)
        self.summary = DispatchSummary()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []
        self._url_locks = KeyedLock()

    # --- Worker pool ---

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        """Spawn the worker tasks. Idempotent."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"dispatcher-worker-{n}")
            for n in range(self.workers)
        ]
        self.log.info("Dispatcher started with %d workers", self.workers)

    async def stop(self, drain: bool = False) -> None:
        """Cancel the workers, optionally after the queue has been drained."""
        if drain and self._tasks:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.log.info("Dispatcher stopped (%s)", self.summary.as_dict())

    async def join(self) -> None:
        """Wait until every queued item has been processed."""
        await self._queue.join()

    async def __aenter__(self) -> TweetDispatcher:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.stop()

    async def submit(self, item: FeedItem) -> None:
        """Queue an item, waiting while the queue is full."""
        if not self._tasks:
            raise RuntimeError("dispatcher is not running; call start() first")
        await self._queue.put(item)

    def submit_nowait(self, item: FeedItem) -> bool:
        """Queue an item without waiting; drop and log it when the queue is full."""
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.summary.dropped += 1
            self.log.bind(tweet_id=item.id).warning(
                "Dispatch queue full (%d); dropping tweet", self._queue.maxsize
            )
            return False
        return True

    async def _worker(self, n: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self.process(item)
            except Exception:
                self.log.bind(tweet_id=item.id).exception("Unexpected failure processing tweet")
            finally:
                self._queue.task_done()

    # --- Workflow ---

    async def process(self, item: FeedItem) -> DispatchResult:
        """Run the full workflow for one tweet and record the outcome."""
        result = await self._process(item, self.log.bind(tweet_id=item.id))
        self.summary.add(result)
        return result

    async def _process(self, item: FeedItem, log: TaskLogger) -> DispatchResult:
        link = item.link
        if link is None:
            log.bind(step="link").debug("No link; nothing to index")
            return DispatchResult(item.id, Outcome.DISCARDED_NO_LINK)

        try:
            if await self.store.find_by_update_id(item.id) is not None:
                log.bind(step="dedup").debug("Already stored")
                return DispatchResult(item.id, Outcome.DISCARDED_DUPLICATE)
        except StoreError as e:
            log.bind(step="dedup").error("Dedup lookup failed: %s", e)
            return DispatchResult(item.id, Outcome.STORE_FAILED, error=str(e))

        try:
            resolution = await self.resolver.resolve(link.target, item_id=item.id)
        except DaydashError as e:
            log.bind(step="resolve").warning("Cannot resolve %s: %s", link.target, e)
            return DispatchResult(item.id, Outcome.DISCARDED_RESOLVE_FAILED, error=str(e))

        media_data = await self._render_image(resolution.image_url, item.id, log.bind(step="image"))
        update = Update(
            id=item.id,
            text=strip_link(item.text, link),
            time=item.timestamp,
            media_url=resolution.image_url,
            media_data=media_data,
        )
        entities = [Entity(type=a.type, text=a.normalized_text) for a in item.annotations]

        upsert_log = log.bind(step="upsert")
        try:
            async with self._url_locks.acquire(resolution.canonical_url):
                outcome = await self._upsert(
                    resolution.canonical_url, link.url, update, entities, upsert_log
                )
        except DuplicateUpdateError as e:
            upsert_log.info("Update id already stored elsewhere: %s", e)
            return DispatchResult(
                item.id, Outcome.DISCARDED_DUPLICATE, resolution.canonical_url, error=str(e)
            )
        except StoreError as e:
            upsert_log.error("Upsert failed for %s: %s", resolution.canonical_url, e)
            return DispatchResult(
                item.id, Outcome.STORE_FAILED, resolution.canonical_url, error=str(e)
            )

        upsert_log.info("%s story %s", outcome.value.capitalize(), resolution.canonical_url)
        return DispatchResult(
            item.id, outcome, resolution.canonical_url, has_media=bool(media_data)
        )

    async def _render_image(self, image_url: str, item_id: str, log: TaskLogger) -> str:
        """Best effort: any failure yields an empty media payload."""
        if not image_url:
            return ""
        try:
            return await self.images.process(
                image_url, self.image_width, self.image_height, item_id=item_id
            )
        except DaydashError as e:
            log.warning("Problem getting the encoded media image for %s: %s", image_url, e)
            return ""

    async def _upsert(
        self,
        url: str,
        short_url: str,
        update: Update,
        entities: List[Entity],
        log: TaskLogger,
    ) -> Outcome:
        """Insert-or-append; caller holds the lock for ``url``."""
        if await self.store.find_by_update_id(update.id) is not None:
            raise DuplicateUpdateError("update stored while resolving", step="upsert", item_id=update.id)

        story = await self.store.find_by_url(url)
        if story is None:
            story = Story(url=url, short_url=short_url, updates=[update])
            story.add_entities(entities)
            try:
                await self.store.insert(story)
                return Outcome.CREATED
            except StoryExistsError:
                log.info("Story inserted by another writer; appending instead")
                story = await self.store.find_by_url(url)
                if story is None:
                    raise StoreError(
                        f"story for {url} vanished after insert conflict",
                        step="upsert",
                        item_id=update.id,
                    )

        story.updates.append(update)
        story.add_entities(entities)
        await self.store.update(story)
        return Outcome.APPENDED
