"""Timer-driven timeline poller.

Every ``interval`` seconds a tick is fired as its own task: read the cursor,
fetch tweets after it, queue them on the dispatcher. A failed tick is logged
and skipped; the next tick re-queries from the stored cursor.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol, Set

from daydash.errors import DaydashError, StoreError
from daydash.pipeline.dispatcher import TweetDispatcher
from daydash.pipeline.tasklog import LoggerLike, TaskLogger
from daydash.storage.db import StoryStore
from daydash.storage.models import FeedPage, id_sort_key

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 300.0


class FeedClient(Protocol):
    async def fetch(self, since_id: str = "") -> FeedPage:
        ...


@dataclass
class TickResult:
    cursor: str = ""
    fetched: int = 0
    submitted: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class FeedPoller:
    """Polls the feed on a timer and hands new tweets to the dispatcher.

    Usage:
        stop = asyncio.Event()
        poller = FeedPoller(store, feed, dispatcher, interval=300)
        await poller.run(stop)   # returns once stop is set
    """

    def __init__(
        self,
        store: StoryStore,
        feed: FeedClient,
        dispatcher: TweetDispatcher,
        interval: float = DEFAULT_INTERVAL,
        run_immediately: bool = True,
        log: Optional[LoggerLike] = None,
    ) -> None:
        self.store = store
        self.feed = feed
        self.dispatcher = dispatcher
        self.interval = interval
        self.run_immediately = run_immediately
        self.log = TaskLogger(log or logger)
        self.ticks_started = 0
        self.ticks_skipped = 0
        self.last_result: Optional[TickResult] = None
        self._ticks: Set[asyncio.Task] = set()
        self._submitting = 0

    @property
    def in_flight(self) -> int:
        return len(self._ticks)

    async def tick(self) -> TickResult:
        """One poll: cursor → fetch → queue each tweet, oldest first."""
        self.ticks_started += 1
        log = self.log.bind(tick=self.ticks_started)

        try:
            cursor = await self.store.cursor_max()
        except StoreError as e:
            log.error("Cannot read cursor; skipping tick: %s", e)
            return TickResult(error=str(e))

        try:
            page = await self.feed.fetch(cursor)
        except DaydashError as e:
            log.error("Feed fetch failed; skipping tick: %s", e)
            return TickResult(cursor=cursor, error=str(e))

        items = sorted(page.items, key=lambda i: id_sort_key(i.id))
        submitted = 0
        self._submitting += 1
        try:
            for item in items:
                await self.dispatcher.submit(item)
                submitted += 1
        finally:
            self._submitting -= 1

        log.info("Fetched %d tweets after %s; queued %d", len(items), cursor or "<start>", submitted)
        return TickResult(cursor=cursor, fetched=len(items), submitted=submitted)

    async def run_once(self) -> TickResult:
        """Single tick, then wait for the dispatcher to finish the queued items."""
        result = await self.tick()
        self.last_result = result
        await self.dispatcher.join()
        return result

    async def run(self, stop: asyncio.Event) -> None:
        """Fire ticks every ``interval`` seconds until ``stop`` is set.

        Ticks run as independent tasks and may overlap while fetching, but a
        new tick is skipped while an earlier one is still blocked queuing items
        on a full dispatcher. On stop, in-flight ticks are cancelled and awaited.
        """
        self.log.info("Feed poller starting (interval=%.0fs)", self.interval)
        delay = 0.0 if self.run_immediately else self.interval
        try:
            while not await self._wait(stop, delay):
                if self._submitting:
                    self.ticks_skipped += 1
                    self.log.warning("Previous tick still queuing tweets; skipping this tick")
                else:
                    self._spawn_tick()
                delay = self.interval
        finally:
            await self._cancel_ticks()
            self.log.info(
                "Feed poller stopped after %d ticks (%d skipped)",
                self.ticks_started,
                self.ticks_skipped,
            )

    async def _wait(self, stop: asyncio.Event, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; True once stop is set."""
        if delay <= 0:
            return stop.is_set()
        try:
            await asyncio.wait_for(stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def _spawn_tick(self) -> None:
        task = asyncio.create_task(self._guarded_tick())
        self._ticks.add(task)
        task.add_done_callback(self._ticks.discard)

    async def _guarded_tick(self) -> None:
        try:
            self.last_result = await self.tick()
        except Exception:
            self.log.exception("Tick failed unexpectedly")

    async def _cancel_ticks(self) -> None:
        tasks = list(self._ticks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
