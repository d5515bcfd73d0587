"""Background news pipeline: wires store, connectors, dispatcher and poller together.

The store client is built once here and passed explicitly to every component.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from daydash.config import PipelineConfig
from daydash.connectors.images import ImageProcessor
from daydash.connectors.resolver import StoryResolver
from daydash.connectors.twitter import TwitterFeedClient
from daydash.pipeline.dispatcher import TweetDispatcher
from daydash.pipeline.poller import FeedClient, FeedPoller, TickResult
from daydash.storage.db import StoryStore

logger = logging.getLogger(__name__)


class NewsOrchestrator:
    """Owns the lifecycle of the ingestion pipeline.

    Usage:
        orchestrator = NewsOrchestrator(config)
        await orchestrator.initialize()
        try:
            await orchestrator.run(stop_event)
        finally:
            await orchestrator.close()
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[StoryStore] = None,
        feed: Optional[FeedClient] = None,
        dispatcher: Optional[TweetDispatcher] = None,
    ):
        self.config = config.validate()
        self.store = store or StoryStore(config.db_path)
        self.feed = feed or TwitterFeedClient(
            bearer_token=config.bearer_token,
            user_id=config.user_id,
            base_url=config.api_base_url,
            timeout=config.request_timeout,
            retry_attempts=config.feed_retry_attempts,
        )
        self.dispatcher = dispatcher or TweetDispatcher(
            self.store,
            StoryResolver(
                timeout=config.request_timeout,
                retry_attempts=config.fetch_retry_attempts,
            ),
            ImageProcessor(
                timeout=config.request_timeout,
                retry_attempts=config.fetch_retry_attempts,
                max_bytes=config.image_max_bytes,
            ),
            workers=config.workers,
            queue_size=config.queue_size,
            image_width=config.image_width,
            image_height=config.image_height,
        )
        self.poller = FeedPoller(
            self.store, self.feed, self.dispatcher, interval=config.poll_interval
        )

    async def initialize(self) -> None:
        """Open the store and start the dispatcher workers."""
        await self.store.initialize()
        await self.dispatcher.start()

    async def close(self) -> None:
        await self.dispatcher.stop()
        await self.store.close()

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        """Poll until ``stop`` is set (or SIGINT/SIGTERM when no event is given)."""
        if stop is None:
            stop = asyncio.Event()
            _install_signal_handlers(stop)
        await self.poller.run(stop)

    async def run_once(self) -> TickResult:
        """One poll cycle, waiting for every queued tweet to be processed."""
        return await self.poller.run_once()


def _install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_event_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # add_signal_handler is unavailable on Windows event loops
            logger.debug("Cannot install handler for %s", sig)
