"""Tests for the dispatcher, poller, orchestrator, read-side report and CLI."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Union

import pytest
from aiohttp import test_utils, web
from click.testing import CliRunner

from daydash.config import PipelineConfig
from daydash.connectors.images import ImageProcessor
from daydash.connectors.resolver import Resolution
from daydash.errors import (
    ConfigurationError,
    ImageProcessingError,
    StoreError,
    TransientFetchError,
)
from daydash.pipeline.dispatcher import KeyedLock, Outcome, TweetDispatcher, strip_link
from daydash.pipeline.orchestrator import NewsOrchestrator
from daydash.pipeline.poller import FeedPoller
from daydash.pipeline.report import build_news_report, get_news_report
from daydash.pipeline.tasklog import TaskLogger
from daydash.storage.db import StoryStore
from daydash.storage.models import (
    Annotation,
    Entity,
    FeedItem,
    FeedPage,
    LinkRef,
    Story,
    Update,
)

BASE_TIME = datetime(2021, 11, 15, 18, 0, tzinfo=timezone.utc)
MEDIA = "data:image/jpeg;base64,AAAA"


# --- Fakes ---

class FakeResolver:
    """Maps short links to resolutions; an exception value is raised instead."""

    def __init__(self, routes: Dict[str, Union[Resolution, Exception]], delay: float = 0.0):
        self.routes = routes
        self.delay = delay
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def resolve(self, url: str, item_id: Optional[str] = None) -> Resolution:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.routes[url]
        if isinstance(result, Exception):
            raise result
        return result


class FakeImages:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: List[str] = []

    async def process(self, url, width, height, item_id=None) -> str:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return MEDIA


class FakeFeed:
    def __init__(self, items: Optional[List[FeedItem]] = None, error: Optional[Exception] = None):
        self.items = items or []
        self.error = error
        self.since_ids: List[str] = []

    async def fetch(self, since_id: str = "") -> FeedPage:
        self.since_ids.append(since_id)
        if self.error is not None:
            raise self.error
        return FeedPage(items=list(self.items))


class RecordingDispatcher:
    """Stands in for TweetDispatcher when only the submit order matters."""

    def __init__(self):
        self.submitted: List[str] = []

    async def submit(self, item: FeedItem) -> None:
        self.submitted.append(item.id)

    async def join(self) -> None:
        return None


def make_item(
    item_id: str = "10",
    url: Optional[str] = "http://short/a",
    text: Optional[str] = None,
    minutes: int = 0,
    annotations: Optional[List[Annotation]] = None,
) -> FeedItem:
    links = [LinkRef(url=url)] if url else []
    if text is None:
        text = f"Breaking {item_id} {url}" if url else f"Breaking {item_id}"
    return FeedItem(
        id=item_id,
        text=text,
        created_at=BASE_TIME + timedelta(minutes=minutes),
        links=links,
        annotations=annotations or [],
    )


# --- Fixtures ---

@pytest.fixture
def tmp_db(tmp_path):
    return str(tmp_path / "data" / "test.db")


@pytest.fixture
async def store(tmp_db):
    s = StoryStore(tmp_db)
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def resolver():
    return FakeResolver({
        "http://short/a": Resolution("http://long/a", "http://img/a.jpg"),
        "http://short/a2": Resolution("http://long/a", "http://img/a2.jpg"),
        "http://short/b": Resolution("http://long/b"),
        "http://short/broken": TransientFetchError("boom", status=500, step="resolve"),
    })


@pytest.fixture
def dispatcher(store, resolver):
    return TweetDispatcher(store, resolver, FakeImages(), workers=2, queue_size=10)


# --- Dispatcher Workflow Tests ---

class TestTweetDispatcher:
    @pytest.mark.asyncio
    async def test_new_story_created(self, store, dispatcher):
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.CREATED
        assert result.story_url == "http://long/a"
        assert result.has_media
        story = await store.find_by_url("http://long/a")
        assert story.short_url == "http://short/a"
        assert story.update_ids == ["10"]
        update = story.updates[0]
        assert update.text == "Breaking 10"
        assert update.media_url == "http://img/a.jpg"
        assert update.media_data == MEDIA
        assert update.time == int(BASE_TIME.timestamp())

    @pytest.mark.asyncio
    async def test_second_item_appends(self, store, dispatcher):
        await dispatcher.process(make_item("10"))
        result = await dispatcher.process(make_item("11", minutes=5))

        assert result.outcome == Outcome.APPENDED
        story = await store.find_by_url("http://long/a")
        assert story.update_ids == ["10", "11"]
        assert story.latest_update.id == "11"
        assert (await store.find_by_update_id("11")).id == story.id
        assert await store.count_stories() == 1

    @pytest.mark.asyncio
    async def test_image_fetch_404_keeps_update(self, store, resolver):
        async def not_found(request):
            raise web.HTTPNotFound()

        app = web.Application()
        app.router.add_get("/a.jpg", not_found)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            image_url = str(server.make_url("/a.jpg"))
            resolver.routes["http://short/a"] = Resolution("http://long/a", image_url)
            dispatcher = TweetDispatcher(store, resolver, ImageProcessor(retry_attempts=1))
            result = await dispatcher.process(make_item("10"))
        finally:
            await server.close()

        assert result.outcome == Outcome.CREATED
        assert not result.has_media
        update = (await store.find_by_url("http://long/a")).updates[0]
        assert update.id == "10"
        assert update.media_url == image_url
        assert update.media_data == ""

        report = await get_news_report(store)
        assert report.items[0].mediadata == ""

    @pytest.mark.asyncio
    async def test_image_processing_error_is_best_effort(self, store, resolver):
        images = FakeImages(error=ImageProcessingError("bad crop"))
        dispatcher = TweetDispatcher(store, resolver, images)
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.CREATED
        update = (await store.find_by_url("http://long/a")).updates[0]
        assert update.media_url == "http://img/a.jpg"
        assert update.media_data == ""

    @pytest.mark.asyncio
    async def test_no_image_url_skips_processing(self, store, resolver):
        images = FakeImages()
        dispatcher = TweetDispatcher(store, resolver, images)
        await dispatcher.process(make_item("20", url="http://short/b"))

        assert images.calls == []
        update = (await store.find_by_url("http://long/b")).updates[0]
        assert update.media_url == ""
        assert update.media_data == ""

    @pytest.mark.asyncio
    async def test_concurrent_same_url_single_story(self, store, resolver):
        resolver.delay = 0.01
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=2)

        results = await asyncio.gather(
            dispatcher.process(make_item("10", url="http://short/a")),
            dispatcher.process(make_item("11", url="http://short/a2", minutes=1)),
        )

        assert sorted(r.outcome for r in results) == sorted([Outcome.CREATED, Outcome.APPENDED])
        assert await store.count_stories() == 1
        story = await store.find_by_url("http://long/a")
        assert sorted(story.update_ids) == ["10", "11"]

    @pytest.mark.asyncio
    async def test_concurrent_same_item_stored_once(self, store, resolver):
        resolver.delay = 0.01
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=2)

        results = await asyncio.gather(
            dispatcher.process(make_item("10")),
            dispatcher.process(make_item("10")),
        )

        assert sorted(r.outcome.value for r in results) == ["created", "discarded_duplicate"]
        assert len(resolver.calls) == 2
        story = await store.find_by_url("http://long/a")
        assert story.update_ids == ["10"]
        assert await store.count_stories() == 1

    @pytest.mark.asyncio
    async def test_insert_conflict_retried_as_append(self, tmp_db, resolver):
        class RacingStore(StoryStore):
            """Misses the story once, as if another writer inserted it meanwhile."""

            hide_once = True

            async def find_by_url(self, url):
                if self.hide_once:
                    self.hide_once = False
                    return None
                return await super().find_by_url(url)

        racing = RacingStore(tmp_db)
        await racing.initialize()
        await racing.insert(Story("http://long/a", "http://short/a", [Update("9", "Earlier", 1)]))

        dispatcher = TweetDispatcher(racing, resolver, FakeImages())
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.APPENDED
        assert (await racing.find_by_url("http://long/a")).update_ids == ["9", "10"]

    @pytest.mark.asyncio
    async def test_no_link_zero_mutations(self, store, resolver, dispatcher):
        result = await dispatcher.process(make_item("30", url=None))

        assert result.outcome == Outcome.DISCARDED_NO_LINK
        assert resolver.calls == []
        assert await store.count_stories() == 0
        assert await store.cursor_max() == ""

    @pytest.mark.asyncio
    async def test_redelivery_is_noop(self, store, resolver, dispatcher):
        await dispatcher.process(make_item("10"))
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.DISCARDED_DUPLICATE
        assert resolver.calls == ["http://short/a"]
        assert (await store.find_by_url("http://long/a")).update_ids == ["10"]

    @pytest.mark.asyncio
    async def test_resolve_failure_discards(self, store, dispatcher):
        result = await dispatcher.process(make_item("40", url="http://short/broken"))

        assert result.outcome == Outcome.DISCARDED_RESOLVE_FAILED
        assert "boom" in result.error
        assert await store.count_stories() == 0

    @pytest.mark.asyncio
    async def test_dedup_lookup_failure(self, tmp_db, resolver):
        store = StoryStore(tmp_db)  # never initialized
        dispatcher = TweetDispatcher(store, resolver, FakeImages())
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.STORE_FAILED
        assert resolver.calls == []

    @pytest.mark.asyncio
    async def test_write_failure(self, tmp_db, resolver):
        class FailingStore(StoryStore):
            async def insert(self, story):
                raise StoreError("disk full", step="insert")

        store = FailingStore(tmp_db)
        await store.initialize()
        dispatcher = TweetDispatcher(store, resolver, FakeImages())
        result = await dispatcher.process(make_item("10"))

        assert result.outcome == Outcome.STORE_FAILED
        assert "disk full" in result.error
        assert dispatcher.summary.counts[Outcome.STORE_FAILED] == 1

    @pytest.mark.asyncio
    async def test_entities_merged(self, store, dispatcher):
        await dispatcher.process(make_item(
            "10", annotations=[Annotation("Place", "Beijing", 0.9), Annotation("Person", "Xi", 0.8)],
        ))
        await dispatcher.process(make_item(
            "11", minutes=1, annotations=[Annotation("Place", "Beijing", 0.7)],
        ))

        story = await store.find_by_url("http://long/a")
        assert story.entities == [Entity("Place", "Beijing"), Entity("Person", "Xi")]

    def test_strip_link(self):
        link = LinkRef(url="https://t.co/x")
        assert strip_link("News https://t.co/x", link) == "News"
        assert strip_link("https://t.co/x a https://t.co/x", link) == "a https://t.co/x"
        assert strip_link(" plain ", LinkRef(url="")) == "plain"


# --- Worker Pool Tests ---

class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_submit_before_start(self, dispatcher):
        with pytest.raises(RuntimeError):
            await dispatcher.submit(make_item())

    @pytest.mark.asyncio
    async def test_submit_and_join(self, store, dispatcher):
        async with dispatcher:
            assert dispatcher.running
            await dispatcher.submit(make_item("10"))
            await dispatcher.submit(make_item("20", url="http://short/b", minutes=1))
            await dispatcher.submit(make_item("30", url=None))
            await dispatcher.join()

        assert not dispatcher.running
        counts = dispatcher.summary.as_dict()
        assert counts["created"] == 2
        assert counts["discarded_no_link"] == 1
        assert dispatcher.summary.processed == 3
        assert await store.count_stories() == 2

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, dispatcher):
        await dispatcher.start()
        await dispatcher.start()
        assert len(dispatcher._tasks) == dispatcher.workers
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_submit_blocks_when_full(self, store, resolver):
        resolver.gate = asyncio.Event()
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=1, queue_size=1)
        await dispatcher.start()
        try:
            await dispatcher.submit(make_item("10"))
            await asyncio.sleep(0.01)  # worker picks up the first item and blocks
            await dispatcher.submit(make_item("11", minutes=1))
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(dispatcher.submit(make_item("12", minutes=2)), 0.05)

            resolver.gate.set()
            await dispatcher.join()
        finally:
            await dispatcher.stop()
        assert (await store.find_by_url("http://long/a")).update_ids == ["10", "11"]

    @pytest.mark.asyncio
    async def test_submit_nowait_drops(self, store, resolver):
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), queue_size=1)
        assert dispatcher.submit_nowait(make_item("10"))
        assert not dispatcher.submit_nowait(make_item("11"))
        assert dispatcher.summary.dropped == 1
        assert dispatcher.pending == 1

    @pytest.mark.asyncio
    async def test_worker_survives_unexpected_error(self, store, resolver):
        resolver.routes["http://short/bug"] = RuntimeError("unexpected")
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=1)
        async with dispatcher:
            await dispatcher.submit(make_item("1", url="http://short/bug"))
            await dispatcher.submit(make_item("2"))
            await dispatcher.join()
        assert await store.count_stories() == 1

    @pytest.mark.asyncio
    async def test_stop_with_drain(self, store, dispatcher):
        await dispatcher.start()
        await dispatcher.submit(make_item("10"))
        await dispatcher.stop(drain=True)
        assert await store.count_stories() == 1


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_entries_released(self):
        locks = KeyedLock()
        async with locks.acquire("a"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_serializes_same_key(self):
        locks = KeyedLock()
        order: List[str] = []

        async def worker(name: str, key: str):
            async with locks.acquire(key):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one", "k"), worker("two", "k"))
        assert order == ["one-in", "one-out", "two-in", "two-out"]
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_overlap(self):
        locks = KeyedLock()
        order: List[str] = []

        async def worker(name: str, key: str):
            async with locks.acquire(key):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("one", "a"), worker("two", "b"))
        assert order[:2] == ["one-in", "two-in"]


class TestTaskLogger:
    def test_context_prefix(self, caplog):
        log = TaskLogger(logging.getLogger("daydash.test"), tick=3)
        with caplog.at_level(logging.INFO, logger="daydash.test"):
            log.bind(tweet_id="42", step="resolve").info("hello %s", "world")

        record = caplog.records[-1]
        assert record.getMessage() == "[tick=3 tweet_id=42 step=resolve] hello world"
        assert record.tweet_id == "42"

    def test_bind_does_not_mutate_parent(self):
        log = TaskLogger(logging.getLogger("daydash.test"), tick=1)
        log.bind(step="x")
        assert log.extra == {"tick": 1}


# --- Poller Tests ---

class TestFeedPoller:
    @pytest.mark.asyncio
    async def test_tick_uses_cursor(self, store):
        feed = FakeFeed()
        poller = FeedPoller(store, feed, RecordingDispatcher())

        result = await poller.tick()
        assert result.success
        assert feed.since_ids == [""]

        await store.insert(Story("http://long/a", "s", [Update("9", "", 1), Update("10", "", 2)]))
        result = await poller.tick()
        assert feed.since_ids == ["", "10"]
        assert result.cursor == "10"

    @pytest.mark.asyncio
    async def test_tick_submits_oldest_first(self, store):
        feed = FakeFeed([make_item("12"), make_item("9"), make_item("10")])
        dispatcher = RecordingDispatcher()
        poller = FeedPoller(store, feed, dispatcher)

        result = await poller.tick()
        assert dispatcher.submitted == ["9", "10", "12"]
        assert result.fetched == 3
        assert result.submitted == 3

    @pytest.mark.asyncio
    async def test_fetch_failure_skips_tick(self, store):
        feed = FakeFeed(error=TransientFetchError("503", status=503))
        dispatcher = RecordingDispatcher()
        poller = FeedPoller(store, feed, dispatcher)

        result = await poller.tick()
        assert not result.success
        assert dispatcher.submitted == []
        assert feed.since_ids == [""]

    @pytest.mark.asyncio
    async def test_cursor_failure_skips_tick(self, tmp_db):
        feed = FakeFeed([make_item("1")])
        poller = FeedPoller(StoryStore(tmp_db), feed, RecordingDispatcher())

        result = await poller.tick()
        assert not result.success
        assert feed.since_ids == []

    @pytest.mark.asyncio
    async def test_run_once_processes_items(self, store, resolver):
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=1)
        feed = FakeFeed([make_item("11", minutes=1), make_item("10")])
        poller = FeedPoller(store, feed, dispatcher)
        async with dispatcher:
            result = await poller.run_once()

        assert result.submitted == 2
        assert poller.last_result is result
        assert (await store.find_by_url("http://long/a")).update_ids == ["10", "11"]
        assert await store.cursor_max() == "11"

    @pytest.mark.asyncio
    async def test_run_ticks_until_stopped(self, store):
        feed = FakeFeed()
        poller = FeedPoller(store, feed, RecordingDispatcher(), interval=0.02)
        stop = asyncio.Event()

        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.1)
        stop.set()
        await asyncio.wait_for(task, 1.0)

        assert poller.ticks_started >= 2
        assert poller.in_flight == 0

    @pytest.mark.asyncio
    async def test_stop_cancels_in_flight_ticks(self, store):
        started = asyncio.Event()
        cancelled = asyncio.Event()

        class HangingFeed:
            async def fetch(self, since_id: str = "") -> FeedPage:
                started.set()
                try:
                    await asyncio.Event().wait()
                except asyncio.CancelledError:
                    cancelled.set()
                    raise
                return FeedPage()

        poller = FeedPoller(store, HangingFeed(), RecordingDispatcher(), interval=60)
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))
        await asyncio.wait_for(started.wait(), 1.0)
        assert poller.in_flight == 1

        stop.set()
        await asyncio.wait_for(task, 1.0)
        assert cancelled.is_set()
        assert poller.in_flight == 0

    @pytest.mark.asyncio
    async def test_run_without_immediate_tick(self, store):
        poller = FeedPoller(
            store, FakeFeed(), RecordingDispatcher(), interval=60, run_immediately=False
        )
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))
        await asyncio.sleep(0.02)
        stop.set()
        await asyncio.wait_for(task, 1.0)
        assert poller.ticks_started == 0

    @pytest.mark.asyncio
    async def test_skips_tick_while_queue_is_blocked(self, store):
        class BlockedDispatcher(RecordingDispatcher):
            def __init__(self):
                super().__init__()
                self.gate = asyncio.Event()

            async def submit(self, item: FeedItem) -> None:
                await self.gate.wait()
                await super().submit(item)

        dispatcher = BlockedDispatcher()
        feed = FakeFeed([make_item("10")])
        poller = FeedPoller(store, feed, dispatcher, interval=0.05)
        stop = asyncio.Event()
        task = asyncio.create_task(poller.run(stop))

        await asyncio.sleep(0.3)
        assert poller.ticks_started == 1
        assert poller.ticks_skipped >= 2
        assert feed.since_ids == [""]

        dispatcher.gate.set()
        await asyncio.sleep(0.2)
        stop.set()
        await asyncio.wait_for(task, 1.0)

        assert poller.ticks_started >= 2
        assert dispatcher.submitted[0] == "10"


# --- Orchestrator Tests ---

class TestNewsOrchestrator:
    def test_requires_token(self, tmp_db):
        with pytest.raises(ConfigurationError):
            NewsOrchestrator(PipelineConfig(db_path=tmp_db))

    @pytest.mark.asyncio
    async def test_run_once_end_to_end(self, tmp_db, resolver):
        config = PipelineConfig(db_path=tmp_db, bearer_token="token")
        store = StoryStore(tmp_db)
        dispatcher = TweetDispatcher(store, resolver, FakeImages(), workers=1)
        feed = FakeFeed([
            make_item("10"),
            make_item("11", minutes=5),
            make_item("12", url="http://short/b", minutes=2),
        ])
        orchestrator = NewsOrchestrator(config, store=store, feed=feed, dispatcher=dispatcher)
        await orchestrator.initialize()
        try:
            result = await orchestrator.run_once()
            report = await get_news_report(orchestrator.store)
        finally:
            await orchestrator.close()

        assert result.success
        assert [i.id for i in report.items] == ["11", "12"]
        assert report.items[0].storyurl == "http://long/a"

    @pytest.mark.asyncio
    async def test_run_until_stopped(self, tmp_db, resolver):
        config = PipelineConfig(db_path=tmp_db, bearer_token="token", poll_interval=60)
        store = StoryStore(tmp_db)
        dispatcher = TweetDispatcher(store, resolver, FakeImages())
        orchestrator = NewsOrchestrator(
            config, store=store, feed=FakeFeed([make_item("10")]), dispatcher=dispatcher
        )
        await orchestrator.initialize()
        stop = asyncio.Event()
        try:
            task = asyncio.create_task(orchestrator.run(stop))
            await asyncio.sleep(0.1)
            stop.set()
            await asyncio.wait_for(task, 1.0)
            await dispatcher.join()
            assert await store.cursor_max() == "10"
        finally:
            await orchestrator.close()


# --- Report Tests ---

class TestNewsReport:
    def test_latest_update_newest_first(self):
        stories = [
            Story("http://long/a", "http://short/a", [Update("1", "a1", 100), Update("3", "a3", 300)]),
            Story("http://long/b", "http://short/b", [Update("2", "b2", 200, "http://img", MEDIA)]),
            Story("http://long/empty", "http://short/e", []),
        ]
        report = build_news_report(stories, version="9.9")

        assert [i.id for i in report.items] == ["3", "2"]
        assert report.version == "9.9"
        data = report.to_dict()
        assert data["items"][1] == {
            "id": "2",
            "createtime": 200,
            "text": "b2",
            "mediaurl": "http://img",
            "mediadata": MEDIA,
            "storyurl": "http://long/b",
            "shorturl": "http://short/b",
        }

    @pytest.mark.asyncio
    async def test_store_failure_propagates(self, tmp_db):
        with pytest.raises(StoreError):
            await get_news_report(StoryStore(tmp_db))


# --- CLI Tests ---

def _populate(db_path: str) -> None:
    async def run():
        store = StoryStore(db_path)
        await store.initialize()
        await store.insert(Story("http://long/a", "http://short/a", [Update("10", "Breaking", 100)]))
        await store.insert(Story("http://long/b", "http://short/b", [Update("9", "Older", 50)]))

    asyncio.run(run())


class TestCLI:
    @pytest.fixture(autouse=True)
    def isolated(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        for var in ("TWITTER_V2_BEARER_TOKEN", "DAYDASH_DB_PATH", "DAYDASH_POLL_INTERVAL", "DAYDASH_LOG_LEVEL"):
            monkeypatch.delenv(var, raising=False)

    def test_cli_imports(self):
        from daydash.pipeline.cli import cli, main
        assert cli is not None
        assert main is not None

    def test_cli_group_exists(self):
        from daydash.pipeline.cli import cli
        assert {"run", "poll-once", "status", "recent", "report", "cursor"} <= set(cli.commands)

    def test_cursor_and_report(self, tmp_path):
        from daydash.pipeline.cli import cli

        db = str(tmp_path / "cli.db")
        _populate(db)
        runner = CliRunner()

        result = runner.invoke(cli, ["--db", db, "--log-level", "WARNING", "cursor"])
        assert result.exit_code == 0
        assert result.output.strip() == "10"

        result = runner.invoke(cli, ["--db", db, "--log-level", "WARNING", "report", "-n", "5"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [i["id"] for i in data["items"]] == ["10", "9"]
        assert data["version"]

    def test_status_and_recent(self, tmp_path):
        from daydash.pipeline.cli import cli

        db = str(tmp_path / "cli.db")
        _populate(db)
        runner = CliRunner()

        result = runner.invoke(cli, ["--db", db, "status"])
        assert result.exit_code == 0
        assert "Stories: 2" in result.output

        result = runner.invoke(cli, ["--db", db, "recent", "-n", "1"])
        assert result.exit_code == 0
        assert "Breaking" in result.output

    def test_poll_once_requires_token(self, tmp_path):
        from daydash.pipeline.cli import cli

        result = CliRunner().invoke(cli, ["--db", str(tmp_path / "cli.db"), "poll-once"])
        assert result.exit_code == 1
        assert "Configuration error" in result.output

    def test_missing_config_file(self, tmp_path):
        from daydash.pipeline.cli import cli

        result = CliRunner().invoke(cli, ["--config", str(tmp_path / "nope.yaml"), "cursor"])
        assert result.exit_code == 1
