"""News ingestion pipeline: poller, dispatcher, orchestrator and read-side report."""

from daydash.pipeline.dispatcher import DispatchResult, Outcome, TweetDispatcher
from daydash.pipeline.orchestrator import NewsOrchestrator
from daydash.pipeline.poller import FeedPoller, TickResult
from daydash.pipeline.report import build_news_report, get_news_report

__all__ = [
    "DispatchResult",
    "FeedPoller",
    "NewsOrchestrator",
    "Outcome",
    "TickResult",
    "TweetDispatcher",
    "build_news_report",
    "get_news_report",
]
