"""Upstream connectors: timeline feed, story resolver, image processor."""

from daydash.connectors.images import ImageProcessor
from daydash.connectors.resolver import Resolution, StoryResolver, canonical_url
from daydash.connectors.twitter import TwitterFeedClient

__all__ = [
    "ImageProcessor",
    "Resolution",
    "StoryResolver",
    "TwitterFeedClient",
    "canonical_url",
]
