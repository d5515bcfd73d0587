"""Twitter v2 timeline client: fetch tweets newer than a given id."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

import aiohttp

from daydash.connectors.retry import TRANSIENT_EXCEPTIONS, transport_retry
from daydash.errors import ConfigurationError, DecodeError, TransientFetchError
from daydash.storage.models import FeedItem, FeedPage

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.twitter.com/2"
# cnnbrk (https://api.twitter.com/2/users/by/username/cnnbrk)
DEFAULT_USER_ID = "428333"
DEFAULT_FIELDS = "created_at,entities"
DEFAULT_TIMEOUT = 30.0

STEP = "fetch_feed"


class TwitterFeedClient:
    """Fetch a user's timeline with a bearer token."""

    def __init__(
        self,
        bearer_token: str,
        user_id: str = DEFAULT_USER_ID,
        base_url: str = DEFAULT_BASE_URL,
        fields: str = DEFAULT_FIELDS,
        timeout: float = DEFAULT_TIMEOUT,
        retry_attempts: int = 1,
    ) -> None:
        self.bearer_token = bearer_token or ""
        self.user_id = user_id
        self.base_url = base_url.rstrip("/")
        self.fields = fields
        self.timeout = timeout
        self.retry_attempts = retry_attempts

    @property
    def timeline_url(self) -> str:
        return f"{self.base_url}/users/{self.user_id}/tweets"

    async def fetch(self, since_id: str = "") -> FeedPage:
        """GET the timeline, scoped to tweets after ``since_id`` when given."""
        if not self.bearer_token.strip():
            raise ConfigurationError("TWITTER_V2_BEARER_TOKEN is blank but shouldn't be", step=STEP)

        params = {"tweet.fields": self.fields}
        if since_id and since_id.strip():
            params["since_id"] = since_id.strip()
        headers = {
            "Content-Type": "application/json; charset=UTF-8",
            "Authorization": f"Bearer {self.bearer_token}",
        }

        try:
            async for attempt in transport_retry(self.retry_attempts):
                with attempt:
                    payload = await self._get_json(params, headers)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(
                f"error when sending request to Twitter API server: {e!r}", step=STEP
            ) from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(
                f"error when sending request to Twitter API server: {e}", step=STEP
            ) from e

        return self._parse_page(payload)

    async def _get_json(self, params: Dict[str, str], headers: Dict[str, str]) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.timeline_url, params=params, headers=headers) as resp:
                if not 200 <= resp.status < 300:
                    body = (await resp.text(errors="replace"))[:200]
                    raise TransientFetchError(
                        f"Twitter API returned HTTP {resp.status}: {body}",
                        status=resp.status,
                        step=STEP,
                    )
                try:
                    return await resp.json(content_type=None)
                except ValueError as e:
                    raise DecodeError(
                        f"problem decoding the response from the Twitter API server: {e}",
                        step=STEP,
                    ) from e

    def _parse_page(self, payload: Any) -> FeedPage:
        if not isinstance(payload, dict):
            raise DecodeError("timeline response is not a JSON object", step=STEP)

        data = payload.get("data") or []
        if not isinstance(data, list):
            raise DecodeError("timeline 'data' is not a list", step=STEP)

        items = []
        for raw in data:
            try:
                items.append(FeedItem.from_api(raw))
            except DecodeError as e:
                logger.warning("Skipping malformed tweet: %s", e)

        meta = payload.get("meta") or {}
        page = FeedPage(
            items=items,
            oldest_id=str(meta.get("oldest_id") or ""),
            newest_id=str(meta.get("newest_id") or ""),
            result_count=int(meta.get("result_count") or 0),
            next_token=str(meta.get("next_token") or ""),
        )
        logger.debug("Fetched %d tweets (newest=%s)", len(items), page.newest_id or "-")
        return page
