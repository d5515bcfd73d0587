"""Resolve a short/tracking link to its canonical story URL and preview image."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urljoin, urlparse, urlunparse

import aiohttp
from bs4 import BeautifulSoup

from daydash.connectors.retry import TRANSIENT_EXCEPTIONS, transport_retry
from daydash.errors import DecodeError, TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
DEFAULT_TIMEOUT = 15.0

STEP = "resolve"


@dataclass
class Resolution:
    canonical_url: str
    image_url: str = ""


def canonical_url(url: str) -> str:
    """Story key: the resolved URL without query string or fragment."""
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    netloc = parsed.netloc.lower().rstrip(".")
    path = parsed.path or "/"
    return urlunparse((scheme, netloc, path, "", "", ""))


def extract_image_url(
    html: Union[str, bytes], base_url: str = "", encoding: Optional[str] = None
) -> str:
    """Return the og:image (or twitter:image) content of a page, or "".

    Raw bytes are decoded with ``encoding`` when the server declared one,
    otherwise the parser detects the encoding from the document.
    """
    if isinstance(html, bytes):
        soup = BeautifulSoup(html, "lxml", from_encoding=encoding)
    else:
        soup = BeautifulSoup(html, "lxml")
    image = ""
    # last og:image wins
    for tag in soup.find_all("meta", attrs={"property": "og:image"}):
        image = (tag.get("content") or "").strip() or image
    if not image:
        tag = soup.find("meta", attrs={"name": "twitter:image"})
        if tag is not None:
            image = (tag.get("content") or "").strip()
    if image and base_url:
        image = urljoin(base_url, image)
    return image


class StoryResolver:
    """Follow redirects for a link, then read the landing page's preview image."""

    def __init__(
        self,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_TIMEOUT,
        retry_attempts: int = 2,
    ) -> None:
        self.user_agent = user_agent
        self.timeout = timeout
        self.retry_attempts = retry_attempts

    async def resolve(self, url: str, item_id: Optional[str] = None) -> Resolution:
        """GET ``url`` (following redirects) and return (canonical URL, image URL).

        Raises TransientFetchError on network failure or non-2xx status and
        DecodeError when the page cannot be parsed. A page without a preview
        image resolves with an empty ``image_url``.
        """
        if not url or not url.strip():
            raise DecodeError("no link to resolve", step=STEP, item_id=item_id)

        try:
            async for attempt in transport_retry(self.retry_attempts):
                with attempt:
                    final_url, body, charset = await self._fetch_page(url, item_id)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(
                f"error executing request to fetch {url}: {e!r}", step=STEP, item_id=item_id
            ) from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(
                f"error executing request to fetch {url}: {e}", step=STEP, item_id=item_id
            ) from e

        story_url = canonical_url(final_url)
        loop = asyncio.get_event_loop()
        try:
            image_url = await loop.run_in_executor(
                None, extract_image_url, body, final_url, charset
            )
        except Exception as e:
            raise DecodeError(
                f"cannot parse page {final_url}: {e}", step=STEP, item_id=item_id
            ) from e

        if not image_url:
            logger.debug("No preview image on %s", story_url)
        return Resolution(canonical_url=story_url, image_url=image_url)

    async def _fetch_page(self, url: str, item_id: Optional[str]) -> tuple:
        headers = {"User-Agent": self.user_agent}
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url, headers=headers, allow_redirects=True) as resp:
                if not 200 <= resp.status < 300:
                    raise TransientFetchError(
                        f"expected 2xx fetching {url} but got {resp.status}",
                        status=resp.status,
                        step=STEP,
                        item_id=item_id,
                    )
                final_url = str(resp.url)
                body = await resp.read()
                charset = resp.charset
        return final_url, body, charset
