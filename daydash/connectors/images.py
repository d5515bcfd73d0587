"""Fetch a story image, smart-crop it to a fixed size and encode it as a data URI."""

from __future__ import annotations

import asyncio
import base64
import logging
from io import BytesIO
from typing import Any, Optional, Tuple

import aiohttp
import smartcrop
from PIL import Image

from daydash.connectors.retry import TRANSIENT_EXCEPTIONS, transport_retry
from daydash.errors import DecodeError, ImageProcessingError, TransientFetchError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 20.0
DEFAULT_QUALITY = 75
# Longest side of the downscaled copy the crop analysis runs on
DEFAULT_ANALYSIS_SIZE = 400
# Largest image body accepted from upstream
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DATA_URI_PREFIX = "data:image/jpeg;base64,"

STEP = "process_image"

Box = Tuple[int, int, int, int]


def decode_image(data: bytes) -> Image.Image:
    """Decode raw bytes into an RGB image."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"error reading source image: {e}", step=STEP) from e
    if img.mode != "RGB":
        img = img.convert("RGB")
    return img


def encode_data_uri(img: Image.Image, quality: int = DEFAULT_QUALITY) -> str:
    """JPEG-encode an image and wrap it as a base64 data URI."""
    buffer = BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return DATA_URI_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")


class ImageProcessor:
    """Turn an image URL into an embeddable, exactly-sized JPEG data URI."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        retry_attempts: int = 2,
        quality: int = DEFAULT_QUALITY,
        analysis_size: int = DEFAULT_ANALYSIS_SIZE,
        cropper: Optional[Any] = None,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ) -> None:
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.quality = quality
        self.analysis_size = analysis_size
        self.cropper = cropper or smartcrop.SmartCrop()
        self.max_bytes = max_bytes

    async def process(
        self, url: str, width: int, height: int, item_id: Optional[str] = None
    ) -> str:
        """Fetch, crop, resize and encode. Every failure raises a DaydashError."""
        if not url:
            raise ImageProcessingError("no image url", step=STEP, item_id=item_id)
        if width <= 0 or height <= 0:
            raise ImageProcessingError(
                f"invalid target size {width}x{height}", step=STEP, item_id=item_id
            )

        try:
            async for attempt in transport_retry(self.retry_attempts):
                with attempt:
                    data = await self._fetch(url, item_id)
        except TRANSIENT_EXCEPTIONS as e:
            raise TransientFetchError(
                f"error fetching image url {url}: {e!r}", step=STEP, item_id=item_id
            ) from e
        except aiohttp.ClientError as e:
            raise TransientFetchError(
                f"error fetching image url {url}: {e}", step=STEP, item_id=item_id
            ) from e

        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, self.render, data, width, height)
        except (DecodeError, ImageProcessingError) as e:
            e.item_id = e.item_id or item_id
            raise

    async def _fetch(self, url: str, item_id: Optional[str]) -> bytes:
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as resp:
                if not 200 <= resp.status < 300:
                    raise TransientFetchError(
                        f"expected http 2xx status code for {url} but got {resp.status} instead",
                        status=resp.status,
                        step=STEP,
                        item_id=item_id,
                    )
                declared = resp.content_length
                if declared is not None and declared > self.max_bytes:
                    raise ImageProcessingError(
                        f"image at {url} is {declared} bytes, limit is {self.max_bytes}",
                        step=STEP,
                        item_id=item_id,
                    )
                chunks = []
                received = 0
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    received += len(chunk)
                    if received > self.max_bytes:
                        raise ImageProcessingError(
                            f"image at {url} exceeds {self.max_bytes} bytes",
                            step=STEP,
                            item_id=item_id,
                        )
                    chunks.append(chunk)
                return b"".join(chunks)

    def render(self, data: bytes, width: int, height: int) -> str:
        """Synchronous decode → crop → resize → encode pipeline."""
        img = decode_image(data)
        box = self.find_best_crop(img, width, height)
        try:
            region = img.crop(box)
            if region.size != (width, height):
                region = region.resize((width, height), Image.Resampling.LANCZOS)
            return encode_data_uri(region, self.quality)
        except (OSError, ValueError) as e:
            raise ImageProcessingError(f"error encoding cropped image: {e}", step=STEP) from e

    def find_best_crop(self, img: Image.Image, width: int, height: int) -> Box:
        """Best crop box (left, upper, right, lower) for the target aspect ratio.

        The analysis runs on a downscaled copy; the winning box is scaled back
        to source coordinates and clamped to the image bounds.
        """
        analysis = img
        if max(img.size) > self.analysis_size:
            analysis = img.copy()
            analysis.thumbnail((self.analysis_size, self.analysis_size))
        factor_x = img.width / analysis.width
        factor_y = img.height / analysis.height

        try:
            result = self.cropper.crop(analysis, width, height, prescale=False)
            top = result["top_crop"]
            x, y = float(top["x"]), float(top["y"])
            w, h = float(top["width"]), float(top["height"])
        except Exception as e:
            raise ImageProcessingError(f"error finding best crop: {e}", step=STEP) from e

        left = max(0, int(round(x * factor_x)))
        upper = max(0, int(round(y * factor_y)))
        right = min(img.width, int(round((x + w) * factor_x)))
        lower = min(img.height, int(round((y + h) * factor_y)))
        if right <= left or lower <= upper:
            raise ImageProcessingError(
                f"best crop is empty: {(left, upper, right, lower)}", step=STEP
            )
        return left, upper, right, lower
