"""
Image Search Client

Google Custom Search (image mode) for product image lookup, with
exponential backoff on rate limiting and URL de-duplication.
"""

import asyncio
import logging
import os
import re
from typing import List, Optional

import httpx

from .config import IMAGE_SEARCH_CONFIG

logger = logging.getLogger(__name__)

_WEBP_SUFFIX = re.compile(r"(\.jpg|\.jpeg|\.png|\.gif|\.bmp|\.svg)\.webp$", re.IGNORECASE)
_IMAGE_SUFFIX = re.compile(r"(\.webp|\.jpg|\.jpeg|\.png|\.gif|\.bmp|\.svg)$", re.IGNORECASE)


def unique_image_urls(urls: List[Optional[str]]) -> List[str]:
    """Drop empty and raw-image urls, and urls that differ only by query or extension."""
    seen = set()
    unique = []
    for url in urls:
        if not url or url.startswith("x-raw-image"):
            continue

        base = url.split("?")[0]
        base = _WEBP_SUFFIX.sub(r"\1", base)
        base = _IMAGE_SUFFIX.sub("", base)

        if base not in seen:
            seen.add(base)
            unique.append(url)
    return unique


def clamp_num(num: Optional[int]) -> int:
    max_num = IMAGE_SEARCH_CONFIG["max_num"]
    default = min(IMAGE_SEARCH_CONFIG["default_num"], max_num)
    return max(1, min(num or default, max_num))


class ImageSearchClient:
    """Image lookup against Google Custom Search."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None,
                 backoff_initial: Optional[float] = None):
        self._transport = transport
        self._backoff_initial = (
            IMAGE_SEARCH_CONFIG["backoff_initial_seconds"] if backoff_initial is None else backoff_initial
        )

    @property
    def api_key(self) -> str:
        return os.environ.get("GOOGLE_API_KEY", "")

    @property
    def cse_id(self) -> str:
        return os.environ.get("GOOGLE_CSE_ID", "")

    async def search(self, query: str, num: Optional[int] = None) -> List[str]:
        """Return de-duplicated image urls for a query. Raises httpx.HTTPStatusError on failure."""
        params = {
            "key": self.api_key,
            "cx": self.cse_id,
            "q": query,
            "searchType": "image",
            "num": clamp_num(num),
            "filter": "0",
        }

        retries = IMAGE_SEARCH_CONFIG["backoff_retries"]
        async with httpx.AsyncClient(timeout=IMAGE_SEARCH_CONFIG["timeout_seconds"],
                                     transport=self._transport) as client:
            for attempt in range(retries):
                response = await client.get(IMAGE_SEARCH_CONFIG["endpoint"], params=params)
                if response.status_code != 429 or attempt == retries - 1:
                    break
                wait_time = self._backoff_initial * (2 ** attempt)
                logger.info(f"Rate limit hit, retrying in {wait_time}s (attempt {attempt + 1}/{retries})")
                await asyncio.sleep(wait_time)

        response.raise_for_status()
        items = response.json().get("items") or []
        return unique_image_urls([item.get("link") for item in items])
