"""
Firecrawl scraping: page markdown for the AI context and viewport screenshots.

A scrape that fails with a timeout-flavoured error is retried exactly once
with relaxed options (longer timeout, ad blocking off, no extra wait).
"""

import re
from datetime import datetime, timezone

import httpx
from loguru import logger

from sitebuilder.config import get_settings
from sitebuilder.exceptions import UpstreamError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

FIRECRAWL_SCRAPE_URL = "https://api.firecrawl.dev/v1/scrape"
CACHE_MAX_AGE_MS = 3_600_000  # accept Firecrawl's cached copy if under an hour old

MARKDOWN_OPTIONS = {
    "formats": ["markdown"],
    "waitFor": 1000,
    "timeout": 60000,
    "blockAds": True,
    "maxAge": CACHE_MAX_AGE_MS,
    "actions": [{"type": "wait", "milliseconds": 1000}],
}

MARKDOWN_RETRY_OPTIONS = {
    "formats": ["markdown"],
    "timeout": 90000,
    "blockAds": False,
    "maxAge": CACHE_MAX_AGE_MS,
}

SCREENSHOT_OPTIONS = {
    "formats": ["screenshot"],
    "waitFor": 3000,
    "timeout": 30000,
    "blockAds": True,
    "actions": [{"type": "wait", "milliseconds": 2000}],
}

_QUOTE_REPLACEMENTS = [
    (re.compile("[‘’‚‛]"), "'"),  # smart single quotes
    (re.compile("[“”„‟]"), '"'),  # smart double quotes
    (re.compile("[«»]"), '"'),  # guillemets
    (re.compile("[‹›]"), "'"),  # single guillemets
    (re.compile("[–—]"), "-"),  # en and em dash
    (re.compile("…"), "..."),
    (re.compile("\u00a0"), " "),  # non-breaking space
]


def sanitize_quotes(text: str) -> str:
    """Replace smart quotes, dashes, ellipses and NBSPs with ASCII."""
    for pattern, replacement in _QUOTE_REPLACEMENTS:
        text = pattern.sub(replacement, text)
    return text


def is_timeout_error(body: str) -> bool:
    return "SCRAPE_TIMEOUT" in body or "timeout" in body


# ---------------------------------------------------------------------------
# Firecrawl API
# ---------------------------------------------------------------------------

async def _post_scrape(client: httpx.AsyncClient, api_key: str, url: str, options: dict) -> httpx.Response:
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    return await client.post(FIRECRAWL_SCRAPE_URL, headers=headers, json={"url": url, **options})


def _payload_data(resp: httpx.Response, failure: str) -> dict:
    try:
        data = resp.json()
    except ValueError:
        raise UpstreamError("Firecrawl", resp.status_code, f"non-JSON response: {resp.text[:300]}")
    if not data.get("success") or not data.get("data"):
        raise UpstreamError("Firecrawl", resp.status_code, failure)
    return data["data"]


async def scrape_markdown(url: str, api_key: str, client: httpx.AsyncClient | None = None) -> dict:
    """Return Firecrawl's ``data`` object for ``url``, retrying once on timeout."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=get_settings().scrape_timeout)
    try:
        resp = await _post_scrape(client, api_key, url, MARKDOWN_OPTIONS)
        if resp.is_success:
            return _payload_data(resp, "Failed to scrape content")

        error = resp.text
        logger.error(f"[scrape-url-enhanced] Firecrawl API error: {error[:300]}")
        if not is_timeout_error(error):
            raise UpstreamError("Firecrawl", resp.status_code, error)

        logger.info("[scrape-url-enhanced] Timeout detected, retrying with simpler settings...")
        retry = await _post_scrape(client, api_key, url, MARKDOWN_RETRY_OPTIONS)
        if not retry.is_success:
            raise UpstreamError("Firecrawl", retry.status_code, f"after retry: {retry.text}")
        data = _payload_data(retry, "Failed to scrape content after retry")
        logger.info("[scrape-url-enhanced] Retry successful")
        return data
    finally:
        if owns_client:
            await client.aclose()


async def scrape_url_enhanced(url: str, api_key: str, client: httpx.AsyncClient | None = None) -> dict:
    """Scrape ``url`` and format its markdown for the AI prompt."""
    logger.info(f"[scrape-url-enhanced] Scraping with Firecrawl: {url}")
    data = await scrape_markdown(url, api_key, client)

    metadata = data.get("metadata") or {}
    markdown = sanitize_quotes(data.get("markdown") or "")
    title = sanitize_quotes(metadata.get("title") or "")
    description = sanitize_quotes(metadata.get("description") or "")

    content = (
        f"Title: {title}\n"
        f"Description: {description}\n"
        f"URL: {url}\n\n"
        f"Main Content:\n{markdown}"
    ).strip()

    return {
        "success": True,
        "url": url,
        "content": content,
        "structured": {
            "title": title,
            "description": description,
            "content": markdown,
            "url": url,
        },
        "metadata": {
            "scraper": "firecrawl-enhanced",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "contentLength": len(content),
            "cached": data.get("cached", False),
            **metadata,
        },
        "message": "URL scraped successfully with Firecrawl",
    }


async def scrape_screenshot(url: str, api_key: str, client: httpx.AsyncClient | None = None) -> dict:
    """Capture a viewport screenshot of ``url``."""
    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=get_settings().scrape_timeout)
    try:
        resp = await _post_scrape(client, api_key, url, SCREENSHOT_OPTIONS)
        if not resp.is_success:
            raise UpstreamError("Firecrawl", resp.status_code, resp.text)
        data = _payload_data(resp, "Failed to capture screenshot")
        if not data.get("screenshot"):
            raise UpstreamError("Firecrawl", resp.status_code, "Failed to capture screenshot")
    finally:
        if owns_client:
            await client.aclose()

    return {
        "success": True,
        "screenshot": data["screenshot"],
        "metadata": data.get("metadata"),
    }
