import json

import httpx
import pytest

from sitebuilder.exceptions import UpstreamError
from sitebuilder.scraper import (
    FIRECRAWL_SCRAPE_URL,
    sanitize_quotes,
    scrape_markdown,
    scrape_screenshot,
    scrape_url_enhanced,
)

PAGE = {
    "success": True,
    "data": {
        "markdown": "Welcome to “Acme” — we’re here…",
        "metadata": {"title": "Acme", "description": "Widgets"},
    },
}


class Recorder:
    """MockTransport handler that replays canned responses and keeps the requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []

    def __call__(self, request):
        assert str(request.url) == FIRECRAWL_SCRAPE_URL
        assert request.headers["authorization"] == "Bearer fc-test"
        self.bodies.append(json.loads(request.content))
        return self.responses.pop(0)

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def test_sanitize_quotes():
    assert sanitize_quotes("‘a’ “b” «c» – … ") == "'a' \"b\" \"c\" - ... "


@pytest.mark.asyncio
async def test_scrape_url_enhanced_formats_content():
    recorder = Recorder(httpx.Response(200, json=PAGE))
    result = await scrape_url_enhanced("https://acme.test", "fc-test", recorder.client())

    assert result["success"] is True
    assert result["content"].startswith("Title: Acme\nDescription: Widgets\nURL: https://acme.test")
    assert "Welcome to \"Acme\" - we're here..." in result["content"]
    assert result["structured"]["title"] == "Acme"
    assert result["metadata"]["scraper"] == "firecrawl-enhanced"
    assert result["metadata"]["contentLength"] == len(result["content"])

    body = recorder.bodies[0]
    assert body["url"] == "https://acme.test"
    assert body["formats"] == ["markdown"]
    assert body["waitFor"] == 1000
    assert body["timeout"] == 60000
    assert body["blockAds"] is True
    assert body["maxAge"] == 3600000


@pytest.mark.asyncio
async def test_timeout_error_triggers_exactly_one_relaxed_retry():
    recorder = Recorder(
        httpx.Response(408, text='{"error": "SCRAPE_TIMEOUT"}'),
        httpx.Response(200, json=PAGE),
    )
    data = await scrape_markdown("https://slow.test", "fc-test", recorder.client())

    assert data["metadata"]["title"] == "Acme"
    assert len(recorder.bodies) == 2
    retry = recorder.bodies[1]
    assert retry["blockAds"] is False
    assert retry["timeout"] == 90000
    assert "waitFor" not in retry
    assert "actions" not in retry


@pytest.mark.asyncio
async def test_retry_failure_gives_up():
    recorder = Recorder(
        httpx.Response(500, text="request timeout"),
        httpx.Response(500, text="request timeout again"),
    )
    with pytest.raises(UpstreamError, match="after retry"):
        await scrape_markdown("https://slow.test", "fc-test", recorder.client())
    assert len(recorder.bodies) == 2


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    recorder = Recorder(httpx.Response(402, text="Payment required"))
    with pytest.raises(UpstreamError) as exc:
        await scrape_markdown("https://acme.test", "fc-test", recorder.client())
    assert exc.value.status_code == 402
    assert len(recorder.bodies) == 1


@pytest.mark.asyncio
async def test_unsuccessful_payload_raises():
    recorder = Recorder(httpx.Response(200, json={"success": False}))
    with pytest.raises(UpstreamError, match="Failed to scrape content"):
        await scrape_markdown("https://acme.test", "fc-test", recorder.client())


@pytest.mark.asyncio
async def test_screenshot():
    recorder = Recorder(httpx.Response(200, json={
        "success": True,
        "data": {"screenshot": "https://cdn.test/shot.png", "metadata": {"title": "Acme"}},
    }))
    result = await scrape_screenshot("https://acme.test", "fc-test", recorder.client())
    assert result == {"success": True, "screenshot": "https://cdn.test/shot.png", "metadata": {"title": "Acme"}}
    assert recorder.bodies[0]["formats"] == ["screenshot"]


@pytest.mark.asyncio
async def test_screenshot_timeout_is_not_retried():
    recorder = Recorder(httpx.Response(500, text="SCRAPE_TIMEOUT"))
    with pytest.raises(UpstreamError):
        await scrape_screenshot("https://acme.test", "fc-test", recorder.client())
    assert len(recorder.bodies) == 1
