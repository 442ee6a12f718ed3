import json
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Iterator

from loguru import logger

SSE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
}

DATA_PREFIX = "data: "


def sse_event(event_type: str, data: dict | None = None) -> str:
    """Format a Server-Sent Event string."""
    payload = {"type": event_type, **(data or {})}
    return f"data: {json.dumps(payload)}\n\n"


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """
    Decode one SSE line.

    Returns the JSON payload of a ``data: `` line, or None for any other line
    (blank separators, comments, ``event:`` fields) and for malformed JSON,
    which is logged and skipped.
    """
    line = line.rstrip("\r\n")
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX):]
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"[sse] Skipping malformed line ({e}): {raw[:120]!r}")
        return None
    if not isinstance(payload, dict):
        logger.warning(f"[sse] Skipping non-object payload: {raw[:120]!r}")
        return None
    return payload


def iter_sse_payloads(lines: Iterable[str]) -> Iterator[dict[str, Any]]:
    """Yield parsed payloads from SSE lines, in order."""
    for line in lines:
        payload = parse_sse_line(line)
        if payload is not None:
            yield payload


async def aiter_sse_payloads(lines: AsyncIterable[str]) -> AsyncIterator[dict[str, Any]]:
    """Async twin of iter_sse_payloads for streamed response bodies."""
    async for line in lines:
        payload = parse_sse_line(line)
        if payload is not None:
            yield payload
