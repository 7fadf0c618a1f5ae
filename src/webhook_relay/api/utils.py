"""Helper utilities for API handlers."""
from __future__ import annotations

from typing import Any

from aiohttp import web


async def read_json(request: web.Request) -> dict[str, Any]:
    """Parse JSON body from request, raising HTTPBadRequest on invalid input."""
    try:
        data = await request.json()
    except ValueError as exc:
        raise web.HTTPBadRequest(text="Invalid JSON payload") from exc
    if not isinstance(data, dict):
        raise web.HTTPBadRequest(text="JSON body must be an object")
    return data


def parse_record_id(value: str) -> int:
    try:
        record_id = int(value)
    except (TypeError, ValueError) as exc:
        raise web.HTTPBadRequest(text="Invalid event id") from exc
    if record_id <= 0:
        raise web.HTTPBadRequest(text="Invalid event id")
    return record_id
