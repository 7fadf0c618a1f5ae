"""Operational rollups."""
from __future__ import annotations

from datetime import timedelta

from aiohttp import web

from webhook_relay.runtime import get_runtime

routes = web.RouteTableDef()

_MAX_WINDOW_MINUTES = 7 * 24 * 60


@routes.get("/api/v1/stats")
async def get_stats(request: web.Request):
    stats = await get_runtime(request).stats_service.get_stats()
    return web.json_response(stats.model_dump(mode="json"))


@routes.get("/api/v1/stats/deliveries")
async def get_delivery_stats(request: web.Request):
    try:
        window_minutes = int(request.rel_url.query.get("window_minutes", "60"))
    except ValueError as exc:
        raise web.HTTPBadRequest(text="window_minutes must be an integer") from exc
    if not 0 < window_minutes <= _MAX_WINDOW_MINUTES:
        raise web.HTTPBadRequest(text=f"window_minutes must be in 1..{_MAX_WINDOW_MINUTES}")
    stats = await get_runtime(request).stats_service.get_delivery_stats(
        window=timedelta(minutes=window_minutes)
    )
    return web.json_response(stats.model_dump(mode="json"))
