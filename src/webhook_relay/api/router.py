"""API router composition for aiohttp."""
from __future__ import annotations

from aiohttp import web

from webhook_relay.api.routes import dispatch, events, stats

ROUTE_MODULES = [
    events,
    dispatch,
    stats,
]


def setup_routes(app: web.Application) -> None:
    """Attach domain routes to the aiohttp application."""
    for module in ROUTE_MODULES:
        app.add_routes(module.routes)
