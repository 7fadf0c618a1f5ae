"""Synchronous dispatch of an envelope posted by an external trigger."""
from __future__ import annotations

from aiohttp import web

from webhook_relay.api.utils import read_json
from webhook_relay.core.exceptions import NotFoundError, PersistenceError, ValidationError
from webhook_relay.runtime import get_runtime

routes = web.RouteTableDef()


@routes.post("/api/v1/dispatch")
async def dispatch_envelope(request: web.Request):
    body = await read_json(request)
    coordinator = get_runtime(request).coordinator
    try:
        outcome = await coordinator.dispatch(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=str(exc)) from exc
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except PersistenceError as exc:
        raise web.HTTPServiceUnavailable(text="Delivery log unavailable, dispatch queued for replay") from exc
    return web.json_response(outcome.model_dump(mode="json"))
