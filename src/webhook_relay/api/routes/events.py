"""Event endpoints: the mutation source and per-record delivery history."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from webhook_relay.api.utils import parse_record_id, read_json
from webhook_relay.core.exceptions import NotFoundError
from webhook_relay.domain.dto import EventCreateDTO, EventUpdateDTO
from webhook_relay.runtime import get_runtime

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def create_event(request: web.Request):
    body = await read_json(request)
    try:
        dto = EventCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    service = get_runtime(request).event_service
    record = await service.create_event(
        event_type=dto.event_type,
        payload=dto.payload,
        subject_id=dto.subject_id,
    )
    return web.json_response(record.model_dump(mode="json"), status=201)


@routes.get("/api/v1/events/{event_id}")
async def get_event(request: web.Request):
    record_id = parse_record_id(request.match_info["event_id"])
    service = get_runtime(request).event_service
    try:
        record = await service.get_event(record_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(record.model_dump(mode="json"))


@routes.patch("/api/v1/events/{event_id}")
async def update_event(request: web.Request):
    record_id = parse_record_id(request.match_info["event_id"])
    body = await read_json(request)
    try:
        dto = EventUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    service = get_runtime(request).event_service
    try:
        record = await service.update_event(record_id, dto.model_dump(exclude_unset=True))
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(record.model_dump(mode="json"))


@routes.get("/api/v1/events/{event_id}/deliveries")
async def list_deliveries(request: web.Request):
    record_id = parse_record_id(request.match_info["event_id"])
    service = get_runtime(request).event_service
    try:
        entries = await service.list_deliveries(record_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(
        {
            "deliveries": [entry.model_dump(mode="json", exclude={"envelope"}) for entry in entries],
            "total": len(entries),
        }
    )
