"""Per-request trace context for the HTTP API."""
from __future__ import annotations

import time
from uuid import UUID, uuid4

import structlog
from aiohttp import web

TRACE_ID_HEADER = "X-Trace-Id"
HTTP_REQUEST_ID_HEADER = "X-Request-Id"

# health checks are logged at debug level only
_QUIET_PATHS = frozenset({"/health"})

logger = structlog.get_logger(__name__)


def _header_uuid(request: web.Request, header: str) -> str:
    value = request.headers.get(header)
    if value:
        try:
            return str(UUID(value))
        except ValueError:
            pass
    return str(uuid4())


def _route_name(request: web.Request) -> str:
    resource = request.match_info.route.resource
    return resource.canonical if resource is not None else request.path


def create_trace_middleware(service_name: str):
    """Bind ``trace_id`` and ``http_request_id`` for every log entry of a request.

    ``X-Request-Id`` here identifies the HTTP call. It is bound as
    ``http_request_id`` so it never collides with the delivery ``request_id``
    bound by the dispatch coordinator.
    """

    @web.middleware
    async def trace_middleware(request: web.Request, handler):
        started = time.perf_counter()
        trace_id = _header_uuid(request, TRACE_ID_HEADER)
        http_request_id = _header_uuid(request, HTTP_REQUEST_ID_HEADER)
        request["trace_id"] = trace_id
        request["http_request_id"] = http_request_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            trace_id=trace_id,
            http_request_id=http_request_id,
            service=service_name,
            method=request.method,
            route=_route_name(request),
        )
        status = 500
        try:
            response = await handler(request)
            status = response.status
            response.headers[TRACE_ID_HEADER] = trace_id
            response.headers[HTTP_REQUEST_ID_HEADER] = http_request_id
            return response
        except web.HTTPException as exc:
            status = exc.status_code
            exc.headers[TRACE_ID_HEADER] = trace_id
            exc.headers[HTTP_REQUEST_ID_HEADER] = http_request_id
            raise
        except Exception:
            logger.exception("Unhandled error in request handler")
            raise
        finally:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            if status >= 400:
                logger.warning("Request completed with error status", status_code=status, duration_ms=duration_ms)
            elif request.path in _QUIET_PATHS:
                logger.debug("Request completed", status_code=status, duration_ms=duration_ms)
            else:
                logger.info("Request completed", status_code=status, duration_ms=duration_ms)
            structlog.contextvars.clear_contextvars()

    return trace_middleware
