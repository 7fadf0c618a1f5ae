"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import web

from webhook_relay.api.router import setup_routes
from webhook_relay.db.migrations import create_migration_runner
from webhook_relay.db.pool import close_pool, init_pool
from webhook_relay.logging_config import configure_logging
from webhook_relay.middleware.trace import create_trace_middleware
from webhook_relay.otel import setup_otel
from webhook_relay.runtime import create_runtime_hooks
from webhook_relay.settings import settings


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def create_app(*, with_runtime: bool = True) -> web.Application:
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    if with_runtime:
        start_runtime, stop_runtime = create_runtime_hooks(settings)
        app.on_startup.append(init_pool)
        app.on_startup.append(create_migration_runner())
        app.on_startup.append(start_runtime)
        app.on_cleanup.append(stop_runtime)
        app.on_cleanup.append(close_pool)

    setup_otel(app)
    return app


def main() -> None:
    configure_logging(settings.log_level)
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
