from __future__ import annotations

import logging

from aiohttp import web

from meshvpn.services.container import Services
from meshvpn.web.handlers import SERVICES_KEY, routes
from meshvpn.web.middlewares import (auth_middleware_factory, correlation_id_middleware,
                                     error_middleware)

log = logging.getLogger(__name__)


def create_app(services: Services) -> web.Application:
    app = web.Application(
        middlewares=[
            correlation_id_middleware,
            error_middleware,
            auth_middleware_factory(services.auth.authenticate),
        ]
    )
    app[SERVICES_KEY] = services
    app.router.add_routes(routes)

    async def _initial_sync(app: web.Application) -> None:
        # peers may have changed while the process was down
        await app[SERVICES_KEY].tunnel.resync()

    async def _close_cache(app: web.Application) -> None:
        await app[SERVICES_KEY].cache.close()

    app.on_startup.append(_initial_sync)
    app.on_cleanup.append(_close_cache)
    return app


async def start_site(app: web.Application, host: str, port: int) -> web.AppRunner:
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    log.info("http_started host=%s port=%s", host, port)
    return runner
