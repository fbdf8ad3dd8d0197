import asyncio
import logging

from meshvpn.cache import build_cache
from meshvpn.core.config import load_settings
from meshvpn.core.logging import setup_logging
from meshvpn.db.session import create_engine, make_sessionmaker
from meshvpn.services.container import build_services
from meshvpn.services.tunnel.provisioner import build_provisioner
from meshvpn.web.app import create_app, start_site

log = logging.getLogger(__name__)


async def main() -> None:
    setup_logging()
    settings = load_settings()

    engine = create_engine(settings.database_url)
    sessions = make_sessionmaker(engine)
    cache = build_cache(settings.redis_url, settings.cache_backend)
    provisioner = build_provisioner(settings)
    services = build_services(settings, sessions, cache, provisioner)

    app = create_app(services)
    runner = await start_site(app, settings.web_host, settings.web_port)
    log.info("app_start env=%s tunnel_mode=%s", settings.env, settings.tunnel_mode)
    try:
        await asyncio.Event().wait()
    finally:
        await runner.cleanup()
        await engine.dispose()
        log.info("app_stop")


if __name__ == "__main__":
    asyncio.run(main())
