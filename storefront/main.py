
from contextlib import asynccontextmanager
from fastapi import FastAPI
from storefront import logger
from storefront.api import cur_version, version_prefix
from storefront.api.routers import admin_routers, public_routers
from storefront.common.custom_exceptions import register_all_exceptions
from storefront.common.logging_setup import setup_logging, shutdown_logging
from storefront.config.admin_config import admin_config
from storefront.config.settings import config_settings
from storefront.db.connection import async_engine
from storefront.middlewares.auth_middleware import AuthenticationMiddleware
from storefront.middlewares.request_id_middleware import RequestIdMiddleware


@asynccontextmanager
async def app_lifespan(app: FastAPI):
    setup_logging()
    logger.info("storefront %s starting , env=%s", cur_version, admin_config.ENV)
    try:
        yield
    finally:
        # at this point new requests accept has been stopped already before calling shutdown
        await async_engine.dispose()
        logger.info("storefront stopped , engine disposed")
        shutdown_logging()


def create_app():
    app = FastAPI(
        title="Storefront",
        version=cur_version,
        lifespan=app_lifespan)

    app.include_router(public_routers)

    if admin_config.ENABLE_ADMIN:
        app.include_router(admin_routers)      # mounts /api/v1/admin

    app.add_middleware(AuthenticationMiddleware, paths=[f"{version_prefix}/health",
                                                        f"{version_prefix}{config_settings.RZPAY_WEBHOOK_PATH}",
                                                        "/docs", "/openapi.json"],
                       maybe_auth_paths=[f"{version_prefix}/orders"])
    app.add_middleware(RequestIdMiddleware)
    register_all_exceptions(app)

    return app

app = create_app()
