from __future__ import annotations

import asyncio
import logging

from fastapi import FastAPI

from st_gateway.core.settings import GatewaySettings, load_settings
from st_gateway.core.stores import GatewayStore, load_store
from st_gateway.core.transport import ClientFactory, Sleep, default_client_factory
from st_gateway.dependencies import register_exception_handlers
from st_gateway.internal import admin
from st_gateway.routers import chat, status


def create_app(
    settings: GatewaySettings | None = None,
    store: GatewayStore | None = None,
    http_client_factory: ClientFactory | None = None,
    sleep: Sleep | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    _configure_logging(settings.log_level)

    app = FastAPI(
        title="st-chat-gateway",
        version="0.1.0",
        docs_url="/docs",
        redoc_url=None,
    )

    app.state.settings = settings
    app.state.store = store if store is not None else load_store(settings.store_path)
    app.state.http_client_factory = http_client_factory or default_client_factory
    app.state.sleep = sleep or asyncio.sleep

    register_exception_handlers(app)

    app.include_router(chat.router)
    app.include_router(status.router)
    app.include_router(admin.router)

    return app


def _configure_logging(level_name: str) -> None:
    level = logging.getLevelName(level_name.strip().upper())
    if isinstance(level, int):
        logging.getLogger("st_gateway").setLevel(level)


app = create_app()
