from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import router, stream_router
from app.config.settings import Settings, get_settings
from app.integrations.binance_ws import BinanceWsClient
from app.services.client_gateway import ClientGateway
from app.services.subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


def _apply_settings(app: FastAPI, settings: Settings) -> None:
    connector = app.state.connector
    connector.url = settings.RELAY_UPSTREAM_URL
    connector.streams = tuple(settings.RELAY_STREAMS)
    connector.backoff_base_sec = settings.RELAY_BACKOFF_BASE_SEC
    connector.backoff_cap_sec = settings.RELAY_BACKOFF_CAP_SEC
    connector.jitter_sec = settings.RELAY_BACKOFF_JITTER_SEC
    connector.send_timeout_sec = settings.RELAY_UPSTREAM_SEND_TIMEOUT_SEC

    gateway = app.state.client_gateway
    gateway.queue_size = settings.RELAY_CLIENT_QUEUE_SIZE
    gateway.send_timeout_sec = settings.RELAY_CLIENT_SEND_TIMEOUT_SEC


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    logging.basicConfig(
        level=settings.RELAY_LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    _apply_settings(app, settings)

    connector = app.state.connector
    connector.start()
    ws_worker = threading.Thread(
        target=connector.run_with_reconnect,
        daemon=True,
        name='binance-ws-worker',
    )
    app.state.ws_worker_thread = ws_worker
    logger.info("[WS][ws_worker_start] thread=binance-ws-worker url=%s", connector.url)
    ws_worker.start()

    try:
        yield
    finally:
        connector.stop()
        ws_worker.join(timeout=1.0)
        logger.info("[WS][ws_worker_stop] thread=binance-ws-worker")


app = FastAPI(title="Market Data Relay", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().RELAY_CORS_ORIGINS,
    allow_methods=['GET', 'POST'],
)
app.include_router(stream_router)
app.include_router(router, prefix="/v1")

app.state.get_settings = get_settings
app.state.connector = BinanceWsClient()
app.state.registry = SubscriptionRegistry(app.state.connector)
app.state.connector.set_on_event(app.state.registry.dispatch)
app.state.client_gateway = ClientGateway(app.state.registry)
