import asyncio
import signal
from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from pixrepo.api_routes import register_upload_routes
from pixrepo.config import Settings, get_settings
from pixrepo.gateway import Gateway, build_gateway
from pixrepo.metadata import MetadataStore
from pixrepo.scheduler import start_scheduler, stop_scheduler


def create_app(settings: Optional[Settings] = None, gateway: Optional[Gateway] = None) -> FastAPI:
    settings = settings or get_settings()
    if gateway is None:
        metadata = MetadataStore.from_url(settings.DATABASE_URL)
        metadata.create_all()
        gateway = build_gateway(settings, metadata)

    app = FastAPI(title="pixrepo")
    app.state.gateway = gateway
    app.state.settings = settings

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_upload_routes(app, gateway)
    return app


class GatewayServer:
    """Runs the HTTP API and the reconciliation scheduler together."""

    def __init__(self, settings: Settings, host: str = "0.0.0.0", port: int = 8788):
        self.settings = settings
        self.host = host
        self.port = port
        self.http_server: Optional[uvicorn.Server] = None

    async def start(self):
        app = create_app(self.settings)

        if self.settings.RECONCILE_INTERVAL_MINUTES > 0:
            start_scheduler(
                app.state.gateway.reconciler, self.settings.RECONCILE_INTERVAL_MINUTES
            )

        config = uvicorn.Config(
            app,
            host=self.host,
            port=self.port,
            log_level=self.settings.LOG_LEVEL.lower(),
            access_log=True,
        )
        self.http_server = uvicorn.Server(config)
        logger.info(f"pixrepo listening on http://{self.host}:{self.port}")
        await self.http_server.serve()

    async def stop(self):
        logger.info("Shutting down")
        stop_scheduler()
        if self.http_server:
            self.http_server.should_exit = True
            await asyncio.sleep(0.1)

    async def run_async(self):
        loop = asyncio.get_running_loop()

        def handle_shutdown(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            asyncio.create_task(self.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: handle_shutdown(s))

        try:
            await self.start()
        except KeyboardInterrupt:
            await self.stop()

    def run(self):
        asyncio.run(self.run_async())
