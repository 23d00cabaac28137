import asyncio
import signal
from pathlib import Path
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from chunkmerge.config import (
    DEFAULT_EXPIRY_INTERVAL_MINUTES,
    HTTP_PORT,
    get_artifacts_dir,
    get_chunks_base_dir,
    get_cors_origins,
    get_default_data_dir,
    get_session_ttl_minutes,
)
from chunkmerge.engine import UploadEngine
from chunkmerge.routes import register_upload_routes
from chunkmerge.scheduler import start_scheduler, stop_scheduler


def create_app(
    engine: UploadEngine, cors_origins: Optional[list[str]] = None
) -> FastAPI:
    app = FastAPI(
        title="Chunked File Upload API",
        description="API for uploading large files in chunks and merging them",
    )

    if cors_origins is None:
        cors_origins = get_cors_origins()
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_upload_routes(app, engine)
    return app


class UploadServer:
    """Runs the HTTP API and the session expiry job on one event loop."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = HTTP_PORT,
        data_dir: Optional[Path] = None,
        session_ttl_minutes: Optional[int] = None,
        expiry_interval_minutes: int = DEFAULT_EXPIRY_INTERVAL_MINUTES,
        cors_origins: Optional[list[str]] = None,
    ):
        self.host = host
        self.port = port
        self.data_dir = data_dir or get_default_data_dir()
        self.session_ttl_minutes = session_ttl_minutes or get_session_ttl_minutes()
        self.expiry_interval_minutes = expiry_interval_minutes
        self.engine = UploadEngine(self.data_dir)
        self.app = create_app(self.engine, cors_origins)
        self.http_server = None

    async def start(self):
        get_chunks_base_dir(self.data_dir).mkdir(parents=True, exist_ok=True)
        get_artifacts_dir(self.data_dir).mkdir(parents=True, exist_ok=True)

        start_scheduler(
            self.engine,
            interval_minutes=self.expiry_interval_minutes,
            ttl_minutes=self.session_ttl_minutes,
        )

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="info",
            access_log=True,
        )
        self.http_server = uvicorn.Server(config)

        logger.info(f"HTTP server listening on port {self.port}")
        logger.info(f"Writing chunks to: {get_chunks_base_dir(self.data_dir).absolute()}")
        logger.info(f"Writing merged files to: {get_artifacts_dir(self.data_dir).absolute()}")

        await self.http_server.serve()

    async def stop(self):
        logger.info("Shutting down server")

        stop_scheduler()

        if self.http_server:
            self.http_server.should_exit = True
            await asyncio.sleep(0.1)

        logger.info("Server stopped")

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
        """Run the server, blocking until shutdown."""
        asyncio.run(self.run_async())
