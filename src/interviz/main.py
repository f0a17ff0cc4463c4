"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from interviz.api.routes import router
from interviz.config import Settings, get_settings
from interviz.errors import VisualizerError
from interviz.ml.inference import InferencePool
from interviz.ml.model_manager import OnnxModelLoader
from interviz.visualizer import Visualizer

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings, client: httpx.AsyncClient) -> None:
    """Attach settings, inference pool, model loader and visualizer to ``app.state``."""
    inference_pool = InferencePool(settings)
    model_loader = OnnxModelLoader(settings, client, inference_pool)
    app.state.settings = settings
    app.state.http_client = client
    app.state.inference_pool = inference_pool
    app.state.model_loader = model_loader
    app.state.visualizer = Visualizer(settings, client, model_loader)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Interviz (device=%s, max_concurrent=%s, metadata=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_metadata_url,
    )

    async with httpx.AsyncClient(timeout=settings.http_timeout, follow_redirects=True) as client:
        init_state(app, settings, client)

        if settings.model_metadata_url:
            try:
                await app.state.visualizer.init_app(settings.model_metadata_url)
            except VisualizerError as exc:
                logger.warning("Startup model load failed, serving in error state: %s", exc)

        logger.info("Interviz ready (state=%s)", app.state.visualizer.state)
        yield

        logger.info("Shutting down Interviz")
        app.state.model_loader.shutdown()
        app.state.inference_pool.shutdown()
    logger.info("Interviz shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Interviz",
        description="Interactive model visualizer: metadata, label maps, test images and classification",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the application with uvicorn using INTERVIZ_HOST / INTERVIZ_PORT."""
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
