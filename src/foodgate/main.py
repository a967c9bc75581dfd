"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from foodgate.ml.engine import InferenceEngine

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from foodgate.api.routes import router
from foodgate.config import Settings, get_settings
from foodgate.gate import FoodGate, GateConfig
from foodgate.ml.classifier import FoodClassifier
from foodgate.ml.engine import build_engine
from foodgate.ml.inference import InferencePool

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings, engine: InferenceEngine | None = None) -> None:
    """Wire settings, engine, classifier, pool, and gate onto ``app.state``."""
    if engine is None:
        engine = build_engine(settings)
    classifier = FoodClassifier.from_settings(settings, engine)
    pool = InferencePool(settings.max_concurrent, settings.queue_timeout)
    gate = FoodGate(
        classifier,
        GateConfig(threshold=settings.threshold, verbose=settings.debug),
        pool,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.classifier = classifier
    app.state.inference_pool = pool
    app.state.gate = gate


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting FoodGate (enabled=%s, device=%s, model=%s, threshold=%.2f, max_concurrent=%s)",
        settings.classifier_enabled,
        settings.device,
        settings.model_path,
        settings.threshold,
        settings.max_concurrent,
    )

    init_app_state(app, settings)

    # Load the model off the request path; failures surface on the first check.
    warmup_task = asyncio.create_task(app.state.gate.warmup())

    logger.info("FoodGate ready")
    yield

    logger.info("Shutting down FoodGate")
    if not warmup_task.done():
        warmup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await warmup_task
    app.state.inference_pool.shutdown()
    logger.info("FoodGate shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="FoodGate",
        description="Local food / non-food image gate in front of a remote vision model",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
