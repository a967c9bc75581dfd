"""API route definitions."""

from __future__ import annotations

import dataclasses
import functools
import logging
import time
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from foodgate.api.middleware import verify_api_key
from foodgate.api.schemas import (
    ClassifierStatusResponse,
    ClassifyFoodRequest,
    ClassifyFoodResponse,
    DetectedClassInfo,
    ErrorResponse,
    GateCheckResponse,
    HealthResponse,
)
from foodgate.ml.engine import EngineState

if TYPE_CHECKING:
    from foodgate.config import Settings
    from foodgate.gate import FoodGate
    from foodgate.ml.classifier import FoodClassifier
    from foodgate.ml.inference import InferencePool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_STATUS_NAMES: dict[EngineState, str] = {
    EngineState.READY: "ready",
    EngineState.LOADING: "loading",
    EngineState.FAILED: "error",
    EngineState.UNLOADED: "unloaded",
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_classifier(request: Request) -> FoodClassifier:
    classifier: FoodClassifier = request.app.state.classifier
    return classifier


def _get_gate(request: Request) -> FoodGate:
    gate: FoodGate = request.app.state.gate
    return gate


@router.post(
    "/classify-food",
    response_model=ClassifyFoodResponse,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}},
    summary="Classify an image as food or not food",
)
async def classify_food(body: ClassifyFoodRequest, request: Request) -> ClassifyFoodResponse:
    """Classify a base64 image. Classification errors fail open (``is_food=true``)."""
    start = time.perf_counter()
    if not body.image.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing image data")

    settings = _get_settings(request)
    threshold = settings.classify_threshold if body.threshold is None else body.threshold
    threshold = max(0.0, min(1.0, threshold))

    classifier = _get_classifier(request)
    pool = _get_inference_pool(request)
    try:
        result = await pool.run(functools.partial(classifier.classify, body.image, threshold=threshold))
    except Exception as exc:
        logger.error("Classification failed, failing open: %s", exc)
        return ClassifyFoodResponse(
            is_food=True,
            confidence=0.0,
            processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
            error=str(exc),
            fail_open=True,
        )

    detected = result.detected_class
    return ClassifyFoodResponse(
        is_food=result.is_food,
        confidence=round(result.confidence, 4),
        processing_time_ms=round((time.perf_counter() - start) * 1000, 2),
        detected_class=DetectedClassInfo(**dataclasses.asdict(detected)) if detected is not None else None,
    )


@router.get(
    "/classify-food",
    response_model=ClassifierStatusResponse,
    summary="Classifier readiness",
)
async def classifier_status(request: Request) -> ClassifierStatusResponse:
    """Report whether the model is loaded, loading, or failed."""
    engine_status = _get_classifier(request).status()
    return ClassifierStatusResponse(
        status=_STATUS_NAMES[engine_status.state],
        error=engine_status.error,
    )


@router.post(
    "/food-gate",
    response_model=GateCheckResponse,
    summary="Decide whether an uploaded image should be analyzed",
)
async def food_gate(file: UploadFile, request: Request) -> GateCheckResponse:
    """Run the food gate on an uploaded image. Never fails; errors let the image through."""
    image_bytes = await file.read()
    result = await _get_gate(request).check(image_bytes)
    return GateCheckResponse(**dataclasses.asdict(result))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    engine_status = _get_classifier(request).status()
    return HealthResponse(
        status="ok",
        classifier_enabled=settings.classifier_enabled,
        model_state=engine_status.state,
        model_error=engine_status.error,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
        rejected_requests=pool.rejected_count,
    )
