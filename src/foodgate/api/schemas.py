"""Pydantic request/response schemas for the FoodGate API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyFoodRequest(BaseModel):
    """Body of a classification request."""

    image: str = Field(description="Base64-encoded image, optionally as a data URL")
    threshold: float | None = Field(default=None, description="Food confidence threshold (clamped to 0.0-1.0)")


class DetectedClassInfo(BaseModel):
    """Top-1 ImageNet class of a classification."""

    index: int
    label: str
    score: float = Field(ge=0.0, le=1.0)


class ClassifyFoodResponse(BaseModel):
    """Classification outcome. ``fail_open`` is set when classification errored."""

    is_food: bool
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time_ms: float
    detected_class: DetectedClassInfo | None = None
    error: str | None = None
    fail_open: bool = False


class ClassifierStatusResponse(BaseModel):
    """Model readiness for the classification endpoint."""

    status: str = Field(description="One of 'ready', 'loading', 'error', or 'unloaded'")
    error: str | None = None
    usage: str = "POST { image: base64, threshold?: 0-1 }"


class GateCheckResponse(BaseModel):
    """Gate decision for an uploaded image."""

    should_proceed: bool
    food_confidence: float = Field(ge=0.0, le=1.0)
    processing_time_ms: float
    rejection_reason: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    classifier_enabled: bool
    model_state: str
    model_error: str | None = None
    concurrent_requests: int
    queue_depth: int
    rejected_requests: int = 0


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
