"""Environment-based configuration for FoodGate."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FOODGATE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FOODGATE_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # Deployments that cannot ship the ONNX runtime run the always-pass stub
    classifier_enabled: bool = True

    # Model location. MobileNetV2 (ONNX model zoo, opset 12) expects NCHW
    # float32 input normalized with the ImageNet mean/std.
    model_path: Path = Path("models/mobilenet_v2.onnx")
    model_repo_id: str | None = None
    model_filename: str = "mobilenetv2-12.onnx"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=1, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Model load deadline in seconds
    load_timeout: float = Field(default=30.0, gt=0)

    # Decision thresholds
    threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    classify_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    input_size: int = Field(default=224, ge=1)
    debug: bool = False

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
