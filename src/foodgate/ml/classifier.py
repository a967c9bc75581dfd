"""Food / non-food image classifier.

Runs a MobileNetV2 ImageNet classifier and reduces its 1000 class scores to a
single "how food-like is this image" confidence: the softmax probability mass
on the food and food-related classes. The top-1 class alone is not enough; a
plate of pasta often scores highest as "plate".
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import numpy as np

from foodgate.errors import ClassificationError
from foodgate.ml.labels import FOOD_CLASSES, FOOD_INDICES, NUM_CLASSES, get_label_name
from foodgate.ml.preprocessing import DEFAULT_INPUT_SIZE, ImagePreprocessor

if TYPE_CHECKING:
    from collections.abc import Iterable

    from numpy.typing import NDArray

    from foodgate.config import Settings
    from foodgate.ml.engine import EngineStatus, InferenceEngine
    from foodgate.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = Path("models/mobilenet_v2.onnx")
DEFAULT_THRESHOLD: float = 0.15

# Sorted so the reduction always sums in the same order.
_FOOD_CLASS_ARRAY = np.array(sorted(FOOD_CLASSES), dtype=np.intp)
_ACTUAL_FOOD_ARRAY = np.array(sorted(FOOD_INDICES), dtype=np.intp)


@dataclass(frozen=True)
class ClassifierConfig:
    """Classifier options.

    ``model_path`` points at an ImageNet-1k ONNX export taking NCHW float32
    input normalized with ``IMAGENET_MEAN`` / ``IMAGENET_STD`` from
    ``foodgate.ml.preprocessing``.
    """

    model_path: Path = DEFAULT_MODEL_PATH
    threshold: float = DEFAULT_THRESHOLD
    input_size: int = DEFAULT_INPUT_SIZE
    debug: bool = False

    def __post_init__(self) -> None:
        if not 0.0 <= self.threshold <= 1.0:
            raise ValueError(f"threshold must be within [0, 1], got {self.threshold}")
        if self.input_size < 1:
            raise ValueError(f"input_size must be positive, got {self.input_size}")

    def with_overrides(self, **overrides: Any) -> ClassifierConfig:
        """Return a copy with every non-None override applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        if "model_path" in changes:
            changes["model_path"] = Path(changes["model_path"])
        return dataclasses.replace(self, **changes) if changes else self


@dataclass(frozen=True)
class DetectedClass:
    """The top-1 ImageNet class of a classification."""

    index: int
    label: str
    score: float


@dataclass(frozen=True)
class ClassificationResult:
    """Outcome of classifying a single image."""

    is_food: bool
    confidence: float
    detected_class: DetectedClass | None
    actual_food_confidence: float = 0.0
    inference_time_ms: float = 0.0


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float64]:
    """Numerically stable softmax over a 1-D score vector."""
    shifted = logits.astype(np.float64) - np.max(logits)
    exp = np.exp(shifted)
    return exp / exp.sum()


class FoodClassifier:
    """Orchestrates preprocessing, inference, and score reduction."""

    def __init__(
        self,
        engine: InferenceEngine,
        config: ClassifierConfig | None = None,
        preprocessor: ImagePreprocessor | None = None,
    ) -> None:
        self._engine = engine
        self._config = config if config is not None else ClassifierConfig()
        self._preprocessor = preprocessor if preprocessor is not None else ImagePreprocessor()

    @classmethod
    def from_settings(cls, settings: Settings, engine: InferenceEngine) -> FoodClassifier:
        # classify_threshold is the HTTP request default, applied per call by the route
        config = ClassifierConfig(
            model_path=settings.model_path,
            input_size=settings.input_size,
            debug=settings.debug,
        )
        preprocessor = ImagePreprocessor(
            max_image_pixels=settings.max_image_pixels,
            max_file_size=settings.max_file_size,
        )
        return cls(engine, config, preprocessor)

    @property
    def config(self) -> ClassifierConfig:
        return self._config

    @property
    def engine(self) -> InferenceEngine:
        return self._engine

    # -- Public API ---------------------------------------------------------

    def classify(
        self,
        image: ImageInput,
        config: ClassifierConfig | None = None,
        **overrides: Any,
    ) -> ClassificationResult:
        """Classify one image as food or not food.

        Args:
            image: Encoded image bytes or a base64 string.
            config: Replaces the classifier's config for this call.
            **overrides: Individual ``ClassifierConfig`` fields to override.

        Raises:
            ClassificationError: On any failure. Preprocessing and model
                errors keep their specific subclass (``DecodeError``,
                ``ModelLoadError``, ...).
        """
        cfg = (config if config is not None else self._config).with_overrides(**overrides)

        if self._engine.passthrough:
            return ClassificationResult(is_food=True, confidence=1.0, detected_class=None)

        self._engine.load_model(cfg.model_path)
        return self._classify_loaded(image, cfg)

    def classify_many(
        self,
        images: Iterable[ImageInput],
        config: ClassifierConfig | None = None,
        **overrides: Any,
    ) -> list[ClassificationResult]:
        """Classify images in order, loading the model at most once."""
        cfg = (config if config is not None else self._config).with_overrides(**overrides)
        images = list(images)

        if self._engine.passthrough:
            return [ClassificationResult(is_food=True, confidence=1.0, detected_class=None) for _ in images]

        self._engine.load_model(cfg.model_path)
        return [self._classify_loaded(image, cfg) for image in images]

    def is_food(self, image: ImageInput, threshold: float = 0.3) -> bool:
        """Shorthand for ``classify(image, threshold=threshold).is_food``."""
        return self.classify(image, threshold=threshold).is_food

    def warm(self, model_path: Path | str | None = None) -> None:
        """Load the model without classifying anything.

        ``model_path`` overrides the configured path, matching what a later
        ``classify(..., model_path=...)`` will ask the engine for.
        """
        self._engine.load_model(self._config.model_path if model_path is None else model_path)

    def status(self) -> EngineStatus:
        return self._engine.status()

    # -- Internal -----------------------------------------------------------

    def _classify_loaded(self, image: ImageInput, cfg: ClassifierConfig) -> ClassificationResult:
        preprocessed = self._preprocessor.preprocess(image, cfg.input_size)

        start = time.perf_counter()
        try:
            scores = self._engine.run(preprocessed.data)
        except ClassificationError:
            raise
        except Exception as exc:
            raise ClassificationError(f"Inference failed: {exc}") from exc
        inference_time_ms = (time.perf_counter() - start) * 1000

        if scores.shape != (NUM_CLASSES,):
            raise ClassificationError(f"Model returned {scores.size} scores, expected {NUM_CLASSES}")

        result = self._reduce(scores, cfg.threshold, inference_time_ms)

        log = logger.info if cfg.debug else logger.debug
        top = result.detected_class
        if top is not None:
            log("Top class: %d %s (%.1f%%)", top.index, top.label, top.score * 100)
        log(
            "Food mass: %.1f%% (actual food %.1f%%), threshold %.2f, is_food=%s, inference %.2fms",
            result.confidence * 100,
            result.actual_food_confidence * 100,
            cfg.threshold,
            result.is_food,
            inference_time_ms,
        )
        return result

    @staticmethod
    def _reduce(scores: NDArray[np.float32], threshold: float, inference_time_ms: float) -> ClassificationResult:
        probs = softmax(scores)
        if not np.all(np.isfinite(probs)):
            raise ClassificationError("Model returned non-finite scores")

        top_index = int(np.argmax(probs))
        food_mass = min(1.0, max(0.0, float(probs[_FOOD_CLASS_ARRAY].sum())))
        actual_food_mass = min(1.0, max(0.0, float(probs[_ACTUAL_FOOD_ARRAY].sum())))

        return ClassificationResult(
            is_food=food_mass >= threshold,
            confidence=food_mass,
            detected_class=DetectedClass(
                index=top_index,
                label=get_label_name(top_index) or f"class {top_index}",
                score=float(probs[top_index]),
            ),
            actual_food_confidence=actual_food_mass,
            inference_time_ms=inference_time_ms,
        )


# ---------------------------------------------------------------------------
# Process default
# ---------------------------------------------------------------------------

_default_classifier: FoodClassifier | None = None
_default_lock = threading.Lock()


def get_default_classifier() -> FoodClassifier:
    """Return the process-wide classifier bound to the default engine."""
    global _default_classifier
    with _default_lock:
        if _default_classifier is None:
            from foodgate.config import get_settings
            from foodgate.ml.engine import get_default_engine

            settings = get_settings()
            _default_classifier = FoodClassifier.from_settings(settings, get_default_engine(settings))
        return _default_classifier


def get_classifier_status() -> dict[str, Any]:
    """Return the default classifier's load state and effective config."""
    classifier = get_default_classifier()
    status = classifier.status()
    return {
        "is_loaded": status.state == "ready",
        "state": status.state,
        "error": status.error,
        "config": dataclasses.asdict(classifier.config),
    }


def reset_classifier() -> None:
    """Forget the default classifier and reset the default engine."""
    global _default_classifier
    from foodgate.ml.engine import reset_default_engine

    with _default_lock:
        _default_classifier = None
    reset_default_engine()
