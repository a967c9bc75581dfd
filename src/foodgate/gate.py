"""Food detection gate: decide whether an image is worth sending to the remote model.

The gate wraps ``FoodClassifier`` with timing and a fail-open policy. It only
ever blocks a request on a successful, confident "not food" classification;
any error lets the request through.
"""

from __future__ import annotations

import asyncio
import dataclasses
import functools
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

from foodgate.ml.classifier import FoodClassifier, get_default_classifier

if TYPE_CHECKING:
    from collections.abc import Callable

    from foodgate.ml.classifier import ClassificationResult
    from foodgate.ml.engine import EngineStatus
    from foodgate.ml.inference import InferencePool
    from foodgate.ml.preprocessing import ImageInput

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_GATE_THRESHOLD: float = 0.6


@dataclass(frozen=True)
class GateConfig:
    threshold: float = DEFAULT_GATE_THRESHOLD
    verbose: bool = False
    model_path: Path | None = None


@dataclass(frozen=True)
class GateCheckResult:
    """What the request handler needs to know about an image."""

    should_proceed: bool
    food_confidence: float
    processing_time_ms: float
    rejection_reason: str | None = None


class FoodGate:
    """Pre-filter in front of the remote vision model."""

    def __init__(
        self,
        classifier: FoodClassifier,
        config: GateConfig | None = None,
        pool: InferencePool | None = None,
    ) -> None:
        self._classifier = classifier
        self._config = config if config is not None else GateConfig()
        self._pool = pool

    async def check(self, image: ImageInput) -> GateCheckResult:
        """Classify an image and decide whether the request should proceed.

        Never raises. Classification errors produce ``should_proceed=True``
        with ``food_confidence=0`` and the error in ``rejection_reason``.
        """
        start = time.perf_counter()
        try:
            result = await self._classify(image)
        except Exception as exc:
            processing_time_ms = (time.perf_counter() - start) * 1000
            logger.warning("Food check failed open after %.1fms: %s", processing_time_ms, exc)
            return GateCheckResult(
                should_proceed=True,
                food_confidence=0.0,
                processing_time_ms=processing_time_ms,
                rejection_reason=f"Classification error: {exc}",
            )

        processing_time_ms = (time.perf_counter() - start) * 1000

        if not result.is_food:
            # Reported as confidence in the rejection, not in food.
            rejection_confidence = 1.0 - result.confidence
            if self._config.verbose:
                logger.info("Rejected non-food image (%.1f%%)", rejection_confidence * 100)
            return GateCheckResult(
                should_proceed=False,
                food_confidence=rejection_confidence,
                processing_time_ms=processing_time_ms,
                rejection_reason=f"Image classified as non-food ({rejection_confidence * 100:.1f}%)",
            )

        return GateCheckResult(
            should_proceed=True,
            food_confidence=result.confidence,
            processing_time_ms=processing_time_ms,
        )

    async def warmup(self) -> None:
        """Load the model ahead of the first check. Failures are logged, not raised."""
        start = time.perf_counter()
        try:
            await self._run(functools.partial(self._classifier.warm, self._config.model_path))
        except Exception as exc:
            logger.warning("Food classifier warmup failed: %s", exc)
            return
        logger.info("Food classifier warmed up in %.1fms", (time.perf_counter() - start) * 1000)

    def get_config(self) -> GateConfig:
        """Return a copy of the effective gate configuration."""
        return dataclasses.replace(self._config)

    def status(self) -> EngineStatus:
        return self._classifier.status()

    # -- Internal -----------------------------------------------------------

    async def _classify(self, image: ImageInput) -> ClassificationResult:
        def classify() -> ClassificationResult:
            return self._classifier.classify(
                image,
                threshold=self._config.threshold,
                debug=self._config.verbose or None,
                model_path=self._config.model_path,
            )

        return await self._run(classify)

    async def _run(self, func: Callable[[], T]) -> T:
        if self._pool is not None:
            return await self._pool.run(func)
        return await asyncio.to_thread(func)


def create_food_gate(
    config: GateConfig | None = None,
    *,
    classifier: FoodClassifier | None = None,
    pool: InferencePool | None = None,
) -> FoodGate:
    """Create a gate, defaulting to the process-wide classifier."""
    return FoodGate(
        classifier if classifier is not None else get_default_classifier(),
        config,
        pool,
    )


_default_gate: FoodGate | None = None
_default_lock = threading.Lock()


def get_default_gate() -> FoodGate:
    """Return the process-wide gate (threshold 0.6), creating it on first use."""
    global _default_gate
    with _default_lock:
        if _default_gate is None:
            from foodgate.config import get_settings

            verbose = get_settings().debug
            _default_gate = create_food_gate(GateConfig(threshold=DEFAULT_GATE_THRESHOLD, verbose=verbose))
        return _default_gate


def reset_default_gate() -> None:
    """Forget the process-wide gate. The engine is left alone; see ``reset_classifier``."""
    global _default_gate
    with _default_lock:
        _default_gate = None


async def quick_food_check(image: ImageInput) -> GateCheckResult:
    """Check an image with the default gate."""
    return await get_default_gate().check(image)
