"""Inference engine: load the classifier model once and run forward passes.

The engine is a small state machine::

    unloaded --load_model()--> loading --ok--> ready
                                  |
                                  +--error/timeout--> failed --load_model()--> loading

Concurrent callers of ``load_model`` share one in-flight ``Future``; exactly
one load runs and every waiter sees its outcome. The load itself runs in a
daemon thread so that each waiter can bound its wait with ``load_timeout``.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, InvalidStateError
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np

from foodgate.errors import ModelLoadError, NotLoadedError
from foodgate.ml.labels import NUM_CLASSES

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from foodgate.config import Settings

logger = logging.getLogger(__name__)

DEFAULT_LOAD_TIMEOUT_SECONDS: float = 30.0


class EngineState(StrEnum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


@dataclass(frozen=True)
class EngineStatus:
    """Snapshot of the engine's load state for health reporting."""

    state: EngineState
    error: str | None
    model_path: str | None


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class InferenceEngine(Protocol):
    """Protocol for classifier inference backends."""

    @property
    def passthrough(self) -> bool:
        """True if the engine never runs a model and every image counts as food."""
        ...

    def load_model(self, model_path: Path | str | None = None) -> None:
        """Load the model if needed, waiting on any load already in flight."""
        ...

    def run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run a forward pass and return one raw score per class."""
        ...

    def is_ready(self) -> bool:
        """Return True once a model is loaded."""
        ...

    def status(self) -> EngineStatus:
        """Return the current load state and last load error."""
        ...

    def reset(self) -> None:
        """Drop the loaded model and return to the unloaded state."""
        ...


# ---------------------------------------------------------------------------
# ONNX engine
# ---------------------------------------------------------------------------


class OnnxInferenceEngine:
    """Runs an ImageNet classifier through an injected session factory.

    ``session_factory`` receives the model path and returns an object with the
    ``onnxruntime.InferenceSession`` interface (``get_inputs()`` and
    ``run(output_names, feeds)``).
    """

    passthrough = False

    def __init__(
        self,
        model_path: Path | str,
        session_factory: Callable[[Path], Any],
        *,
        load_timeout: float = DEFAULT_LOAD_TIMEOUT_SECONDS,
    ) -> None:
        self._model_path = Path(model_path)
        self._session_factory = session_factory
        self._load_timeout = load_timeout

        self._lock = threading.Lock()
        self._state = EngineState.UNLOADED
        self._session: Any = None
        self._input_name: str | None = None
        self._error: str | None = None
        self._inflight: Future[None] | None = None
        # Bumped whenever an in-flight load is abandoned so its late result is discarded.
        self._generation = 0

    # -- Public API ---------------------------------------------------------

    @property
    def model_path(self) -> Path:
        return self._model_path

    def load_model(self, model_path: Path | str | None = None) -> None:
        """Load the model, or wait for the load already in progress.

        Raises:
            ModelLoadError: If the load fails, does not finish within
                ``load_timeout`` seconds, or is detached by ``reset()`` or a
                model path change before it completes.
        """
        with self._lock:
            if model_path is not None and Path(model_path) != self._model_path:
                logger.info("Model path changed from %s to %s", self._model_path, model_path)
                self._model_path = Path(model_path)
                self._invalidate()
            if self._state is EngineState.READY:
                return
            future = self._inflight if self._inflight is not None else self._start_load()

        try:
            future.result(timeout=self._load_timeout)
        except FutureTimeoutError:
            self._abandon(future)
            future.result(timeout=0)

    def run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run inference on a ``(1, 3, H, W)`` tensor.

        Raises:
            NotLoadedError: If no model is loaded.
        """
        with self._lock:
            session = self._session
            input_name = self._input_name
        if session is None or input_name is None:
            raise NotLoadedError("Model is not loaded; call load_model() first")

        outputs = session.run(None, {input_name: tensor})
        return np.asarray(outputs[0], dtype=np.float32).reshape(-1)

    def is_ready(self) -> bool:
        with self._lock:
            return self._state is EngineState.READY

    def status(self) -> EngineStatus:
        with self._lock:
            return EngineStatus(state=self._state, error=self._error, model_path=str(self._model_path))

    def reset(self) -> None:
        """Return to ``unloaded``. An in-flight load is detached and its result discarded."""
        with self._lock:
            self._invalidate()
        logger.info("Inference engine reset")

    # -- Internal -----------------------------------------------------------

    def _invalidate(self) -> None:
        self._generation += 1
        self._inflight = None
        self._session = None
        self._input_name = None
        self._error = None
        self._state = EngineState.UNLOADED

    def _start_load(self) -> Future[None]:
        future: Future[None] = Future()
        self._inflight = future
        self._state = EngineState.LOADING
        self._error = None
        thread = threading.Thread(
            target=self._load,
            args=(future, self._generation, self._model_path),
            name="onnx-model-load",
            daemon=True,
        )
        thread.start()
        return future

    def _load(self, future: Future[None], generation: int, path: Path) -> None:
        start = time.perf_counter()
        try:
            session = self._session_factory(path)
            input_name = session.get_inputs()[0].name
        except Exception as exc:
            if isinstance(exc, ModelLoadError):
                error = exc
            else:
                error = ModelLoadError(f"Failed to load model from {path}: {exc}")
            self._settle(future, generation, error=error)
            return

        elapsed_ms = (time.perf_counter() - start) * 1000
        if self._settle(future, generation, session=session, input_name=input_name):
            logger.info("Loaded %s in %.1fms (input=%s)", path, elapsed_ms, input_name)

    def _settle(
        self,
        future: Future[None],
        generation: int,
        *,
        session: Any = None,
        input_name: str | None = None,
        error: ModelLoadError | None = None,
    ) -> bool:
        with self._lock:
            detached = generation != self._generation
            if detached:
                # Waiters on a detached load must not see success while the engine holds no session.
                error = ModelLoadError("Model load superseded by reset or a model path change")
            try:
                if error is None:
                    future.set_result(None)
                else:
                    future.set_exception(error)
            except InvalidStateError:
                logger.warning("Discarding result of a model load that already timed out")
                return False

            if detached:
                logger.info("Discarding result of a model load detached by reset")
                return False

            self._inflight = None
            if error is None:
                self._session = session
                self._input_name = input_name
                self._state = EngineState.READY
            else:
                self._state = EngineState.FAILED
                self._error = str(error)
                logger.error("Model load failed: %s", error)
            return True

    def _abandon(self, future: Future[None]) -> None:
        error = ModelLoadError(f"Model load did not finish within {self._load_timeout:.1f}s")
        with self._lock:
            if future.done():
                return
            future.set_exception(error)
            if self._inflight is future:
                self._generation += 1
                self._inflight = None
                self._state = EngineState.FAILED
                self._error = str(error)
        logger.error("%s", error)


# ---------------------------------------------------------------------------
# Always-pass stub
# ---------------------------------------------------------------------------


class AlwaysFoodEngine:
    """Stand-in for deployments without an inference runtime.

    Always ready; the classifier treats every image as food.
    """

    passthrough = True

    def load_model(self, model_path: Path | str | None = None) -> None:
        return None

    def run(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        return np.zeros(NUM_CLASSES, dtype=np.float32)

    def is_ready(self) -> bool:
        return True

    def status(self) -> EngineStatus:
        return EngineStatus(state=EngineState.READY, error=None, model_path=None)

    def reset(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Process default
# ---------------------------------------------------------------------------

_default_engine: InferenceEngine | None = None
_default_lock = threading.Lock()


def build_engine(settings: Settings) -> InferenceEngine:
    """Build the engine variant selected by ``settings.classifier_enabled``."""
    if not settings.classifier_enabled:
        logger.info("Classifier disabled; every image will be treated as food")
        return AlwaysFoodEngine()

    from foodgate.ml.model_manager import OnnxSessionFactory

    return OnnxInferenceEngine(
        settings.model_path,
        OnnxSessionFactory(settings),
        load_timeout=settings.load_timeout,
    )


def get_default_engine(settings: Settings | None = None) -> InferenceEngine:
    """Return the process-wide engine, creating it on first use."""
    global _default_engine
    with _default_lock:
        if _default_engine is None:
            if settings is None:
                from foodgate.config import get_settings

                settings = get_settings()
            _default_engine = build_engine(settings)
        return _default_engine


def reset_default_engine() -> None:
    """Reset and forget the process-wide engine."""
    global _default_engine
    with _default_lock:
        engine = _default_engine
        _default_engine = None
    if engine is not None:
        engine.reset()
