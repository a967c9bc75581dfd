"""Shared fixtures: in-memory images and a fake ONNX runtime."""

from __future__ import annotations

import io
import threading
import time
from pathlib import Path
from types import SimpleNamespace
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from foodgate.gate import reset_default_gate
from foodgate.ml.classifier import ClassifierConfig, FoodClassifier, reset_classifier
from foodgate.ml.engine import OnnxInferenceEngine
from foodgate.ml.labels import FOOD_CLASSES, NUM_CLASSES

if TYPE_CHECKING:
    from collections.abc import Iterator

    from numpy.typing import NDArray

# ImageNet indices used in scenarios
PLATE = 923
CARBONARA = 959
PIZZA = 963
LAPTOP = 620
NOTEBOOK = 681

MODEL_PATH = Path("models/fake.onnx")


# ---------------------------------------------------------------------------
# Images
# ---------------------------------------------------------------------------


def make_image_bytes(
    size: tuple[int, int] = (64, 48),
    color: tuple[int, ...] = (200, 80, 40),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    buf = io.BytesIO()
    Image.new(mode, size, color).save(buf, format=fmt)
    return buf.getvalue()


def make_noise_bytes(size: tuple[int, int] = (64, 64), fmt: str = "PNG") -> bytes:
    rng = np.random.default_rng(seed=7)
    pixels = rng.integers(0, 256, size=(size[1], size[0], 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def image_bytes() -> bytes:
    return make_image_bytes()


# ---------------------------------------------------------------------------
# Score vectors
# ---------------------------------------------------------------------------


def logits_from_probs(probs: dict[int, float]) -> NDArray[np.float32]:
    """Build logits whose softmax puts ``probs`` on the given classes.

    The remaining mass is spread evenly over every other class.
    """
    rest = 1.0 - sum(probs.values())
    assert rest > 0
    full = np.full(NUM_CLASSES, rest / (NUM_CLASSES - len(probs)), dtype=np.float64)
    for index, p in probs.items():
        full[index] = p
    return np.log(full).astype(np.float32)


def expected_food_mass(probs: dict[int, float]) -> float:
    rest = 1.0 - sum(probs.values())
    share = rest / (NUM_CLASSES - len(probs))
    listed = sum(p for index, p in probs.items() if index in FOOD_CLASSES)
    unlisted_food = len(FOOD_CLASSES - probs.keys())
    return listed + unlisted_food * share


PASTA_PROBS = {CARBONARA: 0.55, PLATE: 0.2}
LAPTOP_PROBS = {LAPTOP: 0.8, NOTEBOOK: 0.1}
EMPTY_PLATE_PROBS = {PLATE: 0.7}


# ---------------------------------------------------------------------------
# Fake runtime
# ---------------------------------------------------------------------------


class FakeSession:
    """Mimics ``onnxruntime.InferenceSession`` with a fixed output."""

    def __init__(self, logits: NDArray[np.float32]) -> None:
        self.logits = logits
        self.feeds: list[dict[str, NDArray[np.float32]]] = []

    def get_inputs(self) -> list[SimpleNamespace]:
        return [SimpleNamespace(name="input")]

    def run(self, output_names: object, feeds: dict[str, NDArray[np.float32]]) -> list[NDArray[np.float32]]:
        self.feeds.append(feeds)
        return [self.logits[np.newaxis, :]]


class FakeSessionFactory:
    """Counts loads; can block on an event, sleep, or fail."""

    def __init__(
        self,
        logits: NDArray[np.float32] | None = None,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        release: threading.Event | None = None,
    ) -> None:
        self.logits = logits if logits is not None else logits_from_probs(PASTA_PROBS)
        self.delay = delay
        self.error = error
        self.release = release
        self.started = threading.Event()
        self.calls = 0
        self.paths: list[Path] = []
        self._lock = threading.Lock()

    def __call__(self, model_path: Path) -> FakeSession:
        with self._lock:
            self.calls += 1
            self.paths.append(model_path)
        self.started.set()
        if self.release is not None:
            self.release.wait(timeout=5)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return FakeSession(self.logits)


def make_engine(
    factory: FakeSessionFactory | None = None,
    *,
    load_timeout: float = 5.0,
) -> tuple[OnnxInferenceEngine, FakeSessionFactory]:
    factory = factory if factory is not None else FakeSessionFactory()
    return OnnxInferenceEngine(MODEL_PATH, factory, load_timeout=load_timeout), factory


@pytest.fixture(autouse=True)
def _reset_process_defaults() -> Iterator[None]:
    yield
    reset_default_gate()
    reset_classifier()


def make_classifier(
    probs: dict[int, float] | None = None,
    *,
    threshold: float = 0.15,
    factory: FakeSessionFactory | None = None,
) -> tuple[FoodClassifier, OnnxInferenceEngine, FakeSessionFactory]:
    if factory is None:
        factory = FakeSessionFactory(logits_from_probs(probs if probs is not None else PASTA_PROBS))
    engine, factory = make_engine(factory)
    classifier = FoodClassifier(engine, ClassifierConfig(model_path=MODEL_PATH, threshold=threshold))
    return classifier, engine, factory
