"""Tests for the food classifier's decision logic."""

from __future__ import annotations

import base64
from pathlib import Path

import numpy as np
import pytest

from conftest import (
    CARBONARA,
    EMPTY_PLATE_PROBS,
    LAPTOP,
    LAPTOP_PROBS,
    MODEL_PATH,
    PASTA_PROBS,
    PLATE,
    FakeSessionFactory,
    expected_food_mass,
    logits_from_probs,
    make_classifier,
    make_engine,
    make_noise_bytes,
)
from foodgate.config import Settings
from foodgate.errors import ClassificationError, DecodeError, InvalidInputError, ModelLoadError
from foodgate.ml.classifier import (
    ClassifierConfig,
    FoodClassifier,
    get_classifier_status,
    get_default_classifier,
    reset_classifier,
    softmax,
)
from foodgate.ml.engine import AlwaysFoodEngine
from foodgate.ml.labels import FOOD_CLASSES, NUM_CLASSES, is_actual_food


class TestConfig:
    def test_defaults(self) -> None:
        config = ClassifierConfig()
        assert config.threshold == 0.15
        assert config.input_size == 224
        assert config.debug is False
        assert config.model_path.name == "mobilenet_v2.onnx"

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_out_of_range(self, threshold: float) -> None:
        with pytest.raises(ValueError, match="threshold"):
            ClassifierConfig(threshold=threshold)

    def test_overrides_skip_none(self) -> None:
        config = ClassifierConfig(threshold=0.4)
        updated = config.with_overrides(threshold=None, debug=True)
        assert updated.threshold == 0.4
        assert updated.debug is True
        assert config.debug is False

    def test_zero_override_is_applied(self) -> None:
        assert ClassifierConfig(threshold=0.4).with_overrides(threshold=0.0).threshold == 0.0

    def test_from_settings_keeps_classifier_default_threshold(self) -> None:
        settings = Settings(classify_threshold=0.5, input_size=160, model_path=MODEL_PATH)
        classifier = FoodClassifier.from_settings(settings, AlwaysFoodEngine())
        assert classifier.config.threshold == 0.15
        assert classifier.config.input_size == 160
        assert classifier.config.model_path == MODEL_PATH


class TestSoftmax:
    def test_sums_to_one(self) -> None:
        probs = softmax(np.array([1.0, 2.0, 3.0], dtype=np.float32))
        assert probs.sum() == pytest.approx(1.0)
        assert np.argmax(probs) == 2

    def test_large_logits_are_stable(self) -> None:
        probs = softmax(np.array([1000.0, 1000.0], dtype=np.float32))
        assert np.allclose(probs, [0.5, 0.5])


class TestScenarios:
    def test_pasta_is_food(self) -> None:
        classifier, _, _ = make_classifier(PASTA_PROBS)
        result = classifier.classify(make_noise_bytes(), threshold=0.3)

        assert result.is_food
        assert result.confidence >= 0.3
        assert result.confidence == pytest.approx(expected_food_mass(PASTA_PROBS), abs=1e-5)
        assert result.detected_class is not None
        assert result.detected_class.index == CARBONARA
        assert result.detected_class.label == "carbonara"
        assert result.detected_class.score == pytest.approx(0.55, abs=1e-5)

    def test_laptop_is_not_food(self) -> None:
        classifier, _, _ = make_classifier(LAPTOP_PROBS)
        result = classifier.classify(make_noise_bytes(), threshold=0.3)

        assert not result.is_food
        assert result.confidence < 0.3
        assert result.detected_class is not None
        assert result.detected_class.index == LAPTOP
        assert result.detected_class.label == f"class {LAPTOP}"

    def test_empty_plate_counts_as_food(self) -> None:
        classifier, _, _ = make_classifier(EMPTY_PLATE_PROBS)
        result = classifier.classify(make_noise_bytes(), threshold=0.6)

        assert result.is_food
        assert result.detected_class is not None
        assert result.detected_class.index == PLATE
        assert not is_actual_food(result.detected_class.index)
        assert result.actual_food_confidence < result.confidence

    def test_malformed_bytes_raise_decode_error(self) -> None:
        classifier, _, _ = make_classifier()
        with pytest.raises(DecodeError):
            classifier.classify(b"\x89PNG\r\n\x1a\n truncated")

    def test_threshold_zero_always_accepts(self) -> None:
        classifier, _, _ = make_classifier(LAPTOP_PROBS)
        assert classifier.classify(make_noise_bytes(), threshold=0.0).is_food

    def test_threshold_one_rejects_everything_but_certainty(self) -> None:
        classifier, _, _ = make_classifier(PASTA_PROBS)
        assert not classifier.classify(make_noise_bytes(), threshold=1.0).is_food


class TestDecisionBoundary:
    def test_threshold_monotonicity(self) -> None:
        classifier, _, _ = make_classifier(PASTA_PROBS)
        image = make_noise_bytes()
        thresholds = np.linspace(0.0, 1.0, 21)
        decisions = [classifier.classify(image, threshold=float(t)).is_food for t in thresholds]
        # Once rejected, a higher threshold never accepts again.
        assert decisions == sorted(decisions, reverse=True)
        assert decisions[0] is True
        assert decisions[-1] is False

    def test_threshold_is_the_only_boundary_for_uniform_scores(self) -> None:
        factory = FakeSessionFactory(np.zeros(NUM_CLASSES, dtype=np.float32))
        classifier, _, _ = make_classifier(factory=factory)
        image = make_noise_bytes()

        confidence = classifier.classify(image, threshold=0.0).confidence
        assert confidence == pytest.approx(len(FOOD_CLASSES) / NUM_CLASSES, abs=1e-6)
        assert classifier.classify(image, threshold=confidence).is_food
        assert not classifier.classify(image, threshold=min(1.0, confidence + 1e-6)).is_food

    def test_food_mass_beats_top_class(self) -> None:
        # Top class is non-food, but food classes together carry most of the mass.
        probs = {LAPTOP: 0.3, 963: 0.25, 959: 0.25}
        classifier, _, _ = make_classifier(probs)
        result = classifier.classify(make_noise_bytes(), threshold=0.4)
        assert result.detected_class is not None
        assert result.detected_class.index == LAPTOP
        assert result.is_food


class TestDeterminism:
    def test_repeated_calls_are_identical(self) -> None:
        classifier, _, _ = make_classifier(PASTA_PROBS)
        image = make_noise_bytes()
        first = classifier.classify(image)
        second = classifier.classify(image)
        assert first.confidence == second.confidence
        assert first.is_food == second.is_food
        assert first.detected_class == second.detected_class

    def test_same_tensor_fed_for_bytes_and_base64(self) -> None:
        classifier, engine, factory = make_classifier()
        image = make_noise_bytes()
        classifier.classify(image)
        classifier.classify(base64.b64encode(image).decode())
        session = engine._session
        assert np.array_equal(session.feeds[0]["input"], session.feeds[1]["input"])


class TestLifecycle:
    def test_classify_loads_model_once(self) -> None:
        classifier, engine, factory = make_classifier()
        assert not engine.is_ready()
        for _ in range(3):
            classifier.classify(make_noise_bytes())
        assert engine.is_ready()
        assert factory.calls == 1
        assert factory.paths == [MODEL_PATH]

    def test_reset_triggers_fresh_load(self) -> None:
        classifier, engine, factory = make_classifier()
        classifier.classify(make_noise_bytes())
        engine.reset()
        assert not engine.is_ready()
        classifier.classify(make_noise_bytes())
        assert factory.calls == 2

    def test_model_load_error_propagates(self) -> None:
        classifier, engine, _ = make_classifier(factory=FakeSessionFactory(error=OSError("missing weights")))
        with pytest.raises(ModelLoadError, match="missing weights"):
            classifier.classify(make_noise_bytes())
        assert engine.status().state == "failed"

    def test_model_load_happens_before_decoding(self) -> None:
        classifier, _, _ = make_classifier(factory=FakeSessionFactory(error=OSError("missing weights")))
        with pytest.raises(ModelLoadError):
            classifier.classify(b"junk")

    def test_warm_loads_without_classifying(self) -> None:
        classifier, engine, factory = make_classifier()
        classifier.warm()
        assert engine.is_ready()
        assert factory.calls == 1

    def test_warm_with_path_matches_later_classify(self) -> None:
        classifier, _, factory = make_classifier()
        other = Path("models/other.onnx")
        classifier.warm(other)
        classifier.classify(make_noise_bytes(), model_path=other)
        assert factory.calls == 1
        assert factory.paths == [other]


class TestFailures:
    def test_inference_error_is_wrapped(self) -> None:
        classifier, engine, _ = make_classifier()
        classifier.warm()

        def explode(output_names: object, feeds: object) -> object:
            raise RuntimeError("kernel crashed")

        engine._session.run = explode
        with pytest.raises(ClassificationError, match="Inference failed: kernel crashed"):
            classifier.classify(make_noise_bytes())

    def test_wrong_score_length_is_rejected(self) -> None:
        factory = FakeSessionFactory(np.zeros(1001, dtype=np.float32))
        classifier, _, _ = make_classifier(factory=factory)
        with pytest.raises(ClassificationError, match="1001 scores"):
            classifier.classify(make_noise_bytes())

    def test_empty_input(self) -> None:
        classifier, _, _ = make_classifier()
        with pytest.raises(InvalidInputError):
            classifier.classify(b"")


class TestBatchAndHelpers:
    def test_classify_many_preserves_order(self) -> None:
        classifier, _, factory = make_classifier(PASTA_PROBS)
        results = classifier.classify_many([make_noise_bytes(), make_noise_bytes(fmt="JPEG")])
        assert len(results) == 2
        assert all(r.is_food for r in results)
        assert factory.calls == 1

    def test_is_food_shorthand(self) -> None:
        classifier, _, _ = make_classifier(LAPTOP_PROBS)
        assert classifier.is_food(make_noise_bytes()) is False

    def test_config_argument_replaces_defaults(self) -> None:
        classifier, _, _ = make_classifier(PASTA_PROBS, threshold=0.1)
        strict = ClassifierConfig(model_path=MODEL_PATH, threshold=0.99)
        assert not classifier.classify(make_noise_bytes(), strict).is_food


class TestPassthrough:
    def test_stub_engine_accepts_anything(self) -> None:
        classifier = FoodClassifier(AlwaysFoodEngine())
        result = classifier.classify(b"not even an image")
        assert result.is_food
        assert result.confidence == 1.0
        assert result.detected_class is None

    def test_stub_engine_batch(self) -> None:
        classifier = FoodClassifier(AlwaysFoodEngine())
        assert [r.is_food for r in classifier.classify_many([b"a", b"b"])] == [True, True]


class TestDefaultClassifier:
    def test_default_classifier_is_shared(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("FOODGATE_CLASSIFIER_ENABLED", "false")
        first = get_default_classifier()
        assert get_default_classifier() is first

        status = get_classifier_status()
        assert status["is_loaded"] is True
        assert status["config"]["threshold"] == 0.15

        reset_classifier()
        assert get_default_classifier() is not first

    def test_status_reports_unloaded_engine(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("FOODGATE_MODEL_PATH", str(tmp_path / "missing.onnx"))
        status = get_classifier_status()
        assert status["is_loaded"] is False
        assert status["state"] == "unloaded"


def test_make_engine_uses_fake_path() -> None:
    engine, _ = make_engine()
    assert engine.model_path == MODEL_PATH


def test_logits_helper_round_trips_probabilities() -> None:
    probs = softmax(logits_from_probs({PLATE: 0.4}))
    assert probs[PLATE] == pytest.approx(0.4, abs=1e-5)
