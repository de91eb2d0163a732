"""Tests for the adaptive groove model."""

import logging

import numpy as np
import pytest

from fillscan.models.fill import AnalysisWindow, FeatureVector
from fillscan.services.groove_model import (
    GROOVE_DIMENSIONS,
    GrooveModel,
    build_global_groove_model,
    build_groove_model,
    groove_distance,
    groove_matrix,
    groove_vector,
    identify_groove_windows,
    matrix_groove_distance,
    model_confidence,
    validate_groove_model,
    windowed_groove_distance,
)


def window(density=1.0, tom_jump=1.0, kick_drop=0.0):
    return AnalysisWindow(
        start_tick=0,
        end_tick=192,
        start_ms=0.0,
        end_ms=500.0,
        features=FeatureVector(note_density=density, tom_ratio_jump=tom_jump, kick_drop=kick_drop),
    )


def varied_vectors(n=30, seed=1):
    rng = np.random.default_rng(seed)
    return rng.normal(loc=[2, 1, 0, 0.2, 0, 0], scale=[0.5, 0.1, 0.1, 0.1, 0.3, 0.2], size=(n, GROOVE_DIMENSIONS))


class TestBuildModel:
    def test_groove_vector_order(self):
        f = FeatureVector(note_density=3, tom_ratio_jump=2, hat_dropout=0.5, kick_drop=0.1, ioi_std_z=-1, ngram_novelty=1)
        np.testing.assert_array_equal(groove_vector(f), [3, 2, 0.5, 0.1, -1, 1])

    def test_fitted_model(self):
        vectors = varied_vectors()
        model = build_groove_model(vectors)
        assert model.is_valid
        assert model.sample_count == 30
        np.testing.assert_allclose(model.mean, vectors.mean(axis=0))
        assert validate_groove_model(model)

    def test_single_sample_uses_identity(self):
        model = build_groove_model([[1, 1, 0, 0, 0, 0]])
        np.testing.assert_array_equal(model.covariance, np.eye(GROOVE_DIMENSIONS))
        assert not model.is_valid
        assert not validate_groove_model(model)

    def test_flat_samples_stay_invertible(self):
        model = build_groove_model([[1, 1, 0, 0, 0, 0]] * 5)
        assert model.is_valid
        assert model.covariance_inverse is not None

    def test_empty(self):
        model = build_groove_model([])
        assert model.sample_count == 0
        np.testing.assert_array_equal(model.mean, np.zeros(GROOVE_DIMENSIONS))


class TestDistance:
    def test_mean_has_zero_distance(self):
        model = build_groove_model(varied_vectors())
        assert groove_distance(model, model.mean) == pytest.approx(0.0, abs=1e-9)

    def test_outlier_is_far(self):
        model = build_groove_model(varied_vectors())
        near = groove_distance(model, [2, 1, 0, 0.2, 0, 0])
        far = groove_distance(model, [8, 6, 1, 1, 3, 1])
        assert far > near
        assert far > 5

    def test_insufficient_samples_are_neutral(self):
        model = build_groove_model([[1, 1, 0, 0, 0, 0]])
        assert groove_distance(model, [9, 9, 9, 9, 9, 9]) == 0.0

    def test_singular_falls_back_to_euclidean(self, caplog):
        model = GrooveModel(
            mean=np.zeros(GROOVE_DIMENSIONS),
            covariance=np.zeros((GROOVE_DIMENSIONS, GROOVE_DIMENSIONS)),
            covariance_inverse=None,
            sample_count=10,
        )
        with caplog.at_level(logging.WARNING):
            assert groove_distance(model, [3, 4, 0, 0, 0, 0]) == pytest.approx(5.0)
        assert "Euclidean" in caplog.text

    def test_mismatched_inverse_falls_back_to_euclidean(self):
        model = GrooveModel(
            mean=np.zeros(GROOVE_DIMENSIONS),
            covariance=np.eye(GROOVE_DIMENSIONS),
            covariance_inverse=np.eye(3),
            sample_count=10,
            is_valid=True,
        )
        assert groove_distance(model, [3, 4, 0, 0, 0, 0]) == pytest.approx(5.0)

    def test_non_finite_result_is_neutral(self):
        model = GrooveModel(
            mean=np.zeros(GROOVE_DIMENSIONS),
            covariance=np.eye(GROOVE_DIMENSIONS),
            covariance_inverse=np.eye(GROOVE_DIMENSIONS),
            sample_count=10,
            is_valid=True,
        )
        assert groove_distance(model, [np.inf, 0, 0, 0, 0, 0]) == 0.0


class TestWindowed:
    def test_short_history_is_neutral(self):
        assert windowed_groove_distance([window()], window(density=10)) == 0.0

    def test_deviation_from_history(self):
        history = [window(kick_drop=k) for k in (0.0, 0.5) * 8]
        same = windowed_groove_distance(history, window(kick_drop=0.5))
        dense = windowed_groove_distance(history, window(density=4.0, tom_jump=11.0))
        assert same < 2.0
        assert dense > 100.0

    def test_matrix_form_matches(self):
        history = [window(kick_drop=k) for k in (0.0, 0.5) * 8]
        current = window(density=4.0, tom_jump=11.0)
        matrix = groove_matrix(history)
        assert matrix.shape == (16, GROOVE_DIMENSIONS)
        assert matrix_groove_distance(matrix, groove_vector(current.features)) == pytest.approx(
            windowed_groove_distance(history, current)
        )
        assert matrix_groove_distance(matrix[:1], groove_vector(current.features)) == 0.0

    def test_empty_matrix(self):
        assert groove_matrix([]).shape == (0, GROOVE_DIMENSIONS)


class TestGlobalModel:
    def test_identify_groove_windows(self):
        windows = [window(density=1.0) for _ in range(9)] + [window(density=8.0, tom_jump=8.0)]
        groove = identify_groove_windows(windows)
        assert len(groove) == 9

    def test_global_model_and_confidence(self):
        windows = [window(density=1.0 + 0.1 * (i % 3), kick_drop=0.1 * (i % 2)) for i in range(10)]
        model = build_global_groove_model(windows)
        assert model.sample_count == 10
        assert model_confidence(model) == pytest.approx(0.5)

    def test_confidence_halved_when_invalid(self):
        model = build_groove_model([[1, 1, 0, 0, 0, 0]])
        assert model_confidence(model) == pytest.approx(0.025)
