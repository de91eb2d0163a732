"""Tests for the numeric primitives."""

import numpy as np
import pytest

from fillscan.services.stats import (
    clamp,
    covariance_matrix,
    detect_outliers,
    euclidean_distance,
    interquartile_range,
    invert_matrix,
    lerp,
    mahalanobis_distance,
    mean,
    median,
    regularize_covariance,
    rolling_mean,
    rolling_std,
    std_dev,
    z_score,
)


class TestDescriptive:
    def test_mean(self):
        assert mean([1, 2, 3]) == 2.0
        assert mean([]) == 0.0

    def test_std_dev_is_population(self):
        assert std_dev([2, 4, 4, 4, 5, 5, 7, 9]) == pytest.approx(2.0)

    def test_std_dev_of_single_value_is_zero(self):
        assert std_dev([5.0]) == 0.0
        assert std_dev([]) == 0.0

    def test_z_score(self):
        assert z_score(5.0, 3.0, 2.0) == 1.0
        assert z_score(5.0, 3.0, 0.0) == 0.0

    def test_median(self):
        assert median([3, 1, 2]) == 2.0
        assert median([]) == 0.0

    def test_clamp_and_lerp(self):
        assert clamp(1.5, 0.0, 1.0) == 1.0
        assert clamp(-1.0, 0.0, 1.0) == 0.0
        assert lerp(0.0, 10.0, 0.25) == 2.5


class TestCovariance:
    def test_sample_covariance(self):
        cov = covariance_matrix([[1, 2], [3, 4], [5, 6]])
        np.testing.assert_allclose(cov, [[4.0, 4.0], [4.0, 4.0]])

    def test_single_sample_gives_zeros(self):
        np.testing.assert_array_equal(covariance_matrix([[1.0, 2.0]]), np.zeros((2, 2)))

    def test_rejects_flat_input(self):
        with pytest.raises(ValueError):
            covariance_matrix([1.0, 2.0, 3.0])

    def test_regularize_adds_to_diagonal(self):
        reg = regularize_covariance(np.zeros((3, 3)), epsilon=0.5)
        np.testing.assert_array_equal(reg, np.eye(3) * 0.5)


class TestInversion:
    def test_inverse(self):
        inv = invert_matrix([[4, 7], [2, 6]])
        np.testing.assert_allclose(inv, [[0.6, -0.7], [-0.2, 0.4]])

    def test_needs_row_swap(self):
        inv = invert_matrix([[0, 1], [1, 0]])
        np.testing.assert_allclose(inv, [[0, 1], [1, 0]])

    def test_singular_returns_none(self):
        assert invert_matrix([[1, 2], [2, 4]]) is None

    def test_non_square_raises(self):
        with pytest.raises(ValueError, match="square"):
            invert_matrix([[1, 2, 3], [4, 5, 6]])

    def test_matches_numpy_on_covariance(self):
        rng = np.random.default_rng(0)
        cov = regularize_covariance(covariance_matrix(rng.normal(size=(20, 6))))
        np.testing.assert_allclose(invert_matrix(cov), np.linalg.inv(cov), rtol=1e-8, atol=1e-10)


class TestDistances:
    def test_mahalanobis_with_identity_is_euclidean(self):
        assert mahalanobis_distance([3, 4], [0, 0], np.eye(2)) == pytest.approx(5.0)
        assert euclidean_distance([3, 4], [0, 0]) == pytest.approx(5.0)

    def test_mahalanobis_scales_by_variance(self):
        inverse = np.diag([1 / 4, 1.0])
        assert mahalanobis_distance([2, 0], [0, 0], inverse) == pytest.approx(1.0)

    def test_mismatched_dimensions_raise(self):
        with pytest.raises(ValueError):
            mahalanobis_distance([1, 2, 3], [0, 0], np.eye(2))
        with pytest.raises(ValueError):
            euclidean_distance([1, 2, 3], [0, 0])


class TestRolling:
    def test_rolling_mean(self):
        assert rolling_mean([1, 2, 3, 4], 2) == [1.5, 2.5, 3.5]

    def test_rolling_std(self):
        assert rolling_std([1, 3, 3], 2) == [1.0, 0.0]
        assert rolling_std([1, 2], 1) == [0.0, 0.0]

    @pytest.mark.parametrize("window", [0, 5])
    def test_invalid_window(self, window):
        with pytest.raises(ValueError, match="window"):
            rolling_mean([1, 2, 3, 4], window)


class TestOutliers:
    def test_iqr(self):
        assert interquartile_range([1, 2, 3, 4, 5, 6, 7, 8]) == 4
        assert interquartile_range([]) == 0.0

    def test_detect_outliers(self):
        flags = detect_outliers([1, 2, 3, 4, 5, 6, 7, 100])
        assert flags == [False] * 7 + [True]
