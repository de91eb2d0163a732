"""Numeric primitives for the feature extractor and groove model.

Plain statistics (mean, population std, z-scores, quartiles) plus the small
amount of linear algebra the groove model needs. The matrix inverse is a
Gauss-Jordan elimination with partial pivoting rather than
``np.linalg.inv`` so that a near-singular covariance is reported as
``None`` instead of producing huge, meaningless entries.
"""

import math
from collections.abc import Sequence

import numpy as np

# Pivots with a smaller magnitude are treated as zero during inversion
PIVOT_EPSILON = 1e-10

# Added to the covariance diagonal so a flat training set stays invertible
COVARIANCE_EPSILON = 1e-6

# Default IQR multiplier for outlier detection
OUTLIER_MULTIPLIER = 1.5


def mean(values: Sequence[float] | np.ndarray) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.mean(values))


def std_dev(values: Sequence[float] | np.ndarray) -> float:
    """Population standard deviation; 0 for fewer than two values."""
    if len(values) <= 1:
        return 0.0
    return float(np.std(values))


def z_score(value: float, mu: float, sigma: float) -> float:
    if sigma == 0:
        return 0.0
    return (value - mu) / sigma


def covariance_matrix(samples: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    """Sample covariance (n - 1 divisor) of an (n, d) array of observations.

    Returns a d x d zero matrix when there are fewer than two observations.
    """
    data = np.asarray(samples, dtype=float)
    if data.ndim != 2:
        raise ValueError(f"Expected a 2-D array of samples, got shape {data.shape}")

    n, d = data.shape
    if n < 2:
        return np.zeros((d, d))

    centered = data - data.mean(axis=0)
    return centered.T @ centered / (n - 1)


def regularize_covariance(cov: np.ndarray, epsilon: float = COVARIANCE_EPSILON) -> np.ndarray:
    return np.asarray(cov, dtype=float) + np.eye(len(cov)) * epsilon


def invert_matrix(matrix: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray | None:
    """Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Returns:
        The inverse, or None when the matrix is (numerically) singular.

    Raises:
        ValueError: the matrix is not square.
    """
    a = np.array(matrix, dtype=float)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError("Matrix must be square")

    n = a.shape[0]
    aug = np.hstack([a, np.eye(n)])

    for col in range(n):
        pivot = col + int(np.argmax(np.abs(aug[col:, col])))
        if abs(aug[pivot, col]) < PIVOT_EPSILON:
            return None
        if pivot != col:
            aug[[col, pivot]] = aug[[pivot, col]]

        aug[col] /= aug[col, col]

        # Eliminate this column from every other row
        factors = aug[:, col].copy()
        factors[col] = 0.0
        aug -= np.outer(factors, aug[col])

    return aug[:, n:]


def mahalanobis_distance(
    x: Sequence[float] | np.ndarray,
    mu: Sequence[float] | np.ndarray,
    inverse: np.ndarray,
) -> float:
    """Covariance-normalised distance of ``x`` from ``mu``.

    Raises:
        ValueError: the vector, mean and inverse covariance disagree in size.
    """
    x = np.asarray(x, dtype=float)
    mu = np.asarray(mu, dtype=float)
    inverse = np.asarray(inverse, dtype=float)
    if x.shape != mu.shape or inverse.shape != (x.size, x.size):
        raise ValueError(
            f"Dimension mismatch: vector {x.shape}, mean {mu.shape}, inverse {inverse.shape}"
        )

    diff = x - mu
    # Rounding can push the quadratic form slightly below zero
    return math.sqrt(max(0.0, float(diff @ inverse @ diff)))


def euclidean_distance(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if a.shape != b.shape:
        raise ValueError(f"Dimension mismatch: {a.shape} vs {b.shape}")
    return float(np.linalg.norm(a - b))


def rolling_mean(values: Sequence[float], window: int) -> list[float]:
    """Mean of every full window of ``window`` consecutive values."""
    if window <= 0 or window > len(values):
        raise ValueError("Invalid window size")
    views = np.lib.stride_tricks.sliding_window_view(np.asarray(values, dtype=float), window)
    return [float(v) for v in views.mean(axis=1)]


def rolling_std(values: Sequence[float], window: int) -> list[float]:
    """Population std of every full window of ``window`` consecutive values."""
    if window <= 0 or window > len(values):
        raise ValueError("Invalid window size")
    views = np.lib.stride_tricks.sliding_window_view(np.asarray(values, dtype=float), window)
    if window == 1:
        return [0.0] * len(views)
    return [float(v) for v in views.std(axis=1)]


def clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def median(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return float(np.median(values))


def _quartiles(values: Sequence[float]) -> tuple[float, float]:
    # Floor-index quartiles, not interpolated ones
    ordered = sorted(values)
    n = len(ordered)
    return ordered[int(n * 0.25)], ordered[int(n * 0.75)]


def interquartile_range(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    q1, q3 = _quartiles(values)
    return q3 - q1


def detect_outliers(values: Sequence[float], multiplier: float = OUTLIER_MULTIPLIER) -> list[bool]:
    """Flag each value lying outside [Q1 - k*IQR, Q3 + k*IQR]."""
    if len(values) == 0:
        return []
    q1, q3 = _quartiles(values)
    iqr = q3 - q1
    low = q1 - multiplier * iqr
    high = q3 + multiplier * iqr
    return [v < low or v > high for v in values]
