"""Adaptive multivariate model of "normal" playing.

Every window is summarised by a 6-dimensional groove vector. For each
window a fresh Gaussian model (mean + regularized covariance) is fitted on
the trailing non-candidate windows, and the window's Mahalanobis distance
from it is its groove distance: how far the drummer has strayed from what
they were just playing.

Insufficient history is a normal state at the start of a song, not an
error. With fewer than two training windows the distance is 0, so nothing
is penalised for lack of data.
"""

import logging
import math
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict

from fillscan.models.fill import AnalysisWindow, FeatureVector
from fillscan.services.stats import (
    covariance_matrix,
    euclidean_distance,
    invert_matrix,
    mahalanobis_distance,
    regularize_covariance,
)

logger = logging.getLogger(__name__)

GROOVE_FEATURES = ("note_density", "tom_ratio_jump", "hat_dropout", "kick_drop", "ioi_std_z", "ngram_novelty")
GROOVE_DIMENSIONS = len(GROOVE_FEATURES)

MIN_TRAINING_SAMPLES = 2

# Windows this far above the song average are not treated as groove
GROOVE_DENSITY_FACTOR = 1.5
GROOVE_TOM_JUMP_FACTOR = 2.0

# Samples needed for full model confidence
CONFIDENT_SAMPLE_COUNT = 20


class GrooveModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    mean: np.ndarray
    covariance: np.ndarray
    covariance_inverse: np.ndarray | None = None
    sample_count: int = 0
    is_valid: bool = False


def groove_vector(features: FeatureVector) -> np.ndarray:
    return np.array([getattr(features, name) for name in GROOVE_FEATURES], dtype=float)


def build_groove_model(vectors: Sequence[Sequence[float]] | np.ndarray) -> GrooveModel:
    """Fit mean and covariance to groove vectors.

    Fewer than two samples get an identity covariance; otherwise the sample
    covariance is regularized before inversion. The model is valid when
    there are at least two samples and the inverse exists.
    """
    data = np.asarray(vectors, dtype=float).reshape(-1, GROOVE_DIMENSIONS)
    n = len(data)

    mu = data.mean(axis=0) if n else np.zeros(GROOVE_DIMENSIONS)
    if n < MIN_TRAINING_SAMPLES:
        cov = np.eye(GROOVE_DIMENSIONS)
    else:
        cov = regularize_covariance(covariance_matrix(data))

    inverse = invert_matrix(cov)
    return GrooveModel(
        mean=mu,
        covariance=cov,
        covariance_inverse=inverse,
        sample_count=n,
        is_valid=inverse is not None and n >= MIN_TRAINING_SAMPLES,
    )


def groove_distance(model: GrooveModel, vector: Sequence[float] | np.ndarray) -> float:
    """Mahalanobis distance of ``vector`` from the model.

    0 when the model has fewer than two samples. When the covariance could
    not be inverted, or the distance computation fails, the Euclidean
    distance from the mean is used instead.
    """
    if model.sample_count < MIN_TRAINING_SAMPLES:
        return 0.0

    vector = np.asarray(vector, dtype=float)
    if model.covariance_inverse is None:
        logger.warning("Groove covariance is singular, using Euclidean distance")
        return euclidean_distance(vector, model.mean)

    try:
        distance = mahalanobis_distance(vector, model.mean, model.covariance_inverse)
    except ValueError as e:
        logger.warning(f"Mahalanobis distance failed ({e}), using Euclidean distance")
        distance = euclidean_distance(vector, model.mean)

    return distance if math.isfinite(distance) else 0.0


def groove_matrix(windows: Sequence[AnalysisWindow]) -> np.ndarray:
    return np.array([groove_vector(w.features) for w in windows], dtype=float).reshape(-1, GROOVE_DIMENSIONS)


def matrix_groove_distance(history: np.ndarray, vector: np.ndarray) -> float:
    """Groove distance of ``vector`` from a model fitted on the rows of ``history``."""
    if len(history) < MIN_TRAINING_SAMPLES:
        return 0.0
    return groove_distance(build_groove_model(history), vector)


def windowed_groove_distance(history: Sequence[AnalysisWindow], window: AnalysisWindow) -> float:
    """Groove distance of ``window`` from a model fitted on ``history``.

    ``history`` is the trailing baseline, already stripped of candidates.
    """
    return matrix_groove_distance(groove_matrix(history), groove_vector(window.features))


def identify_groove_windows(windows: Sequence[AnalysisWindow]) -> list[AnalysisWindow]:
    """Windows that look like steady playing relative to the whole song."""
    if not windows:
        return []
    density_mean = float(np.mean([w.features.note_density for w in windows]))
    tom_jump_mean = float(np.mean([w.features.tom_ratio_jump for w in windows]))
    return [
        w
        for w in windows
        if w.features.note_density <= density_mean * GROOVE_DENSITY_FACTOR
        and w.features.tom_ratio_jump <= tom_jump_mean * GROOVE_TOM_JUMP_FACTOR
    ]


def build_global_groove_model(windows: Sequence[AnalysisWindow]) -> GrooveModel:
    """One model over every groove-like window of the song."""
    return build_groove_model(groove_matrix(identify_groove_windows(windows)))


def validate_groove_model(model: GrooveModel) -> bool:
    if not model.is_valid or model.covariance_inverse is None:
        return False
    if model.mean.shape != (GROOVE_DIMENSIONS,):
        return False
    if model.covariance.shape != (GROOVE_DIMENSIONS, GROOVE_DIMENSIONS):
        return False
    if not (np.all(np.isfinite(model.mean)) and np.all(np.isfinite(model.covariance))):
        return False
    if not np.all(np.isfinite(model.covariance_inverse)):
        return False
    return bool(np.allclose(model.covariance, model.covariance.T))


def model_confidence(model: GrooveModel) -> float:
    """0-1 confidence from sample count, halved for an invalid model."""
    confidence = min(1.0, model.sample_count / CONFIDENT_SAMPLE_COUNT)
    return confidence if model.is_valid else confidence * 0.5
