"""Sliding-window feature extraction.

The note stream is cut into overlapping windows (1 beat long, a 16th apart
by default). Each window gets:

- raw statistics: note density, voice ratios, the spread of its
  inter-onset intervals, a grid-fill novelty proxy, same-pad bursts and a
  crash-resolve cue;
- relative features measured against a trailing baseline: density z-score,
  tom-ratio jump, hi-hat dropout, kick drop and IOI-spread z-score;
- its groove distance.

The relative pass is a fold in window order. The baseline for window i is
the previous ``lookback`` windows minus any already flagged as candidates,
so a fill does not raise the bar for the fill windows that follow it. The
fold therefore takes a ``classify`` callback that decides each window's
candidate flag as soon as its features are known.
"""

import logging
from bisect import bisect_left
from collections.abc import Callable, Sequence

import numpy as np

from fillscan.config import FillConfig
from fillscan.models.chart import NoteEvent, TempoEvent
from fillscan.models.fill import AnalysisWindow, DrumVoice, FeatureVector
from fillscan.services.groove_model import GROOVE_DIMENSIONS, groove_vector, matrix_groove_distance
from fillscan.services.lane_map import LaneMapper, note_voice
from fillscan.services.quantize import (
    MeasureGrid,
    beats_to_ticks,
    build_measure_grid,
    ticks_to_beats,
    window_boundaries,
)
from fillscan.services.stats import std_dev, z_score
from fillscan.services.tempo_map import tick_range_to_ms

logger = logging.getLogger(__name__)

# Beats per bar used to turn lookback_bars into a window count
LOOKBACK_BEATS_PER_BAR = 4

# Lower bounds on baseline spread. A perfectly steady groove has zero
# spread, which would make every z-score either 0 or infinite.
MIN_DENSITY_STD = 0.5  # notes per beat
MIN_IOI_STD = 5.0  # ms

# Added to both sides of the tom-ratio jump so a tom-free baseline still
# gives a finite, large jump
TOM_RATIO_SMOOTHING = 0.1

# A grid this full counts as a novel (dense) pattern
GRID_FILL_THRESHOLD = 0.5

# Consecutive same-pad hits that make a burst
BURST_MIN_NOTES = 3

# The crash must land in this final share of the window
CRASH_TAIL_FRACTION = 0.25

# Columns of the raw-statistics matrix the rolling baseline is built from
BASELINE_COLUMNS = ("note_density", "ioi_std", "tom_ratio", "hat_ratio", "kick_ratio")

WindowClassifier = Callable[[AnalysisWindow], tuple[bool, float]]


def lookback_window_count(config: FillConfig) -> int:
    return max(1, int(config.lookback_bars * LOOKBACK_BEATS_PER_BAR / config.stride_beats))


def stride_ticks(config: FillConfig, resolution: int) -> int:
    """Window hop in ticks, rounded the way ``window_boundaries`` rounds it."""
    return max(1, round(beats_to_ticks(config.stride_beats, resolution)))


def create_windows(
    notes: Sequence[NoteEvent],
    start_tick: int,
    end_tick: int,
    config: FillConfig,
    tempos: Sequence[TempoEvent],
    resolution: int,
) -> list[AnalysisWindow]:
    """Cut tick-sorted ``notes`` into windows between the bounds."""
    ticks = [n.tick for n in notes]
    windows = []
    for start, end in window_boundaries(start_tick, end_tick, config.window_beats, config.stride_beats, resolution):
        start_ms, end_ms = tick_range_to_ms(start, end, tempos, resolution)
        windows.append(
            AnalysisWindow(
                start_tick=start,
                end_tick=end,
                start_ms=start_ms,
                end_ms=end_ms,
                notes=list(notes[bisect_left(ticks, start) : bisect_left(ticks, end)]),
            )
        )
    return windows


def _ioi_std(notes: Sequence[NoteEvent]) -> float:
    onsets = np.sort(np.array([n.ms_time for n in notes], dtype=float))
    gaps = np.diff(onsets)
    gaps = gaps[gaps > 0]
    if len(gaps) < 2:
        return 0.0
    return std_dev(gaps)


def _grid_novelty(window: AnalysisWindow, resolution: int) -> float:
    grid = max(1, resolution // 4)
    slots = max(1, -(-(window.end_tick - window.start_tick) // grid))
    filled = {(n.tick - window.start_tick) // grid for n in window.notes}
    return 1.0 if len(filled) / slots > GRID_FILL_THRESHOLD else 0.0


def detect_same_pad_burst(notes: Sequence[NoteEvent], burst_ms: float) -> bool:
    """True if some lane has 3+ consecutive hits each within ``burst_ms`` of the last."""
    by_type: dict[int, list[float]] = {}
    for note in notes:
        by_type.setdefault(note.type, []).append(note.ms_time)

    for times in by_type.values():
        if len(times) < BURST_MIN_NOTES:
            continue
        times.sort()
        run = 1
        for prev, cur in zip(times, times[1:]):
            run = run + 1 if cur - prev <= burst_ms else 1
            if run >= BURST_MIN_NOTES:
                return True
    return False


def detect_crash_resolve(
    window: AnalysisWindow,
    resolution: int,
    measure_grid: MeasureGrid,
    mapper: LaneMapper | None = None,
) -> bool:
    """A cymbal in the window's last quarter with a downbeat within a beat of its end."""
    tail_start = window.end_tick - (window.end_tick - window.start_tick) * CRASH_TAIL_FRACTION
    if not any(n.tick >= tail_start and note_voice(n, mapper) == DrumVoice.CYMBAL for n in window.notes):
        return False

    index = measure_grid.index_at(window.end_tick)
    if measure_grid.start_of(index) == window.end_tick:
        return True
    return measure_grid.end_of(index) - window.end_tick <= resolution


def compute_raw_stats(
    window: AnalysisWindow,
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid,
    mapper: LaneMapper | None = None,
) -> AnalysisWindow:
    """Return a copy of ``window`` with its baseline-independent statistics filled in."""
    notes = window.notes
    total = len(notes)
    window_beats = ticks_to_beats(window.end_tick - window.start_tick, resolution)

    counts = dict.fromkeys(DrumVoice, 0)
    for note in notes:
        counts[note_voice(note, mapper)] += 1

    def ratio(voice: DrumVoice) -> float:
        return counts[voice] / total if total else 0.0

    features = FeatureVector(
        note_density=total / window_beats,
        ngram_novelty=_grid_novelty(window, resolution),
        same_pad_burst=detect_same_pad_burst(notes, config.thresholds.burst_ms),
        crash_resolve=detect_crash_resolve(window, resolution, measure_grid, mapper),
    )
    return window.model_copy(
        update={
            "features": features,
            "tom_ratio": ratio(DrumVoice.TOM),
            "hat_ratio": ratio(DrumVoice.HAT),
            "kick_ratio": ratio(DrumVoice.KICK),
            "cymbal_ratio": ratio(DrumVoice.CYMBAL),
            "ioi_std": _ioi_std(notes),
        }
    )


def baseline_row(window: AnalysisWindow) -> list[float]:
    return [window.features.note_density, window.ioi_std, window.tom_ratio, window.hat_ratio, window.kick_ratio]


def baseline_relative_features(window: AnalysisWindow, baseline: np.ndarray) -> dict[str, float]:
    """Relative features of ``window`` against ``baseline``, one ``BASELINE_COLUMNS`` row per history window."""
    if len(baseline) == 0:
        return {
            "density_z": 0.0,
            "tom_ratio_jump": 1.0,
            "hat_dropout": 0.0,
            "kick_drop": 0.0,
            "ioi_std_z": 0.0,
        }

    density_mean, ioi_mean, tom_mean, hat_mean, kick_mean = baseline.mean(axis=0).tolist()
    density_std, ioi_std = baseline[:, :2].std(axis=0).tolist()

    return {
        "density_z": z_score(window.features.note_density, density_mean, max(density_std, MIN_DENSITY_STD)),
        "tom_ratio_jump": (window.tom_ratio + TOM_RATIO_SMOOTHING) / (tom_mean + TOM_RATIO_SMOOTHING),
        "hat_dropout": max(0.0, 1.0 - window.hat_ratio / hat_mean) if hat_mean > 0 else 0.0,
        "kick_drop": max(0.0, kick_mean - window.kick_ratio),
        "ioi_std_z": z_score(window.ioi_std, ioi_mean, max(ioi_std, MIN_IOI_STD)),
    }


def relative_features(window: AnalysisWindow, history: Sequence[AnalysisWindow]) -> dict[str, float]:
    """Baseline-relative features of ``window``; neutral values without history."""
    baseline = np.array([baseline_row(w) for w in history], dtype=float).reshape(-1, len(BASELINE_COLUMNS))
    return baseline_relative_features(window, baseline)


def compute_window_features(
    windows: Sequence[AnalysisWindow],
    config: FillConfig,
    resolution: int,
    *,
    mapper: LaneMapper | None = None,
    measure_grid: MeasureGrid | None = None,
    classify: WindowClassifier | None = None,
) -> list[AnalysisWindow]:
    """Fold over ``windows`` and return new windows with full feature vectors.

    Args:
        windows: Windows in tick order, as built by ``create_windows``
        config: Validated configuration
        resolution: Ticks per quarter note
        mapper: Lane mapper used for voice ratios and cymbal detection
        measure_grid: Bar layout for the crash-resolve cue (4/4 if omitted)
        classify: Decides each window's candidate flag and confidence once
            its features are complete. Without it no window is excluded from
            later baselines.

    Returns:
        New AnalysisWindow objects; the inputs are left untouched.
    """
    if not windows:
        return []

    if measure_grid is None:
        measure_grid = build_measure_grid([], resolution, windows[-1].end_tick)

    lookback = lookback_window_count(config)
    raw = [compute_raw_stats(w, config, resolution, measure_grid, mapper) for w in windows]

    # Row i of each matrix belongs to window i; the fold only reads rows < i
    baseline = np.array([baseline_row(w) for w in raw], dtype=float)
    vectors = np.zeros((len(raw), GROOVE_DIMENSIONS))
    flagged = np.zeros(len(raw), dtype=bool)

    done: list[AnalysisWindow] = []
    for i, window in enumerate(raw):
        lo = max(0, i - lookback)
        keep = ~flagged[lo:i]

        features = window.features.model_copy(update=baseline_relative_features(window, baseline[lo:i][keep]))
        vectors[i] = groove_vector(features)
        features.groove_dist = matrix_groove_distance(vectors[lo:i][keep], vectors[i])
        current = window.model_copy(update={"features": features})

        if classify is not None:
            current.is_candidate, current.confidence = classify(current)
        flagged[i] = current.is_candidate
        done.append(current)

    logger.debug(
        f"Computed features for {len(done)} windows "
        f"({sum(w.is_candidate for w in done)} flagged, lookback {lookback})"
    )
    return done
