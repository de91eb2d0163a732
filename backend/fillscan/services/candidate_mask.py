"""Rule engine turning window features into fill candidates.

Detection happens in two stages.

1. Per window, a disjunction of primary rules decides ``is_candidate``.
   Secondary cues (hat dropout, kick drop, timing irregularity, bursts,
   crash resolutions) only add to a diagnostic confidence score.
2. Over the whole song, flagged windows are post-processed in order:
   isolation removal, temporal constraints on each run of flagged windows,
   suppression inside repeating-groove sections, and reclassification of
   candidates that resolve into very common measures.

Stage 1 runs inside the feature fold (see ``window_stats``) because the
rolling baseline skips windows that are already flagged.
"""

import logging
from bisect import bisect_left
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel
from sklearn.cluster import AgglomerativeClustering
from sklearn.metrics import pairwise_distances

from fillscan.config import FillConfig
from fillscan.models.chart import NoteEvent
from fillscan.models.fill import AnalysisWindow, DrumVoice
from fillscan.services.lane_map import LaneMapper, note_voice
from fillscan.services.novelty import NGRAM_BEATS, PatternCache, extract_ngram_patterns, novelty_score
from fillscan.services.quantize import MeasureGrid, build_measure_grid
from fillscan.services.stats import clamp, median
from fillscan.services.window_stats import WindowClassifier, stride_ticks

logger = logging.getLogger(__name__)

# --- Primary rule constants ---
EXTREME_DENSITY = 10.0  # notes per beat
EXTREME_DIST_FACTOR = 1.1
HIGH_TOM_DENSITY = 5.0
HIGH_TOM_JUMP_FACTOR = 1.05
BAR_EDGE_BEATS = 0.5
BAR_START_TOM_RATIO = 0.7
BAR_START_DENSITY_Z_FACTOR = 0.9
BAR_END_TOM_RATIO = 0.55
BAR_END_DENSITY = 4.2
BAR_END_DENSITY_Z_FACTOR = 0.8

# --- Post-processing constants ---
ISOLATED_DENSITY_Z = 2.0
STRONG_FILL_DENSITY = 4.0
STRONG_FILL_TOM_RATIO = 0.6
BAR_END_ALLOWANCE_BEATS = 1.25
STRONG_BAR_END_ALLOWANCE_BEATS = 1.5
GUARD_DIST_FACTOR = 0.9
GUARD_HAT_DROPOUT = 0.5
GUARD_KICK_DROP = 0.3

# Repeating-groove sections: tunable, fitted on a small set of charts
REPEAT_MIN_BARS = 4
REPEAT_MAX_NOVELTY = 0.25

# Measure-frequency reclassification: tunable as well
SIGNATURE_VOICES = (DrumVoice.KICK, DrumVoice.SNARE, DrumVoice.HAT, DrumVoice.TOM, DrumVoice.CYMBAL)
SIGNATURE_SLOTS = 16
MIN_MEASURES_FOR_CLUSTERING = 4
SIMILARITY_PERCENTILE = 25
EVIDENCE_DENSITY = 4.0
EVIDENCE_BURST_DENSITY = 3.0


class DetectionResult(BaseModel):
    is_candidate: bool
    confidence: float  # 0-1
    reasons: list[str]


class CandidateStatistics(BaseModel):
    total_windows: int
    candidate_windows: int
    candidate_ratio: float
    average_confidence: float
    candidate_groups: int


class BarProfile(BaseModel):
    start_tick: int
    end_tick: int
    novelty: float
    groove_dist: float  # median over the bar's windows


def evaluate_window(
    window: AnalysisWindow,
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid,
) -> DetectionResult:
    """Apply the primary rules and confidence bonuses to one window."""
    f = window.features
    t = config.thresholds
    reasons: list[str] = []
    confidence = 0.0
    primary = False

    if f.density_z > t.density_z and f.groove_dist > t.dist:
        reasons.append("High density with groove deviation")
        confidence += 0.4
        primary = True

    if f.tom_ratio_jump > t.tom_jump:
        reasons.append("Tom ratio spike")
        confidence += 0.3
        primary = True

    if f.note_density > EXTREME_DENSITY and f.groove_dist > t.dist * EXTREME_DIST_FACTOR:
        reasons.append("Extreme density with groove deviation")
        confidence += 0.35
        primary = True

    if f.note_density > HIGH_TOM_DENSITY and f.tom_ratio_jump > t.tom_jump * HIGH_TOM_JUMP_FACTOR:
        reasons.append("Dense tom content")
        confidence += 0.25
        primary = True

    edge = BAR_EDGE_BEATS * resolution
    if not primary and window.notes:
        if (
            measure_grid.distance_to_boundary(window.start_tick) <= edge
            and window.tom_ratio >= BAR_START_TOM_RATIO
            and f.density_z >= t.density_z * BAR_START_DENSITY_Z_FACTOR
        ):
            reasons.append("Bar-start tom emphasis")
            confidence += 0.35
            primary = True

    if not primary and window.notes:
        if (
            measure_grid.distance_to_boundary(window.end_tick) <= edge
            and (window.tom_ratio >= BAR_END_TOM_RATIO or f.note_density >= BAR_END_DENSITY)
            and f.density_z >= t.density_z * BAR_END_DENSITY_Z_FACTOR
        ):
            reasons.append("Bar-end tom burst")
            confidence += 0.3
            primary = True

    # Secondary cues
    if f.hat_dropout > 0.5:
        reasons.append("Hat dropout")
        confidence += 0.1
    if f.kick_drop > 0.3:
        reasons.append("Kick drop")
        confidence += 0.1
    if f.ioi_std_z > 1.5:
        reasons.append("Irregular timing")
        confidence += 0.1
    if f.ngram_novelty > 0:
        reasons.append("Novel pattern")
        confidence += 0.1
    if f.same_pad_burst and f.density_z > t.density_z * 0.9:
        reasons.append("Same pad burst")
        confidence += 0.2
    if f.crash_resolve and f.note_density >= 3.0:
        reasons.append("Crash resolution")
        confidence += 0.1

    # Combined heuristics
    if f.note_density > 8:
        confidence += 0.3
    if f.density_z > 0.8 and f.tom_ratio_jump > 1.2:
        confidence += 0.2
    if f.hat_dropout > 0.3 and f.kick_drop > 0.2:
        confidence += 0.15
    if f.same_pad_burst and f.ioi_std_z > 0.8:
        confidence += 0.2
    if f.note_density < 1.0 and f.groove_dist < 1.0:
        confidence -= 0.2

    return DetectionResult(is_candidate=primary, confidence=clamp(confidence, 0.0, 1.0), reasons=reasons)


def window_classifier(config: FillConfig, resolution: int, measure_grid: MeasureGrid) -> WindowClassifier:
    """Callback for ``compute_window_features`` that applies the primary rules."""

    def classify(window: AnalysisWindow) -> tuple[bool, float]:
        result = evaluate_window(window, config, resolution, measure_grid)
        return result.is_candidate, result.confidence

    return classify


def detect_candidate_windows(
    windows: Sequence[AnalysisWindow],
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid | None = None,
) -> list[AnalysisWindow]:
    """Re-run the primary rules over windows whose features are complete."""
    if not windows:
        return []
    if measure_grid is None:
        measure_grid = build_measure_grid([], resolution, windows[-1].end_tick)

    result = []
    for w in windows:
        detection = evaluate_window(w, config, resolution, measure_grid)
        result.append(w.model_copy(update={"is_candidate": detection.is_candidate, "confidence": detection.confidence}))
    return result


# --- Grouping helpers ---


def candidate_groups(windows: Sequence[AnalysisWindow]) -> list[list[int]]:
    """Index runs of consecutive flagged windows."""
    groups: list[list[int]] = []
    current: list[int] = []
    for i, w in enumerate(windows):
        if w.is_candidate:
            current.append(i)
        elif current:
            groups.append(current)
            current = []
    if current:
        groups.append(current)
    return groups


def group_notes(windows: Sequence[AnalysisWindow], group: Sequence[int]) -> list[NoteEvent]:
    """Distinct notes of a group's windows, in tick order."""
    seen: dict[int, NoteEvent] = {}
    for i in group:
        for note in windows[i].notes:
            seen.setdefault(id(note), note)
    return sorted(seen.values(), key=lambda n: n.tick)


def core_notes(windows: Sequence[AnalysisWindow], group: Sequence[int], stride: int) -> list[NoteEvent]:
    """Onsets of a group that set off its flags, without the surrounding groove.

    The first window of a run is flagged once its newest ``stride`` ticks
    reach the fill, and the last one while its oldest ``stride`` ticks still
    hold it. Onsets before ``first.end_tick - stride`` and from
    ``last.start_tick + stride`` on are therefore the playing around the
    fill. An edge is only trimmed when an unflagged window lies beyond it.
    Falls back to every onset of the group when nothing is left.
    """
    notes = group_notes(windows, group)
    first, last = group[0], group[-1]
    low = windows[first].end_tick - stride if first > 0 else None
    high = windows[last].start_tick + stride if last + 1 < len(windows) else None

    core = [n for n in notes if (low is None or n.tick >= low) and (high is None or n.tick < high)]
    return core or notes


def _demote(windows: list[AnalysisWindow], group: Sequence[int]) -> None:
    for i in group:
        windows[i] = windows[i].model_copy(update={"is_candidate": False})


def _group_mean(windows: Sequence[AnalysisWindow], group: Sequence[int], feature: str) -> float:
    return float(np.mean([getattr(windows[i].features, feature) for i in group]))


def _tom_cymbal_ratio(notes: Sequence[NoteEvent], mapper: LaneMapper | None) -> float:
    if not notes:
        return 0.0
    hits = sum(1 for n in notes if note_voice(n, mapper) in (DrumVoice.TOM, DrumVoice.CYMBAL))
    return hits / len(notes)


def _is_strong_fill(
    windows: Sequence[AnalysisWindow], group: Sequence[int], notes: Sequence[NoteEvent], mapper: LaneMapper | None
) -> bool:
    return (
        _group_mean(windows, group, "note_density") >= STRONG_FILL_DENSITY
        or _tom_cymbal_ratio(notes, mapper) >= STRONG_FILL_TOM_RATIO
    )


# --- Post-processing ---


def remove_isolated_candidates(windows: Sequence[AnalysisWindow]) -> list[AnalysisWindow]:
    """Demote flagged windows with no flagged neighbour unless they are extreme."""
    result = list(windows)
    for i, w in enumerate(windows):
        if not w.is_candidate:
            continue
        left = i > 0 and windows[i - 1].is_candidate
        right = i + 1 < len(windows) and windows[i + 1].is_candidate
        if left or right:
            continue
        if w.features.density_z > ISOLATED_DENSITY_Z or w.features.note_density > EXTREME_DENSITY:
            continue
        result[i] = w.model_copy(update={"is_candidate": False})
    return result


def apply_temporal_constraints(
    windows: Sequence[AnalysisWindow],
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid,
    mapper: LaneMapper | None = None,
) -> list[AnalysisWindow]:
    """Duration, bar-alignment and final acceptance checks per candidate group.

    A group's duration is the span from the first to the last of its core
    onsets (see ``core_notes``).
    """
    t = config.thresholds
    stride = stride_ticks(config, resolution)
    result = list(windows)

    for group in candidate_groups(windows):
        notes = core_notes(windows, group, stride)
        if not notes:
            _demote(result, group)
            continue

        first, last = notes[0].tick, notes[-1].tick
        duration = (last - first) / resolution
        if duration < t.min_beats or duration > t.max_beats:
            _demote(result, group)
            continue

        strong = _is_strong_fill(windows, group, notes, mapper)
        allowance = STRONG_BAR_END_ALLOWANCE_BEATS if strong else BAR_END_ALLOWANCE_BEATS
        near_bar_end = measure_grid.distance_to_boundary(last) <= allowance * resolution
        crash = any(windows[i].features.crash_resolve for i in group)
        if not near_bar_end and not crash and not strong:
            _demote(result, group)
            continue

        dropout = any(
            windows[i].features.hat_dropout > GUARD_HAT_DROPOUT and windows[i].features.kick_drop > GUARD_KICK_DROP
            for i in group
        )
        deviates = _group_mean(windows, group, "groove_dist") >= t.dist * GUARD_DIST_FACTOR
        novel = _group_mean(windows, group, "ngram_novelty") > 0
        if not strong and not (deviates and (novel or dropout)):
            _demote(result, group)

    return result


def bar_profiles(
    windows: Sequence[AnalysisWindow],
    notes: Sequence[NoteEvent],
    resolution: int,
    measure_grid: MeasureGrid,
    cache: PatternCache,
    mapper: LaneMapper | None = None,
) -> list[BarProfile]:
    """Per-bar pattern novelty and median groove distance across the song.

    A bar's novelty is scored on the 4-beat n-grams starting on each of its
    beats, so the bar's transition into the next one is part of its pattern.
    ``notes`` must be sorted by tick.
    """
    if not notes:
        return []

    ticks = [n.tick for n in notes]
    window_starts = [w.start_tick for w in windows]
    ngram_ticks = NGRAM_BEATS * resolution

    profiles = []
    first_bar = measure_grid.index_at(notes[0].tick)
    last_bar = measure_grid.index_at(notes[-1].tick)
    for index in range(first_bar, last_bar + 1):
        start = measure_grid.start_of(index)
        end = measure_grid.end_of(index)

        horizon = end - resolution + ngram_ticks
        bar_notes = notes[bisect_left(ticks, start) : bisect_left(ticks, horizon)]
        patterns = extract_ngram_patterns(bar_notes, start, horizon, resolution, mapper=mapper)
        novelty = novelty_score(patterns, cache)

        bar_windows = windows[bisect_left(window_starts, start) : bisect_left(window_starts, end)]
        dist = median([w.features.groove_dist for w in bar_windows])

        profiles.append(BarProfile(start_tick=start, end_tick=end, novelty=novelty, groove_dist=dist))
    return profiles


def repeating_sections(profiles: Sequence[BarProfile], dist_threshold: float) -> list[tuple[int, int]]:
    """Tick spans of runs of at least REPEAT_MIN_BARS low-novelty, low-deviation bars."""
    spans = []
    run: list[BarProfile] = []
    for bar in [*profiles, None]:
        if bar is not None and bar.novelty <= REPEAT_MAX_NOVELTY and bar.groove_dist < dist_threshold:
            run.append(bar)
            continue
        if len(run) >= REPEAT_MIN_BARS:
            spans.append((run[0].start_tick, run[-1].end_tick))
        run = []
    return spans


def suppress_repeating_grooves(
    windows: Sequence[AnalysisWindow],
    notes: Sequence[NoteEvent],
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid,
    cache: PatternCache,
    mapper: LaneMapper | None = None,
) -> list[AnalysisWindow]:
    """Demote candidate groups lying entirely inside a repeating-groove section."""
    result = list(windows)
    groups = candidate_groups(windows)
    if not groups:
        return result

    profiles = bar_profiles(windows, notes, resolution, measure_grid, cache, mapper)
    sections = repeating_sections(profiles, config.thresholds.dist)
    if not sections:
        return result

    for group in groups:
        start = windows[group[0]].start_tick
        end = windows[group[-1]].end_tick
        if any(s <= start and end <= e for s, e in sections):
            logger.debug(f"Suppressing candidate at ticks {start}-{end} inside repeating groove")
            _demote(result, group)
    return result


def measure_signatures(
    notes: Sequence[NoteEvent],
    measure_grid: MeasureGrid,
    mapper: LaneMapper | None = None,
) -> dict[int, np.ndarray]:
    """Voice x 16-slot onset bitmask per non-empty measure, keyed by measure index."""
    signatures: dict[int, np.ndarray] = {}
    for note in notes:
        voice = note_voice(note, mapper)
        if voice not in SIGNATURE_VOICES:
            continue
        index = measure_grid.index_at(note.tick)
        start = measure_grid.start_of(index)
        length = measure_grid.end_of(index) - start
        slot = min(SIGNATURE_SLOTS - 1, (note.tick - start) * SIGNATURE_SLOTS // length)
        sig = signatures.setdefault(index, np.zeros((len(SIGNATURE_VOICES), SIGNATURE_SLOTS), dtype=bool))
        sig[SIGNATURE_VOICES.index(voice), slot] = True
    return {i: sig.ravel() for i, sig in signatures.items()}


def high_frequency_measures(signatures: dict[int, np.ndarray]) -> set[int]:
    """Measures whose rhythm belongs to one of the song's most common patterns.

    Signatures are clustered by single-linkage on Hamming distance, merging
    anything within the 25th percentile of nearest-neighbour distances.
    Clusters are then split into high and low frequency at the largest gap
    between consecutive cluster sizes.
    """
    if len(signatures) < MIN_MEASURES_FOR_CLUSTERING:
        return set()

    indices = sorted(signatures)
    matrix = np.array([signatures[i] for i in indices], dtype=bool)
    distances = np.rint(pairwise_distances(matrix, metric="hamming") * matrix.shape[1])

    nearest = np.where(np.eye(len(indices), dtype=bool), np.inf, distances).min(axis=1)
    threshold = float(np.percentile(nearest, SIMILARITY_PERCENTILE))

    labels = AgglomerativeClustering(
        n_clusters=None,
        metric="precomputed",
        linkage="single",
        distance_threshold=threshold + 0.5,
    ).fit_predict(distances)

    sizes = np.bincount(labels)
    if len(sizes) < 2:
        return set()

    ordered = np.sort(sizes)[::-1]
    gaps = ordered[:-1] - ordered[1:]
    split = int(np.argmax(gaps))
    if gaps[split] == 0:
        return set()

    high_labels = {label for label, size in enumerate(sizes) if size >= ordered[split]}
    logger.debug(
        f"Measure clustering: {len(sizes)} clusters, threshold {threshold:.1f}, "
        f"{len(high_labels)} high-frequency"
    )
    return {indices[k] for k, label in enumerate(labels) if label in high_labels}


def reclassify_by_measure_frequency(
    windows: Sequence[AnalysisWindow],
    notes: Sequence[NoteEvent],
    config: FillConfig,
    resolution: int,
    measure_grid: MeasureGrid,
    mapper: LaneMapper | None = None,
) -> list[AnalysisWindow]:
    """Demote candidates resolving into a common measure unless the evidence is strong.

    The resolving measure is the one holding the group's last core onset.
    """
    result = list(windows)
    groups = candidate_groups(windows)
    if not groups:
        return result

    common = high_frequency_measures(measure_signatures(notes, measure_grid, mapper))
    if not common:
        return result

    stride = stride_ticks(config, resolution)
    for group in groups:
        group_ticks = [n.tick for n in core_notes(windows, group, stride)]
        resolving = measure_grid.index_at(group_ticks[-1] if group_ticks else windows[group[-1]].end_tick - 1)
        if resolving not in common:
            continue

        density = _group_mean(windows, group, "note_density")
        signature = any(windows[i].features.same_pad_burst or windows[i].features.crash_resolve for i in group)
        if (
            density >= EVIDENCE_DENSITY
            or _group_mean(windows, group, "tom_ratio_jump") > config.thresholds.tom_jump
            or (signature and density >= EVIDENCE_BURST_DENSITY)
        ):
            continue
        _demote(result, group)
    return result


def post_process_candidates(
    windows: Sequence[AnalysisWindow],
    notes: Sequence[NoteEvent],
    config: FillConfig,
    resolution: int,
    *,
    measure_grid: MeasureGrid | None = None,
    mapper: LaneMapper | None = None,
    cache: PatternCache | None = None,
) -> list[AnalysisWindow]:
    """Run the four post-processing passes in order."""
    if not windows:
        return []
    if measure_grid is None:
        measure_grid = build_measure_grid([], resolution, windows[-1].end_tick)
    if cache is None:
        cache = PatternCache()

    result = remove_isolated_candidates(windows)
    result = apply_temporal_constraints(result, config, resolution, measure_grid, mapper)
    result = suppress_repeating_grooves(result, notes, config, resolution, measure_grid, cache, mapper)
    result = reclassify_by_measure_frequency(result, notes, config, resolution, measure_grid, mapper)

    logger.debug(f"Post-processing kept {sum(w.is_candidate for w in result)} of {len(result)} windows")
    return result


# --- Diagnostics ---


def candidate_statistics(windows: Sequence[AnalysisWindow]) -> CandidateStatistics:
    flagged = [w for w in windows if w.is_candidate]
    total = len(windows)
    return CandidateStatistics(
        total_windows=total,
        candidate_windows=len(flagged),
        candidate_ratio=len(flagged) / total if total else 0.0,
        average_confidence=float(np.mean([w.confidence for w in flagged])) if flagged else 0.0,
        candidate_groups=len(candidate_groups(windows)),
    )


def validate_detection_config(config: FillConfig) -> list[str]:
    """Soft sanity checks on thresholds that validation accepts but that rarely make sense."""
    t = config.thresholds
    problems = []
    if t.density_z <= 0:
        problems.append("density_z threshold should be positive")
    if t.dist <= 0:
        problems.append("dist threshold should be positive")
    if t.tom_jump <= 1:
        problems.append("tom_jump threshold should be > 1 (ratio multiplier)")
    return problems


def detection_report(windows: Sequence[AnalysisWindow], config: FillConfig) -> str:
    stats = candidate_statistics(windows)
    t = config.thresholds
    lines = [
        "=== Fill Detection Report ===",
        "",
        f"Total windows:     {stats.total_windows}",
        f"Candidate windows: {stats.candidate_windows}",
        f"Candidate ratio:   {stats.candidate_ratio * 100:.1f}%",
        f"Candidate groups:  {stats.candidate_groups}",
        f"Mean confidence:   {stats.average_confidence:.2f}",
        "",
    ]
    problems = validate_detection_config(config)
    if problems:
        lines.append("Configuration warnings:")
        lines.extend(f"  - {p}" for p in problems)
        lines.append("")
    lines += [
        "Thresholds:",
        f"  Density z-score: {t.density_z}",
        f"  Groove distance: {t.dist}",
        f"  Tom jump ratio:  {t.tom_jump}",
        f"  Duration range:  {t.min_beats} - {t.max_beats} beats",
    ]
    return "\n".join(lines)
