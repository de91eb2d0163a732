"""Fill extraction entry point.

``extract_fills`` is a pure function of (chart, track, configuration). Inputs
are validated up front, in this order: configuration, chart, tempo map, drum
track. Any failure raises before analysis starts. A valid track with no notes
yields an empty list.

Pipeline:
1. Flatten the track's note groups and sort by tick
2. Slide windows across the notes
3. Fold over the windows computing features, groove distance and the
   primary candidate rules
4. Post-process candidates over the whole song
5. Merge candidate runs into segments, snap to beats
6. Resolve overlaps and collapse near-duplicates (nearby, same measure)
"""

import logging
import math
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from fillscan.config import FillConfig, validate_config
from fillscan.errors import DrumTrackNotFoundError, InvalidChartError
from fillscan.models.chart import Chart, Difficulty, Instrument, NoteEvent, Track
from fillscan.models.fill import ExtractionSummary, FillSegment, SegmentValidation, SongSummary
from fillscan.services.candidate_mask import post_process_candidates, window_classifier
from fillscan.services.lane_map import LaneMapper
from fillscan.services.merge_segments import (
    collapse_by_measure,
    collapse_by_proximity,
    merge_windows_into_segments,
    refine_boundaries,
    remove_overlaps,
    sort_segments,
)
from fillscan.services.novelty import PatternCache
from fillscan.services.quantize import build_measure_grid, quant_unit
from fillscan.services.tempo_map import build_tempo_map, validate_tempos
from fillscan.services.window_stats import compute_window_features, create_windows

logger = logging.getLogger(__name__)

# validate_fill_segments duration warnings
LONG_FILL_MS = 10000.0
SHORT_FILL_MS = 100.0


def validate_chart(chart: Chart | Mapping[str, Any] | None) -> Chart:
    """Return ``chart`` as a ``Chart``, validating a mapping if needed.

    Raises:
        InvalidChartError: missing chart, bad resolution or no track collection.
    """
    if chart is None:
        raise InvalidChartError("Chart is required")
    if isinstance(chart, Mapping):
        try:
            chart = Chart.model_validate(chart)
        except ValidationError as e:
            err = e.errors()[0]
            loc = ".".join(str(p) for p in err["loc"])
            raise InvalidChartError(f"{loc}: {err['msg']}") from e
    elif not isinstance(chart, Chart):
        raise InvalidChartError(f"expected a chart, got {type(chart).__name__}")

    if chart.resolution <= 0:
        raise InvalidChartError("resolution must be positive")
    if chart.tracks is None:
        raise InvalidChartError("chart has no track collection")
    return chart


def find_drum_track(chart: Chart, difficulty: Difficulty | str) -> Track | None:
    for track in chart.tracks or []:
        if track.instrument == Instrument.drums and track.difficulty == difficulty:
            return track
    return None


def flatten_notes(track: Track) -> list[NoteEvent]:
    """All notes of a track in tick order (stable within a chord)."""
    notes = [note for group in track.note_event_groups for note in group]
    return sorted(notes, key=lambda n: n.tick)


def analysis_bounds(notes: Sequence[NoteEvent], resolution: int, quant_div: int) -> tuple[int, int]:
    """Start on the beat at or before the first note; end one grid step past the last."""
    start = notes[0].tick // resolution * resolution
    end = notes[-1].tick + max(1, round(quant_unit(resolution, quant_div)))
    return start, end


def extract_fills(
    chart: Chart | Mapping[str, Any] | None,
    track: Track | None = None,
    config: FillConfig | Mapping[str, Any] | None = None,
    *,
    lane_mapper: LaneMapper | None = None,
    pattern_cache: PatternCache | None = None,
    song_id: str | None = None,
) -> list[FillSegment]:
    """Detect drum fills in one drum track of a chart.

    Args:
        chart: Parsed chart, or a mapping with the same fields
        track: Drum track to analyse. Defaults to the chart's drum track for
            the configured difficulty; an explicit track must match it.
        config: Partial overrides merged over the default configuration
        lane_mapper: Lane convention used to classify notes into voices
        pattern_cache: Shared pattern cache. A fresh one is used per call
            when omitted, which keeps results independent of earlier calls.
        song_id: Identifier stamped on every segment (chart name by default)

    Returns:
        Non-overlapping fill segments sorted by start tick.

    Raises:
        InvalidConfigError: the configuration does not validate
        InvalidChartError: the chart is missing or malformed
        InvalidTempoError: the tempo events cannot describe a timeline
        DrumTrackNotFoundError: no drum track for the configured difficulty
    """
    config = validate_config(config)
    chart = validate_chart(chart)
    resolution = chart.resolution
    tempos = build_tempo_map(validate_tempos(chart.tempos), resolution)

    if track is None:
        track = find_drum_track(chart, config.difficulty)
    elif track.instrument != Instrument.drums or track.difficulty != config.difficulty:
        track = None
    if track is None:
        raise DrumTrackNotFoundError(config.difficulty)

    song_id = song_id if song_id is not None else chart.name or "Unknown"

    notes = flatten_notes(track)
    if not notes:
        logger.info(f"No drum notes in {song_id} ({config.difficulty}), nothing to analyse")
        return []

    start_tick, end_tick = analysis_bounds(notes, resolution, config.quant_div)
    measure_grid = build_measure_grid(chart.time_signatures, resolution, end_tick)
    cache = pattern_cache if pattern_cache is not None else PatternCache()

    windows = create_windows(notes, start_tick, end_tick, config, tempos, resolution)
    logger.info(f"Analysing {song_id}: {len(notes)} notes, {len(windows)} windows")
    if not windows:
        return []

    windows = compute_window_features(
        windows,
        config,
        resolution,
        mapper=lane_mapper,
        measure_grid=measure_grid,
        classify=window_classifier(config, resolution, measure_grid),
    )
    windows = post_process_candidates(
        windows, notes, config, resolution, measure_grid=measure_grid, mapper=lane_mapper, cache=cache
    )

    segments = merge_windows_into_segments(windows, config, resolution, tempos, measure_grid, song_id, lane_mapper)
    segments = refine_boundaries(segments, resolution, tempos)
    segments = remove_overlaps(segments)
    segments = collapse_by_proximity(segments, resolution, tempos, config.thresholds.max_beats)
    segments = collapse_by_measure(segments)

    logger.info(f"Found {len(segments)} fills in {song_id}")
    return sort_segments(segments)


def create_extraction_summary(
    chart: Chart | Mapping[str, Any],
    segments: Sequence[FillSegment],
    config: FillConfig | Mapping[str, Any] | None = None,
) -> ExtractionSummary:
    """Song and detection figures for a finished extraction."""
    config = validate_config(config)
    chart = validate_chart(chart)

    track = find_drum_track(chart, config.difficulty)
    notes = flatten_notes(track) if track else []
    duration_ms = max((n.ms_time for n in notes), default=0.0)

    total_s = sum(s.end_ms - s.start_ms for s in segments) / 1000
    minutes = duration_ms / 60000

    return ExtractionSummary(
        song=SongSummary(name=chart.name or "Unknown", duration_ms=duration_ms, note_count=len(notes)),
        fill_count=len(segments),
        total_fill_duration_s=total_s,
        average_fill_duration_s=total_s / len(segments) if segments else 0.0,
        fills_per_minute=len(segments) / minutes if minutes > 0 else 0.0,
        segments=list(segments),
    )


def validate_fill_segments(segments: Sequence[FillSegment]) -> SegmentValidation:
    """Structural checks on a segment list.

    Errors: inverted ranges, negative positions, non-finite scores and
    overlap with the previous segment. Warnings: fills longer than 10 s or
    shorter than 100 ms.
    """
    errors: list[str] = []
    warnings: list[str] = []

    for i, seg in enumerate(segments):
        if seg.start_tick >= seg.end_tick:
            errors.append(f"Fill {i}: start_tick >= end_tick")
        if seg.start_ms >= seg.end_ms:
            errors.append(f"Fill {i}: start_ms >= end_ms")
        if seg.start_tick < 0 or seg.start_ms < 0:
            errors.append(f"Fill {i}: negative start position")

        scores = [
            seg.note_density,
            seg.density_z,
            seg.tom_ratio_jump,
            seg.hat_dropout,
            seg.kick_drop,
            seg.ioi_std_z,
            seg.ngram_novelty,
            seg.groove_dist,
        ]
        if not all(math.isfinite(v) for v in [seg.start_ms, seg.end_ms, *scores]):
            errors.append(f"Fill {i}: invalid feature values")

        duration_ms = seg.end_ms - seg.start_ms
        if duration_ms > LONG_FILL_MS:
            warnings.append(f"Fill {i}: very long duration ({duration_ms / 1000:.1f}s)")
        elif 0 < duration_ms < SHORT_FILL_MS:
            warnings.append(f"Fill {i}: very short duration ({duration_ms:.0f}ms)")

    for i in range(1, len(segments)):
        prev, cur = segments[i - 1], segments[i]
        if cur.song_id == prev.song_id and cur.start_tick < prev.end_tick:
            errors.append(f"Fill {i}: overlaps with previous fill")

    return SegmentValidation(is_valid=not errors, errors=errors, warnings=warnings)
