"""Turning flagged windows into fill segments.

Runs of flagged windows become raw segments. Segments whose onsets are
separated by at most ``merge_gap_beats`` are joined, and segments outside the
allowed duration are dropped. Feature scores are averaged over the
constituent windows (booleans are OR-ed). Each segment is then pinned to a
measure and its boundaries snapped outward to whole beats.

A segment's extent before snapping is the span of its core onsets: the
onsets of its windows minus the groove the run's edge windows overlap (see
``candidate_mask.core_notes``).
"""

import logging
import math
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel

from fillscan.config import FillConfig
from fillscan.models.chart import NoteEvent, TempoEvent
from fillscan.models.fill import AnalysisWindow, DrumVoice, FillSegment
from fillscan.services.candidate_mask import candidate_groups, core_notes
from fillscan.services.lane_map import LaneMapper, note_voice
from fillscan.services.quantize import MeasureGrid
from fillscan.services.tempo_map import tick_range_to_ms
from fillscan.services.window_stats import stride_ticks

logger = logging.getLogger(__name__)

# Anchor search: a one-beat look-ahead needing this many notes, this tom/cymbal-heavy
ANCHOR_MIN_NOTES = 3
ANCHOR_TOM_RATIO = 0.5

# Segments closer than this (in beats) are folded together
PROXIMITY_GAP_BEATS = 2.0

CONTINUOUS_FEATURES = (
    "note_density",
    "density_z",
    "tom_ratio_jump",
    "hat_dropout",
    "kick_drop",
    "ioi_std_z",
    "ngram_novelty",
    "groove_dist",
)
BOOLEAN_FEATURES = ("same_pad_burst", "crash_resolve")


class RawSegment(BaseModel):
    start_tick: int
    end_tick: int
    windows: list[AnalysisWindow]
    notes: list[NoteEvent]


class SegmentationStats(BaseModel):
    total_windows: int
    candidate_windows: int
    final_segments: int
    average_segment_ms: float
    total_fill_ms: float


def _raw_segment(windows: list[AnalysisWindow], notes: list[NoteEvent]) -> RawSegment:
    if notes:
        return RawSegment(start_tick=notes[0].tick, end_tick=notes[-1].tick, windows=windows, notes=notes)
    return RawSegment(start_tick=windows[0].start_tick, end_tick=windows[-1].end_tick, windows=windows, notes=notes)


def group_candidate_windows(windows: Sequence[AnalysisWindow], stride: int) -> list[RawSegment]:
    segments = []
    for group in candidate_groups(windows):
        segments.append(_raw_segment([windows[i] for i in group], core_notes(windows, group, stride)))
    return segments


def merge_nearby_segments(segments: Sequence[RawSegment], config: FillConfig, resolution: int) -> list[RawSegment]:
    if len(segments) <= 1:
        return list(segments)

    max_gap = config.thresholds.merge_gap_beats * resolution
    merged = [segments[0]]
    for seg in segments[1:]:
        current = merged[-1]
        if seg.start_tick - current.end_tick <= max_gap:
            notes = {id(n): n for n in [*current.notes, *seg.notes]}
            merged[-1] = RawSegment(
                start_tick=current.start_tick,
                end_tick=max(current.end_tick, seg.end_tick),
                windows=[*current.windows, *seg.windows],
                notes=sorted(notes.values(), key=lambda n: n.tick),
            )
        else:
            merged.append(seg)
    return merged


def filter_segments_by_duration(
    segments: Sequence[RawSegment], config: FillConfig, resolution: int
) -> list[RawSegment]:
    t = config.thresholds
    return [s for s in segments if t.min_beats <= (s.end_tick - s.start_tick) / resolution <= t.max_beats]


def aggregate_features(windows: Sequence[AnalysisWindow]) -> dict:
    """Mean of continuous features and OR of boolean ones."""
    if not windows:
        return {}
    aggregated = {
        name: float(np.mean([getattr(w.features, name) for w in windows])) for name in CONTINUOUS_FEATURES
    }
    for name in BOOLEAN_FEATURES:
        aggregated[name] = any(getattr(w.features, name) for w in windows)
    return aggregated


def find_anchor_tick(segment: RawSegment, resolution: int, mapper: LaneMapper | None = None) -> int:
    """First onset opening a tom/cymbal-heavy beat, else the first onset, else the segment start."""
    notes = segment.notes
    for i, note in enumerate(notes):
        ahead = [n for n in notes[i:] if n.tick < note.tick + resolution]
        if len(ahead) < ANCHOR_MIN_NOTES:
            continue
        heavy = sum(1 for n in ahead if note_voice(n, mapper) in (DrumVoice.TOM, DrumVoice.CYMBAL))
        if heavy / len(ahead) >= ANCHOR_TOM_RATIO:
            return note.tick
    if notes:
        return notes[0].tick
    return segment.start_tick


def to_fill_segment(
    segment: RawSegment,
    tempos: Sequence[TempoEvent],
    resolution: int,
    measure_grid: MeasureGrid,
    song_id: str = "",
    mapper: LaneMapper | None = None,
) -> FillSegment:
    anchor = find_anchor_tick(segment, resolution, mapper)
    index = measure_grid.index_at(anchor)
    measure_start = measure_grid.start_of(index)
    measure_end = measure_grid.end_of(index)

    start_ms, end_ms = tick_range_to_ms(segment.start_tick, segment.end_tick, tempos, resolution)
    measure_start_ms, measure_end_ms = tick_range_to_ms(measure_start, measure_end, tempos, resolution)

    return FillSegment(
        song_id=song_id,
        start_tick=segment.start_tick,
        end_tick=segment.end_tick,
        start_ms=start_ms,
        end_ms=end_ms,
        measure_start_tick=measure_start,
        measure_end_tick=measure_end,
        measure_start_ms=measure_start_ms,
        measure_end_ms=measure_end_ms,
        measure_number=index + 1,
        **aggregate_features(segment.windows),
    )


def merge_windows_into_segments(
    windows: Sequence[AnalysisWindow],
    config: FillConfig,
    resolution: int,
    tempos: Sequence[TempoEvent],
    measure_grid: MeasureGrid,
    song_id: str = "",
    mapper: LaneMapper | None = None,
) -> list[FillSegment]:
    """Group, merge, duration-filter and convert flagged windows."""
    raw = group_candidate_windows(windows, stride_ticks(config, resolution))
    merged = merge_nearby_segments(raw, config, resolution)
    kept = filter_segments_by_duration(merged, config, resolution)
    logger.debug(f"Segments: {len(raw)} raw, {len(merged)} after merge, {len(kept)} within duration")
    return [to_fill_segment(s, tempos, resolution, measure_grid, song_id, mapper) for s in kept]


def refine_boundaries(
    segments: Sequence[FillSegment], resolution: int, tempos: Sequence[TempoEvent]
) -> list[FillSegment]:
    """Snap segment bounds outward to whole beats.

    The start never precedes the segment's measure: onsets before it are a
    pickup into the measure the fill was assigned to. The end is at least a
    beat after the start.
    """
    refined = []
    for seg in segments:
        start = max(math.floor(seg.start_tick / resolution) * resolution, seg.measure_start_tick)
        end = max(math.ceil(seg.end_tick / resolution) * resolution, start + resolution)
        start_ms, end_ms = tick_range_to_ms(start, end, tempos, resolution)
        refined.append(
            seg.model_copy(update={"start_tick": start, "end_tick": end, "start_ms": start_ms, "end_ms": end_ms})
        )
    return refined


def sort_segments(segments: Sequence[FillSegment]) -> list[FillSegment]:
    return sorted(segments, key=lambda s: (s.song_id, s.start_tick))


def remove_overlaps(segments: Sequence[FillSegment]) -> list[FillSegment]:
    """Resolve overlaps in tick order, keeping the segment with the higher groove distance."""
    result: list[FillSegment] = []
    for seg in sort_segments(segments):
        if result and seg.song_id == result[-1].song_id and seg.start_tick < result[-1].end_tick:
            if seg.groove_dist > result[-1].groove_dist:
                result[-1] = seg
            continue
        result.append(seg)
    return result


def collapse_by_proximity(
    segments: Sequence[FillSegment],
    resolution: int,
    tempos: Sequence[TempoEvent],
    max_beats: float,
    gap_beats: float = PROXIMITY_GAP_BEATS,
) -> list[FillSegment]:
    """Fold segments separated by at most ``gap_beats`` into one.

    A fold only happens while the combined span stays within ``max_beats``.
    The earlier segment's measure is kept and each score takes the stronger
    of the two.
    """
    if len(segments) <= 1:
        return list(segments)

    merged: list[FillSegment] = [segments[0]]
    for seg in segments[1:]:
        current = merged[-1]
        start = min(current.start_tick, seg.start_tick)
        end = max(current.end_tick, seg.end_tick)
        if (
            seg.song_id != current.song_id
            or seg.start_tick - current.end_tick > gap_beats * resolution
            or (end - start) / resolution > max_beats
        ):
            merged.append(seg)
            continue

        start_ms, end_ms = tick_range_to_ms(start, end, tempos, resolution)
        update = {"start_tick": start, "end_tick": end, "start_ms": start_ms, "end_ms": end_ms}
        for name in CONTINUOUS_FEATURES:
            update[name] = max(getattr(current, name), getattr(seg, name))
        for name in BOOLEAN_FEATURES:
            update[name] = getattr(current, name) or getattr(seg, name)
        merged[-1] = current.model_copy(update=update)
    return merged


def collapse_by_measure(segments: Sequence[FillSegment]) -> list[FillSegment]:
    """Keep one segment per measure: longest, then highest density z, then groove distance."""
    best: dict[tuple[str, int], FillSegment] = {}
    for seg in segments:
        key = (seg.song_id, seg.measure_number)
        rank = (seg.end_tick - seg.start_tick, seg.density_z, seg.groove_dist)
        kept = best.get(key)
        if kept is None or rank > (kept.end_tick - kept.start_tick, kept.density_z, kept.groove_dist):
            best[key] = seg
    return sort_segments(best.values())


def segmentation_stats(windows: Sequence[AnalysisWindow], segments: Sequence[FillSegment]) -> SegmentationStats:
    lengths = [s.end_ms - s.start_ms for s in segments]
    return SegmentationStats(
        total_windows=len(windows),
        candidate_windows=sum(1 for w in windows if w.is_candidate),
        final_segments=len(segments),
        average_segment_ms=float(np.mean(lengths)) if lengths else 0.0,
        total_fill_ms=float(sum(lengths)),
    )
