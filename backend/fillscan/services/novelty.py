"""Rhythm-pattern hashing and novelty scoring.

A stretch of notes is laid on a 16th-note grid and reduced to a binary
onset pattern plus the first voice heard in each slot. The pair is hashed
into a key, and a ``PatternCache`` counts how often each key has shown up.
Novelty is the share of n-gram patterns the cache has not seen yet.

This is a secondary signal. It feeds the repeating-groove detector and the
complexity heuristics; on its own it never marks a window as a fill.

The cache belongs to the caller. ``extract_fills`` builds a fresh one per
call unless it is handed one to share.
"""

import logging
import threading
from bisect import bisect_left
from collections.abc import Sequence

import numpy as np
from pydantic import BaseModel, ConfigDict

from fillscan.config import settings
from fillscan.models.chart import NoteEvent
from fillscan.models.fill import DrumVoice
from fillscan.services.lane_map import LaneMapper, note_voice

logger = logging.getLogger(__name__)

# Grid slots per whole note (16th notes)
GRID_DIVISION = 16

# N-gram length and hop, in beats
NGRAM_BEATS = 4
NGRAM_STRIDE_BEATS = 1

# Share of least-frequent entries dropped when the cache overflows
PRUNE_FRACTION = 0.25

# detect_fill_patterns decision thresholds
NOVELTY_FILL_THRESHOLD = 0.3
COMPLEXITY_FILL_THRESHOLD = 0.6
DENSITY_FILL_THRESHOLD = 0.7


class RhythmPattern(BaseModel):
    model_config = ConfigDict(frozen=True)

    pattern: tuple[int, ...]  # 1 where a grid slot has an onset
    voices: tuple[DrumVoice, ...]  # first voice per slot, UNKNOWN if empty
    key: str


class PatternComplexity(BaseModel):
    density: float
    voice_diversity: float
    syncopation: float
    irregularity: float


class FillPatternResult(BaseModel):
    novelty_score: float
    complexity_score: float
    is_fill_candidate: bool


class PatternCache:
    """Bounded pattern-frequency table, safe to share between threads."""

    def __init__(self, max_size: int | None = None):
        self.max_size = max_size if max_size is not None else settings.pattern_cache_size
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, pattern: RhythmPattern) -> None:
        with self._lock:
            self._counts[pattern.key] = self._counts.get(pattern.key, 0) + 1
            if len(self._counts) > self.max_size:
                self._prune()

    def contains(self, pattern: RhythmPattern) -> bool:
        with self._lock:
            return pattern.key in self._counts

    def frequency(self, pattern: RhythmPattern) -> int:
        with self._lock:
            return self._counts.get(pattern.key, 0)

    def check_and_add(self, pattern: RhythmPattern) -> bool:
        """Record ``pattern`` and report whether it had been seen before."""
        with self._lock:
            seen = pattern.key in self._counts
            self._counts[pattern.key] = self._counts.get(pattern.key, 0) + 1
            if len(self._counts) > self.max_size:
                self._prune()
            return seen

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._counts)

    def _prune(self) -> None:
        # Caller holds the lock
        by_frequency = sorted(self._counts.items(), key=lambda item: item[1])
        drop = int(len(by_frequency) * PRUNE_FRACTION)
        for key, _ in by_frequency[:drop]:
            del self._counts[key]
        logger.debug(f"Pruned {drop} patterns from cache, {len(self._counts)} left")


def _pattern_key(pattern: Sequence[int], voices: Sequence[DrumVoice]) -> str:
    return "".join(str(v) for v in pattern) + "_" + "".join(v.value[0] for v in voices)


def create_rhythm_pattern(
    notes: Sequence[NoteEvent],
    start_tick: int,
    end_tick: int,
    resolution: int,
    mapper: LaneMapper | None = None,
    grid_division: int = GRID_DIVISION,
) -> RhythmPattern:
    """Quantize the notes in ``[start_tick, end_tick)`` onto the grid."""
    grid_size = max(1, resolution * 4 // grid_division)
    length = max(0, -(-(end_tick - start_tick) // grid_size))

    pattern = [0] * length
    voices = [DrumVoice.UNKNOWN] * length

    for note in notes:
        if not start_tick <= note.tick < end_tick:
            continue
        slot = (note.tick - start_tick) // grid_size
        pattern[slot] = 1
        if voices[slot] == DrumVoice.UNKNOWN:
            voices[slot] = note_voice(note, mapper)

    return RhythmPattern(pattern=tuple(pattern), voices=tuple(voices), key=_pattern_key(pattern, voices))


def extract_ngram_patterns(
    notes: Sequence[NoteEvent],
    start_tick: int,
    end_tick: int,
    resolution: int,
    ngram_beats: float = NGRAM_BEATS,
    stride_beats: float = NGRAM_STRIDE_BEATS,
    mapper: LaneMapper | None = None,
) -> list[RhythmPattern]:
    """Patterns of every full n-gram window between the bounds that holds notes."""
    ngram_ticks = max(1, round(ngram_beats * resolution))
    stride_ticks = max(1, round(stride_beats * resolution))

    ordered = sorted(notes, key=lambda n: n.tick)
    ticks = [n.tick for n in ordered]

    patterns = []
    start = start_tick
    while start + ngram_ticks <= end_tick:
        end = start + ngram_ticks
        window_notes = ordered[bisect_left(ticks, start) : bisect_left(ticks, end)]
        if window_notes:
            patterns.append(create_rhythm_pattern(window_notes, start, end, resolution, mapper))
        start += stride_ticks
    return patterns


def novelty_score(patterns: Sequence[RhythmPattern], cache: PatternCache) -> float:
    """Fraction of ``patterns`` the cache had not seen; each one is recorded."""
    if not patterns:
        return 0.0
    novel = sum(1 for p in patterns if not cache.check_and_add(p))
    return novel / len(patterns)


def analyze_pattern_complexity(pattern: RhythmPattern) -> PatternComplexity:
    onsets = np.flatnonzero(pattern.pattern)
    slots = len(pattern.pattern)
    if slots == 0 or len(onsets) == 0:
        return PatternComplexity(density=0.0, voice_diversity=0.0, syncopation=0.0, irregularity=0.0)

    density = len(onsets) / slots
    voice_diversity = len({v for v in pattern.voices if v != DrumVoice.UNKNOWN}) / len(DrumVoice)

    # Onsets that do not land on a quarter-note slot
    off_beat = int(np.count_nonzero(onsets % 4))
    syncopation = min(1.0, off_beat / len(onsets))

    irregularity = 0.0
    if len(onsets) > 1:
        intervals = np.diff(onsets)
        irregularity = min(1.0, float(np.std(intervals) / np.mean(intervals)))

    return PatternComplexity(
        density=density,
        voice_diversity=voice_diversity,
        syncopation=syncopation,
        irregularity=irregularity,
    )


def detect_fill_patterns(
    notes: Sequence[NoteEvent],
    start_tick: int,
    end_tick: int,
    resolution: int,
    cache: PatternCache,
    mapper: LaneMapper | None = None,
) -> FillPatternResult:
    """Score a stretch of notes by pattern novelty and complexity.

    Complexity is 0.3*density + 0.3*voice diversity + 0.2*syncopation +
    0.2*irregularity, averaged over the n-grams. The stretch looks like a
    fill when novelty > 0.3, complexity > 0.6 or density > 0.7.
    """
    patterns = extract_ngram_patterns(notes, start_tick, end_tick, resolution, mapper=mapper)
    if not patterns:
        return FillPatternResult(novelty_score=0.0, complexity_score=0.0, is_fill_candidate=False)

    novelty = novelty_score(patterns, cache)

    metrics = [analyze_pattern_complexity(p) for p in patterns]
    density = float(np.mean([m.density for m in metrics]))
    diversity = float(np.mean([m.voice_diversity for m in metrics]))
    syncopation = float(np.mean([m.syncopation for m in metrics]))
    irregularity = float(np.mean([m.irregularity for m in metrics]))

    complexity = density * 0.3 + diversity * 0.3 + syncopation * 0.2 + irregularity * 0.2

    return FillPatternResult(
        novelty_score=novelty,
        complexity_score=complexity,
        is_fill_candidate=(
            novelty > NOVELTY_FILL_THRESHOLD
            or complexity > COMPLEXITY_FILL_THRESHOLD
            or density > DENSITY_FILL_THRESHOLD
        ),
    )
