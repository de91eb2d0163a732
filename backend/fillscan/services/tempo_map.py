"""Tick to millisecond conversion over a piecewise-constant tempo map.

A chart's clock is the tick; tempo events say how many beats per minute
apply from their tick onward. ``build_tempo_map`` recomputes every event's
``ms_time`` from the tempo in force before it, so later lookups only need
the nearest preceding event plus a linear extrapolation.

The lookup helpers expect tempos sorted by tick, which is what
``build_tempo_map`` returns.
"""

import logging
import math
from bisect import bisect_right
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from fillscan.errors import InvalidTempoError
from fillscan.models.chart import TempoEvent

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60000.0


def ticks_to_ms_duration(ticks: float, bpm: float, resolution: int) -> float:
    """Duration in ms of ``ticks`` at a constant tempo."""
    return ticks / resolution * (MS_PER_MINUTE / bpm)


def ms_to_duration_ticks(ms: float, bpm: float, resolution: int) -> float:
    """Number of ticks spanning ``ms`` at a constant tempo (not rounded)."""
    return ms / (MS_PER_MINUTE / bpm) * resolution


def _tempo_index(tick: float, tempos: Sequence[TempoEvent]) -> int:
    # Last event at or before tick; 0 when tick precedes every event
    return max(0, bisect_right(tempos, tick, key=lambda t: t.tick) - 1)


def tempo_at_tick(tick: float, tempos: Sequence[TempoEvent]) -> TempoEvent:
    if not tempos:
        raise InvalidTempoError("No tempo events provided")
    return tempos[_tempo_index(tick, tempos)]


def bpm_at_tick(tick: float, tempos: Sequence[TempoEvent]) -> float:
    return tempo_at_tick(tick, tempos).beats_per_minute


def tick_to_ms(tick: float, tempos: Sequence[TempoEvent], resolution: int) -> float:
    """Convert an absolute tick to milliseconds from song start.

    Ticks before the first tempo event are extrapolated backward with that
    event's BPM and never go below zero.
    """
    tempo = tempo_at_tick(tick, tempos)

    if tick <= tempo.tick:
        if tempo.tick == 0:
            return 0.0
        back = ticks_to_ms_duration(tempo.tick - tick, tempo.beats_per_minute, resolution)
        return max(0.0, tempo.ms_time - back)

    return tempo.ms_time + ticks_to_ms_duration(tick - tempo.tick, tempo.beats_per_minute, resolution)


def tick_range_to_ms(
    start_tick: float, end_tick: float, tempos: Sequence[TempoEvent], resolution: int
) -> tuple[float, float]:
    return tick_to_ms(start_tick, tempos, resolution), tick_to_ms(end_tick, tempos, resolution)


def tick_range_duration_ms(
    start_tick: float, end_tick: float, tempos: Sequence[TempoEvent], resolution: int
) -> float:
    start_ms, end_ms = tick_range_to_ms(start_tick, end_tick, tempos, resolution)
    return end_ms - start_ms


def build_tempo_map(tempos: Sequence[TempoEvent], resolution: int) -> list[TempoEvent]:
    """Return the tempos sorted by tick with consistent ``ms_time`` values.

    The first event keeps its own ``ms_time``; each later event's time is the
    previous event's time plus the interval played at the previous BPM.
    """
    if not tempos:
        return []

    ordered = sorted(tempos, key=lambda t: t.tick)
    tempo_map = [ordered[0]]

    for tempo in ordered[1:]:
        prev = tempo_map[-1]
        ms = prev.ms_time + ticks_to_ms_duration(tempo.tick - prev.tick, prev.beats_per_minute, resolution)
        tempo_map.append(tempo.model_copy(update={"ms_time": ms}))

    logger.debug(f"Built tempo map with {len(tempo_map)} events")
    return tempo_map


def validate_tempos(tempos: Any) -> list[TempoEvent]:
    """Check raw tempo events and return them as ``TempoEvent`` instances.

    Accepts ``TempoEvent`` objects or mappings with the same fields.

    Raises:
        InvalidTempoError: the events cannot describe a timeline.
    """
    if isinstance(tempos, (str, bytes)) or not isinstance(tempos, Sequence):
        raise InvalidTempoError("Tempos must be a sequence")
    if len(tempos) == 0:
        raise InvalidTempoError("At least one tempo event is required")

    events: list[TempoEvent] = []
    for i, raw in enumerate(tempos):
        if isinstance(raw, TempoEvent):
            tempo = raw
        elif isinstance(raw, Mapping):
            try:
                tempo = TempoEvent.model_validate(raw)
            except ValidationError as e:
                raise InvalidTempoError(f"Invalid tempo event {i}: {e.errors()[0]['msg']}") from e
        else:
            raise InvalidTempoError(f"Invalid tempo event {i}: {raw!r}")

        if tempo.tick < 0:
            raise InvalidTempoError(f"Invalid tick at tempo event {i}: {tempo.tick}")
        if not math.isfinite(tempo.beats_per_minute) or tempo.beats_per_minute <= 0:
            raise InvalidTempoError(f"Invalid BPM at tempo event {i}: {tempo.beats_per_minute}")
        if not math.isfinite(tempo.ms_time) or tempo.ms_time < 0:
            raise InvalidTempoError(f"Invalid ms_time at tempo event {i}: {tempo.ms_time}")
        events.append(tempo)

    if len({t.tick for t in events}) != len(events):
        raise InvalidTempoError("Duplicate tempo events at same tick position")

    return events
