"""Beat/tick arithmetic, sliding-window boundaries and the measure grid.

Beats here are quarter notes: ``resolution`` ticks per beat. The simple
beat-position helpers assume 4/4; ``MeasureGrid`` follows the chart's
time signatures and is what bar-boundary heuristics use.
"""

import logging
from bisect import bisect_right
from collections.abc import Iterator, Sequence

from fillscan.models.chart import NoteEvent, TimeSignature

logger = logging.getLogger(__name__)

# Used wherever no time signature applies
DEFAULT_BEATS_PER_MEASURE = 4


def quant_unit(resolution: int, quant_div: int = 4) -> float:
    """Grid step in ticks; quant_div=4 gives 16th notes."""
    return resolution / quant_div


def quantize_tick(tick: float, resolution: int, quant_div: int = 4) -> int:
    unit = quant_unit(resolution, quant_div)
    return int(round(round(tick / unit) * unit))


def quantize_notes(notes: Sequence[NoteEvent], resolution: int, quant_div: int = 4) -> list[NoteEvent]:
    """Copies of ``notes`` with ticks snapped to the quantization grid."""
    return [n.model_copy(update={"tick": quantize_tick(n.tick, resolution, quant_div)}) for n in notes]


def ticks_to_beats(ticks: float, resolution: int) -> float:
    return ticks / resolution


def beats_to_ticks(beats: float, resolution: int) -> float:
    return beats * resolution


def window_boundaries(
    start_tick: int,
    end_tick: int,
    window_beats: float,
    stride_beats: float,
    resolution: int,
) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` tick pairs of full windows between the bounds.

    Windows advance by ``stride_beats``; a trailing window that would cross
    ``end_tick`` is dropped rather than truncated.
    """
    window_ticks = max(1, round(beats_to_ticks(window_beats, resolution)))
    stride_ticks = max(1, round(beats_to_ticks(stride_beats, resolution)))

    start = start_tick
    while start + window_ticks <= end_tick:
        yield start, start + window_ticks
        start += stride_ticks


def snap_to_beat(tick: float, resolution: int) -> int:
    return int(round(tick / resolution) * resolution)


def beat_in_measure(tick: float, resolution: int, beats_per_measure: int = DEFAULT_BEATS_PER_MEASURE) -> float:
    return (tick % (resolution * beats_per_measure)) / resolution


def is_strong_beat(tick: float, resolution: int, beats_per_measure: int = DEFAULT_BEATS_PER_MEASURE) -> bool:
    """Beats 1 and 3 of the measure."""
    return int(beat_in_measure(tick, resolution, beats_per_measure)) in (0, 2)


def is_downbeat(tick: float, resolution: int, beats_per_measure: int = DEFAULT_BEATS_PER_MEASURE) -> bool:
    return tick % (resolution * beats_per_measure) == 0


class MeasureGrid:
    """Measure start ticks derived from a chart's time signatures.

    Each signature starts a new measure at its own tick. Past the last
    generated measure the grid keeps extending with the final bar length,
    so every non-negative tick belongs to a measure.
    """

    def __init__(self, starts: list[int], bar_ticks: list[int]):
        self.starts = starts
        self.bar_ticks = bar_ticks

    def __len__(self) -> int:
        return len(self.starts)

    def index_at(self, tick: float) -> int:
        """0-based index of the measure containing ``tick``."""
        last = len(self.starts) - 1
        if tick >= self.starts[last] + self.bar_ticks[last]:
            return last + int((tick - self.starts[last]) // self.bar_ticks[last])
        return max(0, bisect_right(self.starts, tick) - 1)

    def start_of(self, index: int) -> int:
        last = len(self.starts) - 1
        if index <= last:
            return self.starts[max(0, index)]
        return self.starts[last] + (index - last) * self.bar_ticks[last]

    def end_of(self, index: int) -> int:
        last = len(self.starts) - 1
        if index < last:
            return self.starts[index + 1]
        return self.start_of(index) + self.bar_ticks[last]

    def bar_length_at(self, tick: float) -> int:
        index = self.index_at(tick)
        return self.end_of(index) - self.start_of(index)

    def distance_to_boundary(self, tick: float) -> float:
        """Ticks to the nearest measure boundary on either side."""
        index = self.index_at(tick)
        return min(tick - self.start_of(index), self.end_of(index) - tick)


def build_measure_grid(
    time_signatures: Sequence[TimeSignature],
    resolution: int,
    end_tick: int,
) -> MeasureGrid:
    """Lay out measures from tick 0 to at least ``end_tick``.

    Bar length is ``numerator * resolution * 4 / denominator``. Signatures
    with non-positive parts are ignored; 4/4 applies until the first valid
    signature.
    """
    valid = []
    for sig in sorted(time_signatures, key=lambda s: s.tick):
        if sig.numerator <= 0 or sig.denominator <= 0 or sig.tick < 0:
            logger.warning(f"Ignoring time signature {sig.numerator}/{sig.denominator} at tick {sig.tick}")
            continue
        if valid and valid[-1].tick == sig.tick:
            valid[-1] = sig
        else:
            valid.append(sig)

    if not valid or valid[0].tick > 0:
        valid.insert(0, TimeSignature(tick=0, numerator=DEFAULT_BEATS_PER_MEASURE, denominator=4))

    starts: list[int] = []
    bar_ticks: list[int] = []
    for i, sig in enumerate(valid):
        bar = max(1, round(sig.numerator * resolution * 4 / sig.denominator))
        stop = valid[i + 1].tick if i + 1 < len(valid) else max(end_tick, sig.tick) + 1
        tick = sig.tick
        while tick < stop:
            starts.append(tick)
            bar_ticks.append(bar)
            tick += bar

    return MeasureGrid(starts, bar_ticks)
