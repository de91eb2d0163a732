"""Built-in synthetic drum charts.

Charts are assembled bar by bar from a handful of inline patterns (a
kick/snare backbeat, a bar of tom 16ths, split tom bursts) and written as
JSON in the same shape ``extract_fills`` accepts. No external data needed.
"""

import json
from pathlib import Path

from fillscan.models.chart import Chart, Difficulty, Instrument, NoteEvent, NoteFlag, NoteType, TempoEvent, Track

# Ticks per beat (quarter note)
RESOLUTION = 192

# Tick durations
QUARTER = RESOLUTION            # 192 ticks
EIGHTH = RESOLUTION // 2        # 96 ticks
SIXTEENTH = RESOLUTION // 4     # 48 ticks
BAR = RESOLUTION * 4            # 768 ticks

# Lanes under the default (Clone Hero) convention
KICK = int(NoteType.KICK)
SNARE = int(NoteType.RED)
HAT = int(NoteType.YELLOW)
TOM_HIGH = int(NoteType.BLUE)
TOM_LOW = int(NoteType.GREEN)

Pattern = list[tuple[int, ...]]  # (tick_in_bar, lane) or (tick_in_bar, lane, flags)

# Kick on 1 & 3, snare on 2 & 4
BACKBEAT: Pattern = [(0, KICK), (QUARTER, SNARE), (QUARTER * 2, KICK), (QUARTER * 3, SNARE)]

# Backbeat with 8th-note hi-hat on top (yellow needs the cymbal flag to be a hat)
HAT_GROOVE: Pattern = BACKBEAT + [(EIGHTH * i, HAT, NoteFlag.CYMBAL) for i in range(8)]

# 16 tom 16ths, high tom then floor tom
TOM_FILL: Pattern = [(SIXTEENTH * i, TOM_HIGH if i < 8 else TOM_LOW) for i in range(16)]

# Two 4-note tom bursts on beats 1 and 3
SPLIT_FILL: Pattern = [(SIXTEENTH * i, TOM_HIGH) for i in range(4)] + [
    (QUARTER * 2 + SIXTEENTH * i, TOM_LOW) for i in range(4)
]


def build_chart(
    bars: list[Pattern],
    bpm: float = 120.0,
    name: str = "synthetic",
    difficulty: Difficulty = Difficulty.expert,
    resolution: int = RESOLUTION,
) -> Chart:
    """Build a single-tempo 4/4 drum chart from per-bar patterns.

    Args:
        bars: One pattern per bar, ticks relative to the bar start
        bpm: Tempo for the whole chart
        name: Chart name
        difficulty: Difficulty of the drum track
        resolution: Ticks per quarter note (pattern ticks assume 192)

    Returns:
        Chart with one drum track, one note group per distinct tick
    """
    ms_per_tick = 60000.0 / bpm / resolution
    bar_ticks = resolution * 4

    groups: dict[int, list[NoteEvent]] = {}
    for bar_index, pattern in enumerate(bars):
        for tick_in_bar, lane, *flags in pattern:
            tick = bar_index * bar_ticks + tick_in_bar * resolution // RESOLUTION
            groups.setdefault(tick, []).append(
                NoteEvent(tick=tick, ms_time=tick * ms_per_tick, type=lane, flags=flags[0] if flags else 0)
            )

    track = Track(
        instrument=Instrument.drums,
        difficulty=difficulty,
        note_event_groups=[groups[t] for t in sorted(groups)],
    )
    return Chart(
        name=name,
        resolution=resolution,
        tempos=[TempoEvent(tick=0, beats_per_minute=bpm, ms_time=0.0)],
        tracks=[track],
    )


def synthetic_charts(bpm: float = 120.0) -> dict[str, Chart]:
    """The built-in charts, keyed by name."""
    layouts: dict[str, list[Pattern]] = {
        # Nothing but an unchanging backbeat
        "backbeat": [BACKBEAT] * 8,
        # Four bars of groove, then a bar of tom 16ths
        "tom_fill": [BACKBEAT] * 4 + [TOM_FILL],
        # Two fills five bars apart
        "two_fills": [BACKBEAT] * 4 + [TOM_FILL] + [BACKBEAT] * 5 + [TOM_FILL] + [BACKBEAT],
        # Two short bursts inside one bar
        "split_fill": [BACKBEAT] * 4 + [SPLIT_FILL] + [BACKBEAT],
        # Hi-hat groove into a fill and back
        "hat_groove_fill": [HAT_GROOVE] * 8 + [TOM_FILL] + [HAT_GROOVE] * 4,
    }
    return {name: build_chart(bars, bpm=bpm, name=name) for name, bars in layouts.items()}


def generate_charts(output_dir: Path, bpm: float = 120.0) -> list[Path]:
    """Write every built-in chart as ``<name>.json`` under ``output_dir``."""
    output_dir.mkdir(parents=True, exist_ok=True)

    created: list[Path] = []
    for name, chart in synthetic_charts(bpm).items():
        out_path = output_dir / f"{name}.json"
        with open(out_path, "w") as f:
            json.dump(chart.model_dump(mode="json"), f, indent=2)
        created.append(out_path)
        print(f"  Created {out_path.name} ({len(chart.tracks[0].note_event_groups)} note groups)")

    return created
