"""Drum lane to voice classification.

Charts describe drum hits as a lane code plus flag bits. Analysis works on
musical voices (kick, snare, hi-hat, tom, cymbal), so every note goes
through a lane mapper: any callable ``(note_type, flags) -> DrumVoice``.
Two lane conventions ship here. Callers pick one by passing a mapper
around; nothing in the engine reads a global table.
"""

from collections.abc import Callable, Iterable, Mapping

from fillscan.models.chart import NoteEvent, NoteFlag, NoteType
from fillscan.models.fill import DrumVoice

LaneMapper = Callable[[int, int], DrumVoice]

# Clone Hero 5-lane convention
CLONE_HERO_LANES: dict[int, DrumVoice] = {
    NoteType.KICK: DrumVoice.KICK,
    NoteType.RED: DrumVoice.SNARE,
    NoteType.YELLOW: DrumVoice.HAT,  # hi-hat / ride
    NoteType.BLUE: DrumVoice.TOM,
    NoteType.ORANGE: DrumVoice.CYMBAL,  # crash
    NoteType.GREEN: DrumVoice.TOM,  # floor tom
}

# Rock Band 4 convention: yellow/blue are toms, green is the hi-hat
ROCK_BAND_4_LANES: dict[int, DrumVoice] = {
    NoteType.KICK: DrumVoice.KICK,
    NoteType.RED: DrumVoice.SNARE,
    NoteType.YELLOW: DrumVoice.TOM,
    NoteType.BLUE: DrumVoice.TOM,
    NoteType.ORANGE: DrumVoice.CYMBAL,
    NoteType.GREEN: DrumVoice.HAT,
}

ALL_VOICES = list(DrumVoice)


class TableLaneMapper:
    """Maps lanes by table lookup only, ignoring flags."""

    def __init__(self, table: Mapping[int, DrumVoice]):
        self.table = dict(table)

    def __call__(self, note_type: int, flags: int = 0) -> DrumVoice:
        return self.table.get(int(note_type), DrumVoice.UNKNOWN)


class FlagAwareLaneMapper(TableLaneMapper):
    """Pro-drums mapping: explicit tom/cymbal flags win over the lane table.

    Kick and red are fixed. A tom flag always means TOM. A cymbal flag turns
    yellow into HAT and blue/green into CYMBAL. Yellow without the cymbal
    flag is a tom. Blue/green without either flag fall back to the table.
    """

    def __call__(self, note_type: int, flags: int = 0) -> DrumVoice:
        if note_type == NoteType.KICK:
            return DrumVoice.KICK
        if note_type == NoteType.RED:
            return DrumVoice.SNARE

        if note_type in (NoteType.YELLOW, NoteType.BLUE, NoteType.GREEN):
            if flags & NoteFlag.TOM:
                return DrumVoice.TOM
            if flags & NoteFlag.CYMBAL:
                return DrumVoice.HAT if note_type == NoteType.YELLOW else DrumVoice.CYMBAL
            if note_type == NoteType.YELLOW:
                return DrumVoice.TOM

        return super().__call__(note_type, flags)


DEFAULT_LANE_MAPPER = FlagAwareLaneMapper(CLONE_HERO_LANES)


def map_to_voice(note_type: int, flags: int = 0, mapper: LaneMapper | None = None) -> DrumVoice:
    return (mapper or DEFAULT_LANE_MAPPER)(note_type, flags)


def note_voice(note: NoteEvent, mapper: LaneMapper | None = None) -> DrumVoice:
    return map_to_voice(note.type, note.flags, mapper)


def group_notes_by_voice(
    notes: Iterable[NoteEvent], mapper: LaneMapper | None = None
) -> dict[DrumVoice, list[NoteEvent]]:
    groups: dict[DrumVoice, list[NoteEvent]] = {voice: [] for voice in ALL_VOICES}
    for note in notes:
        groups[note_voice(note, mapper)].append(note)
    return groups


def count_notes_by_voice(notes: Iterable[NoteEvent], mapper: LaneMapper | None = None) -> dict[DrumVoice, int]:
    counts = dict.fromkeys(ALL_VOICES, 0)
    for note in notes:
        counts[note_voice(note, mapper)] += 1
    return counts


def total_notes_in_voices(
    notes: Iterable[NoteEvent], voices: Iterable[DrumVoice], mapper: LaneMapper | None = None
) -> int:
    counts = count_notes_by_voice(notes, mapper)
    return sum(counts[v] for v in voices)


def is_tom(note_type: int, flags: int = 0, mapper: LaneMapper | None = None) -> bool:
    return map_to_voice(note_type, flags, mapper) == DrumVoice.TOM


def is_hat(note_type: int, flags: int = 0, mapper: LaneMapper | None = None) -> bool:
    return map_to_voice(note_type, flags, mapper) == DrumVoice.HAT


def is_kick(note_type: int, flags: int = 0, mapper: LaneMapper | None = None) -> bool:
    return map_to_voice(note_type, flags, mapper) == DrumVoice.KICK


def is_cymbal(note_type: int, flags: int = 0, mapper: LaneMapper | None = None) -> bool:
    return map_to_voice(note_type, flags, mapper) == DrumVoice.CYMBAL
