from enum import IntEnum, IntFlag, StrEnum

from pydantic import BaseModel, ConfigDict, Field


class NoteType(IntEnum):
    KICK = 0
    RED = 1
    YELLOW = 2
    BLUE = 3
    ORANGE = 4
    GREEN = 5


class NoteFlag(IntFlag):
    NONE = 0
    TOM = 1
    CYMBAL = 2
    ACCENT = 4
    GHOST = 8
    FLAM = 16
    DOUBLE_KICK = 32


class Instrument(StrEnum):
    drums = "drums"
    guitar = "guitar"
    bass = "bass"
    rhythm = "rhythm"
    keys = "keys"


class Difficulty(StrEnum):
    expert = "expert"
    hard = "hard"
    medium = "medium"
    easy = "easy"


class NoteEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    tick: int
    ms_time: float  # milliseconds from song start
    length: int = 0  # ticks
    ms_length: float = 0.0
    type: int  # lane code, see NoteType
    flags: int = 0  # NoteFlag bits


class TempoEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    tick: int
    beats_per_minute: float
    ms_time: float = 0.0


class TimeSignature(BaseModel):
    model_config = ConfigDict(frozen=True)

    tick: int
    numerator: int = 4
    denominator: int = 4


class Track(BaseModel):
    instrument: Instrument
    difficulty: Difficulty
    note_event_groups: list[list[NoteEvent]] = Field(default_factory=list)


class Chart(BaseModel):
    name: str | None = None
    resolution: int  # ticks per quarter note
    tempos: list[TempoEvent] = Field(default_factory=list)
    time_signatures: list[TimeSignature] = Field(default_factory=list)
    tracks: list[Track] | None = None
