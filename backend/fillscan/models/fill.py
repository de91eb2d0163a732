from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from fillscan.models.chart import Chart, NoteEvent


class DrumVoice(StrEnum):
    KICK = "kick"
    SNARE = "snare"
    HAT = "hat"
    TOM = "tom"
    CYMBAL = "cymbal"
    UNKNOWN = "unknown"


class FeatureVector(BaseModel):
    note_density: float = 0.0  # notes per beat
    density_z: float = 0.0
    tom_ratio_jump: float = 1.0
    hat_dropout: float = 0.0
    kick_drop: float = 0.0
    ioi_std_z: float = 0.0
    ngram_novelty: float = 0.0
    same_pad_burst: bool = False
    crash_resolve: bool = False
    groove_dist: float = 0.0


class AnalysisWindow(BaseModel):
    start_tick: int
    end_tick: int
    start_ms: float
    end_ms: float
    notes: list[NoteEvent] = Field(default_factory=list)
    features: FeatureVector = Field(default_factory=FeatureVector)
    is_candidate: bool = False
    confidence: float = 0.0  # diagnostic only

    # Raw statistics the rolling baseline is built from
    tom_ratio: float = 0.0
    hat_ratio: float = 0.0
    kick_ratio: float = 0.0
    cymbal_ratio: float = 0.0
    ioi_std: float = 0.0  # ms


class FillSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    song_id: str = ""
    start_tick: int
    end_tick: int
    start_ms: float
    end_ms: float

    measure_start_tick: int
    measure_end_tick: int
    measure_start_ms: float
    measure_end_ms: float
    measure_number: int  # 1-based

    note_density: float = 0.0
    density_z: float = 0.0
    tom_ratio_jump: float = 1.0
    hat_dropout: float = 0.0
    kick_drop: float = 0.0
    ioi_std_z: float = 0.0
    ngram_novelty: float = 0.0
    same_pad_burst: bool = False
    crash_resolve: bool = False
    groove_dist: float = 0.0


class SongSummary(BaseModel):
    name: str
    duration_ms: float
    note_count: int


class ExtractionSummary(BaseModel):
    song: SongSummary
    fill_count: int
    total_fill_duration_s: float
    average_fill_duration_s: float
    fills_per_minute: float
    segments: list[FillSegment] = Field(default_factory=list)


class SegmentValidation(BaseModel):
    is_valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class FillRequest(BaseModel):
    chart: Chart
    config: dict[str, Any] | None = None  # partial FillConfig override
    song_id: str | None = None
