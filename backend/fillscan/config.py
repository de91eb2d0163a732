from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings

from fillscan.errors import InvalidConfigError
from fillscan.models.chart import Difficulty


class Settings(BaseSettings):
    log_level: str = "INFO"
    default_difficulty: Difficulty = Difficulty.expert
    pattern_cache_size: int = 1000
    api_title: str = "Fillscan API"

    model_config = {
        "env_prefix": "FILLSCAN_",
        "env_file": "../.env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()


class Thresholds(BaseModel):
    model_config = ConfigDict(extra="forbid")

    density_z: float = 1.2
    dist: float = 2.0  # Mahalanobis groove distance
    tom_jump: float = 1.5
    min_beats: float = Field(default=0.75, gt=0)
    max_beats: float = 4.0
    merge_gap_beats: float = Field(default=0.25, ge=0)
    burst_ms: float = Field(default=120.0, gt=0)

    @model_validator(mode="after")
    def _check_duration_range(self) -> "Thresholds":
        if self.max_beats <= self.min_beats:
            raise ValueError("max_beats must be greater than min_beats")
        return self


class FillConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    difficulty: Difficulty = Difficulty.expert
    quant_div: int = Field(default=4, gt=0)  # smaller -> finer grid
    window_beats: float = Field(default=1.0, gt=0)
    stride_beats: float = Field(default=0.25, gt=0)
    lookback_bars: int = Field(default=8, gt=0)
    thresholds: Thresholds = Field(default_factory=Thresholds)


def _describe(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"])
        msg = err["msg"].removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def validate_config(overrides: FillConfig | Mapping[str, Any] | None = None) -> FillConfig:
    """Merge a partial override over the defaults and validate the result.

    The merge is shallow except for ``thresholds``, whose keys are merged
    one level deep. Keys whose value is None are treated as absent.

    Raises:
        InvalidConfigError: the merged configuration is not usable.
    """
    if overrides is None:
        overrides = {}
    elif isinstance(overrides, FillConfig):
        overrides = overrides.model_dump()
    elif not isinstance(overrides, Mapping):
        raise InvalidConfigError("configuration must be a mapping")

    defaults = FillConfig(difficulty=settings.default_difficulty).model_dump()
    merged = {**defaults, **{k: v for k, v in overrides.items() if k != "thresholds" and v is not None}}

    thresholds = overrides.get("thresholds")
    if thresholds is not None:
        if isinstance(thresholds, Thresholds):
            thresholds = thresholds.model_dump()
        if not isinstance(thresholds, Mapping):
            raise InvalidConfigError("thresholds must be a mapping")
        merged["thresholds"] = {
            **defaults["thresholds"],
            **{k: v for k, v in thresholds.items() if v is not None},
        }

    try:
        return FillConfig.model_validate(merged)
    except ValidationError as e:
        raise InvalidConfigError(_describe(e)) from e
