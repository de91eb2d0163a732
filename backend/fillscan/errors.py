"""Errors raised by the fill extractor.

All of them are terminal input problems: the extractor never retries and
never guesses a replacement value.
"""


class FillDetectionError(Exception):
    """Base class for every error the extractor raises."""


class InvalidConfigError(FillDetectionError):
    def __init__(self, message: str):
        super().__init__(f"Invalid configuration: {message}")
        self.reason = message


class InvalidTempoError(InvalidConfigError):
    """Tempo events that cannot describe a timeline (empty, duplicate ticks, bad BPM)."""


class InvalidChartError(FillDetectionError):
    def __init__(self, message: str):
        super().__init__(f"Invalid chart: {message}")
        self.reason = message


class DrumTrackNotFoundError(FillDetectionError):
    def __init__(self, difficulty: str):
        super().__init__(f"No drum track found for difficulty: {difficulty}")
        self.difficulty = difficulty
