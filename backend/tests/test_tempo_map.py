"""Tests for tick/millisecond conversion and tempo validation."""

import pytest

from fillscan.errors import InvalidConfigError, InvalidTempoError
from fillscan.models.chart import TempoEvent
from fillscan.services.tempo_map import (
    bpm_at_tick,
    build_tempo_map,
    ms_to_duration_ticks,
    tempo_at_tick,
    tick_range_duration_ms,
    tick_range_to_ms,
    tick_to_ms,
    ticks_to_ms_duration,
    validate_tempos,
)

RES = 192


def tempo_change_map():
    """120 BPM, then 60 BPM from beat 2 onward."""
    return build_tempo_map(
        [TempoEvent(tick=384, beats_per_minute=60.0), TempoEvent(tick=0, beats_per_minute=120.0)],
        RES,
    )


class TestDurations:
    def test_one_beat_at_120(self):
        assert ticks_to_ms_duration(RES, 120.0, RES) == 500.0

    def test_inverse(self):
        assert ms_to_duration_ticks(500.0, 120.0, RES) == pytest.approx(RES)


class TestBuildTempoMap:
    def test_sorts_and_recomputes_times(self):
        tempos = tempo_change_map()
        assert [t.tick for t in tempos] == [0, 384]
        assert tempos[1].ms_time == pytest.approx(1000.0)

    def test_empty(self):
        assert build_tempo_map([], RES) == []

    def test_does_not_mutate_input(self):
        original = [TempoEvent(tick=0, beats_per_minute=120.0), TempoEvent(tick=192, beats_per_minute=60.0)]
        build_tempo_map(original, RES)
        assert original[1].ms_time == 0.0


class TestTickToMs:
    def test_within_first_tempo(self):
        assert tick_to_ms(192, tempo_change_map(), RES) == pytest.approx(500.0)

    def test_after_tempo_change(self):
        assert tick_to_ms(576, tempo_change_map(), RES) == pytest.approx(2000.0)

    def test_before_first_tempo_extrapolates_backward(self):
        tempos = [TempoEvent(tick=192, beats_per_minute=120.0, ms_time=1000.0)]
        assert tick_to_ms(0, tempos, RES) == pytest.approx(500.0)

    def test_never_negative(self):
        tempos = [TempoEvent(tick=384, beats_per_minute=120.0, ms_time=0.0)]
        assert tick_to_ms(0, tempos, RES) == 0.0

    def test_range(self):
        tempos = tempo_change_map()
        start_ms, end_ms = tick_range_to_ms(0, 576, tempos, RES)
        assert start_ms == 0.0
        assert end_ms == pytest.approx(2000.0)
        assert tick_range_duration_ms(384, 576, tempos, RES) == pytest.approx(1000.0)

    def test_tempo_lookup(self):
        tempos = tempo_change_map()
        assert bpm_at_tick(383, tempos) == 120.0
        assert bpm_at_tick(384, tempos) == 60.0
        assert tempo_at_tick(10_000, tempos).tick == 384

    def test_lookup_without_tempos_raises(self):
        with pytest.raises(InvalidTempoError):
            tempo_at_tick(0, [])


class TestValidateTempos:
    def test_accepts_mappings(self):
        tempos = validate_tempos([{"tick": 0, "beats_per_minute": 120}])
        assert tempos == [TempoEvent(tick=0, beats_per_minute=120.0)]

    @pytest.mark.parametrize(
        "tempos, message",
        [
            ("120bpm", "sequence"),
            (None, "sequence"),
            ([], "At least one"),
            ([{"tick": 0, "beats_per_minute": 0}], "BPM"),
            ([{"tick": 0, "beats_per_minute": -120}], "BPM"),
            ([{"tick": -1, "beats_per_minute": 120}], "tick"),
            ([{"tick": 0, "beats_per_minute": 120, "ms_time": -5}], "ms_time"),
            ([{"tick": 0, "beats_per_minute": 120}, {"tick": 0, "beats_per_minute": 90}], "Duplicate"),
            ([42], "tempo event 0"),
        ],
    )
    def test_rejects_malformed(self, tempos, message):
        with pytest.raises(InvalidTempoError, match=message):
            validate_tempos(tempos)

    def test_is_a_configuration_error(self):
        with pytest.raises(InvalidConfigError):
            validate_tempos([])
