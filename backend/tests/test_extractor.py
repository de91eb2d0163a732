"""End-to-end tests for fill extraction on the built-in charts."""

import logging

import pytest

from eval.patterns import BACKBEAT, TOM_FILL, build_chart
from fillscan.errors import (
    DrumTrackNotFoundError,
    FillDetectionError,
    InvalidChartError,
    InvalidConfigError,
    InvalidTempoError,
)
from fillscan.models.chart import Chart, Difficulty, Instrument, TempoEvent, Track
from fillscan.models.fill import FillSegment
from fillscan.services.extractor import (
    create_extraction_summary,
    extract_fills,
    validate_chart,
    validate_fill_segments,
)
from fillscan.services.novelty import PatternCache

RES = 192


def spans(segments):
    return [(s.start_tick, s.end_tick) for s in segments]


class TestScenarios:
    def test_single_tom_fill(self, tom_fill_chart):
        segments = extract_fills(tom_fill_chart)
        assert spans(segments) == [(3072, 3840)]
        seg = segments[0]
        assert seg.measure_number == 5
        assert seg.measure_start_tick == 3072
        assert seg.start_ms == pytest.approx(8000.0)
        assert seg.end_ms == pytest.approx(10000.0)
        assert seg.song_id == "tom_fill"
        assert seg.density_z > 1.2
        assert seg.tom_ratio_jump > 1.5

    def test_steady_groove_has_no_fills(self, backbeat_chart):
        assert extract_fills(backbeat_chart) == []

    def test_two_fills(self, two_fills_chart):
        segments = extract_fills(two_fills_chart)
        assert spans(segments) == [(3072, 3840), (7680, 8448)]
        assert [s.measure_number for s in segments] == [5, 11]

    def test_split_bursts_collapse_into_one_fill(self, split_fill_chart):
        segments = extract_fills(split_fill_chart)
        assert len(segments) == 1
        assert segments[0].measure_number == 5
        assert segments[0].start_tick == 3072

    def test_fill_inside_hat_groove(self, hat_groove_fill_chart):
        segments = extract_fills(hat_groove_fill_chart)
        assert spans(segments) == [(6144, 6912)]
        seg = segments[0]
        assert seg.measure_number == 9
        assert seg.start_ms == pytest.approx(16000.0)
        assert seg.density_z > 1.2
        assert seg.tom_ratio_jump > 1.5


class TestProperties:
    def test_deterministic(self, two_fills_chart):
        assert extract_fills(two_fills_chart) == extract_fills(two_fills_chart)

    def test_sorted_and_disjoint(self, charts):
        for chart in charts.values():
            segments = extract_fills(chart)
            assert segments == sorted(segments, key=lambda s: s.start_tick)
            for prev, cur in zip(segments, segments[1:]):
                assert prev.end_tick <= cur.start_tick

    def test_ranges_valid(self, charts):
        for chart in charts.values():
            for seg in extract_fills(chart):
                assert seg.start_tick < seg.end_tick
                assert seg.start_ms < seg.end_ms
                assert seg.measure_start_tick <= seg.start_tick < seg.measure_end_tick
                # Beat snapping can add at most a beat to the allowed range
                assert (seg.end_tick - seg.start_tick) / RES <= 4.0 + 1

    def test_stricter_thresholds_find_no_more(self, charts):
        strict = {"thresholds": {"density_z": 5, "dist": 5, "tom_jump": 3}}
        lenient = {"thresholds": {"density_z": 0.1, "dist": 0.1, "tom_jump": 1.01}}
        for chart in (charts["tom_fill"], charts["two_fills"], charts["hat_groove_fill"]):
            assert len(extract_fills(chart, config=lenient)) >= len(extract_fills(chart, config=strict))

    def test_mapping_input(self, tom_fill_chart):
        as_dict = tom_fill_chart.model_dump(mode="json")
        assert extract_fills(as_dict) == extract_fills(tom_fill_chart)

    def test_song_id(self, tom_fill_chart):
        assert extract_fills(tom_fill_chart, song_id="abc")[0].song_id == "abc"
        unnamed = tom_fill_chart.model_copy(update={"name": None})
        assert extract_fills(unnamed)[0].song_id == "Unknown"

    def test_shared_cache_is_filled(self, tom_fill_chart):
        cache = PatternCache(max_size=1000)
        extract_fills(tom_fill_chart, pattern_cache=cache)
        assert len(cache) > 0

    def test_logs_result(self, tom_fill_chart, caplog):
        with caplog.at_level(logging.INFO, logger="fillscan.services.extractor"):
            extract_fills(tom_fill_chart)
        assert "Found 1 fills in tom_fill" in caplog.text


class TestTrackSelection:
    def test_empty_track(self):
        chart = Chart(
            name="empty",
            resolution=RES,
            tempos=[TempoEvent(tick=0, beats_per_minute=120.0)],
            tracks=[Track(instrument=Instrument.drums, difficulty=Difficulty.expert)],
        )
        assert extract_fills(chart) == []

    def test_difficulty_selects_track(self):
        chart = build_chart([BACKBEAT] * 4 + [TOM_FILL], name="hard", difficulty=Difficulty.hard)
        with pytest.raises(DrumTrackNotFoundError, match="expert"):
            extract_fills(chart)
        assert len(extract_fills(chart, config={"difficulty": "hard"})) == 1

    def test_explicit_track_must_match(self, tom_fill_chart):
        track = tom_fill_chart.tracks[0]
        assert len(extract_fills(tom_fill_chart, track)) == 1
        with pytest.raises(DrumTrackNotFoundError):
            extract_fills(tom_fill_chart, track, config={"difficulty": "hard"})

        guitar = track.model_copy(update={"instrument": Instrument.guitar})
        with pytest.raises(DrumTrackNotFoundError):
            extract_fills(tom_fill_chart, guitar)


class TestErrors:
    def test_missing_chart(self):
        with pytest.raises(InvalidChartError, match="required"):
            extract_fills(None)

    def test_config_checked_first(self):
        with pytest.raises(InvalidConfigError):
            extract_fills(None, config={"quant_div": 0})

    def test_bad_resolution(self, tom_fill_chart):
        with pytest.raises(InvalidChartError, match="resolution"):
            extract_fills(tom_fill_chart.model_copy(update={"resolution": 0}))

    def test_no_tracks(self):
        chart = Chart(resolution=RES, tempos=[TempoEvent(tick=0, beats_per_minute=120.0)])
        with pytest.raises(InvalidChartError, match="track"):
            extract_fills(chart)

    def test_malformed_mapping(self):
        with pytest.raises(InvalidChartError, match="resolution"):
            extract_fills({"resolution": "many", "tempos": []})

    def test_not_a_chart(self):
        with pytest.raises(InvalidChartError):
            validate_chart(42)

    def test_missing_tempos(self, tom_fill_chart):
        with pytest.raises(InvalidTempoError):
            extract_fills(tom_fill_chart.model_copy(update={"tempos": []}))

    def test_all_errors_share_a_base(self, tom_fill_chart):
        for bad in (None, tom_fill_chart.model_copy(update={"tempos": []})):
            with pytest.raises(FillDetectionError):
                extract_fills(bad)


class TestSummary:
    def test_summary(self, tom_fill_chart):
        segments = extract_fills(tom_fill_chart)
        summary = create_extraction_summary(tom_fill_chart, segments)
        assert summary.song.name == "tom_fill"
        assert summary.song.note_count == 32
        assert summary.song.duration_ms == pytest.approx(9875.0)
        assert summary.fill_count == 1
        assert summary.total_fill_duration_s == pytest.approx(2.0)
        assert summary.average_fill_duration_s == pytest.approx(2.0)
        assert summary.fills_per_minute == pytest.approx(60000 / 9875.0)
        assert summary.segments == segments

    def test_summary_without_fills(self, backbeat_chart):
        summary = create_extraction_summary(backbeat_chart, [])
        assert summary.fill_count == 0
        assert summary.average_fill_duration_s == 0.0


def make_segment(start, end, start_ms=None, end_ms=None, **scores):
    return FillSegment(
        song_id="song",
        start_tick=start,
        end_tick=end,
        start_ms=start * 2.5 if start_ms is None else start_ms,
        end_ms=end * 2.5 if end_ms is None else end_ms,
        measure_start_tick=0,
        measure_end_tick=768,
        measure_start_ms=0.0,
        measure_end_ms=2000.0,
        measure_number=1,
        **scores,
    )


class TestValidateSegments:
    def test_extracted_segments_are_valid(self, two_fills_chart):
        result = validate_fill_segments(extract_fills(two_fills_chart))
        assert result.is_valid
        assert result.errors == []

    def test_errors(self):
        result = validate_fill_segments(
            [
                make_segment(100, 50),
                make_segment(-10, 20, start_ms=-1.0, end_ms=50.0),
                make_segment(0, 192, groove_dist=float("nan")),
            ]
        )
        assert not result.is_valid
        assert "Fill 0: start_tick >= end_tick" in result.errors
        assert "Fill 0: start_ms >= end_ms" in result.errors
        assert "Fill 1: negative start position" in result.errors
        assert "Fill 2: invalid feature values" in result.errors
        assert "Fill 2: overlaps with previous fill" in result.errors

    def test_warnings(self):
        result = validate_fill_segments(
            [make_segment(0, 10, start_ms=0.0, end_ms=50.0), make_segment(192, 6000, start_ms=500.0, end_ms=15000.0)]
        )
        assert result.is_valid
        assert result.warnings == ["Fill 0: very short duration (50ms)", "Fill 1: very long duration (14.5s)"]
