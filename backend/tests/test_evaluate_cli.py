"""Tests for the eval command line."""

import json

import pytest

from eval.evaluate import main


@pytest.fixture
def chart_dir(tmp_path):
    out = tmp_path / "charts"
    main(["generate-charts", "--output-dir", str(out)])
    return out


def test_generate_charts(capsys, chart_dir):
    names = sorted(p.stem for p in chart_dir.glob("*.json"))
    assert names == ["backbeat", "hat_groove_fill", "split_fill", "tom_fill", "two_fills"]
    chart = json.loads((chart_dir / "tom_fill.json").read_text())
    assert chart["resolution"] == 192
    assert chart["tracks"][0]["instrument"] == "drums"
    assert "Created 5 chart files" in capsys.readouterr().out


class TestExtract:
    def test_prints_fills(self, chart_dir, capsys):
        main(["extract", str(chart_dir / "two_fills.json")])
        out = capsys.readouterr().out
        assert "Chart: two_fills" in out
        assert "Fills: 2" in out

    def test_json_output(self, chart_dir, tmp_path):
        output = tmp_path / "out" / "result.json"
        main(["extract", str(chart_dir / "tom_fill.json"), "--output-json", str(output)])
        rows = json.loads(output.read_text())
        assert len(rows) == 1
        assert rows[0]["chart"] == "tom_fill"
        assert rows[0]["fill_count"] == 1
        assert rows[0]["segments"][0]["measure_number"] == 5

    def test_missing_file(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["extract", str(tmp_path / "nope.json")])
        assert exc.value.code == 1
        assert "Error" in capsys.readouterr().err

    def test_wrong_difficulty(self, chart_dir, capsys):
        with pytest.raises(SystemExit):
            main(["extract", str(chart_dir / "tom_fill.json"), "--difficulty", "hard"])
        assert "No drum track found" in capsys.readouterr().err


class TestBatch:
    def test_aggregate(self, chart_dir, tmp_path, capsys):
        output = tmp_path / "batch.json"
        main(["batch", str(chart_dir), "--output-json", str(output)])
        out = capsys.readouterr().out
        assert "Extracting fills from 5 charts" in out
        assert "AGGREGATE" in out
        # Per-chart tables only with --verbose
        assert "Chart: tom_fill" not in out

        rows = {r["chart"]: r for r in json.loads(output.read_text())}
        assert rows["backbeat"]["fill_count"] == 0
        assert rows["two_fills"]["fill_count"] == 2

    def test_verbose(self, chart_dir, capsys):
        main(["batch", str(chart_dir), "--verbose"])
        assert "Chart: tom_fill" in capsys.readouterr().out

    def test_bad_chart_is_skipped(self, chart_dir, capsys):
        (chart_dir / "broken.json").write_text("{not json")
        main(["batch", str(chart_dir)])
        out = capsys.readouterr().out
        assert "Warning: broken.json failed" in out
        assert "Extracting fills from 6 charts" in out

    def test_empty_directory(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            main(["batch", str(tmp_path)])
        assert exc.value.code == 1
