"""Terminal table formatting and JSON report writer for extraction results."""

import json
import statistics
from pathlib import Path

from fillscan.models.fill import ExtractionSummary


def _fmt(val: float, decimals: int = 2) -> str:
    return f"{val:.{decimals}f}"


def _flag(val: bool) -> str:
    return "x" if val else ""


def print_segment_table(chart_name: str, summary: ExtractionSummary) -> None:
    """Print one chart's fills to terminal."""
    headers = ["#", "Measure", "Start s", "End s", "Dens Z", "Tom jmp", "Groove", "Burst", "Crash"]
    widths = [4, 9, 9, 9, 8, 9, 8, 7, 7]

    sep = "+" + "+".join("-" * w for w in widths) + "+"
    header_row = "|" + "|".join(h.center(w) for h, w in zip(headers, widths)) + "|"

    print(f"\n{'=' * 80}")
    print(f"  Chart: {chart_name}")
    print(
        f"  Notes: {summary.song.note_count}   Duration: {_fmt(summary.song.duration_ms / 1000, 1)} s   "
        f"Fills: {summary.fill_count} ({_fmt(summary.fills_per_minute)}/min)"
    )
    print(sep)
    print(header_row)
    print(sep)

    for i, seg in enumerate(summary.segments):
        row = (
            f"|{str(i + 1).center(widths[0])}"
            f"|{str(seg.measure_number).center(widths[1])}"
            f"|{_fmt(seg.start_ms / 1000).center(widths[2])}"
            f"|{_fmt(seg.end_ms / 1000).center(widths[3])}"
            f"|{_fmt(seg.density_z).center(widths[4])}"
            f"|{_fmt(seg.tom_ratio_jump).center(widths[5])}"
            f"|{_fmt(seg.groove_dist).center(widths[6])}"
            f"|{_flag(seg.same_pad_burst).center(widths[7])}"
            f"|{_flag(seg.crash_resolve).center(widths[8])}"
            f"|"
        )
        print(row)
    print(sep)


def print_aggregate_table(all_results: list[dict]) -> None:
    """Print fill counts per chart and their mean ± std."""
    if not all_results:
        return

    print(f"\n{'=' * 80}")
    print("  AGGREGATE (per chart)")

    headers = ["Chart", "Notes", "Fills", "Fill s", "Fills/min"]
    widths = [28, 8, 8, 9, 11]
    sep = "+" + "+".join("-" * w for w in widths) + "+"
    header_row = "|" + "|".join(h.center(w) for h, w in zip(headers, widths)) + "|"

    print(sep)
    print(header_row)
    print(sep)

    for r in all_results:
        row = (
            f"|{r['chart'][: widths[0]].center(widths[0])}"
            f"|{str(r['note_count']).center(widths[1])}"
            f"|{str(r['fill_count']).center(widths[2])}"
            f"|{_fmt(r['total_fill_duration_s']).center(widths[3])}"
            f"|{_fmt(r['fills_per_minute']).center(widths[4])}"
            f"|"
        )
        print(row)
    print(sep)

    counts = [r["fill_count"] for r in all_results]
    rates = [r["fills_per_minute"] for r in all_results]
    print(f"  Fills per chart: {statistics.mean(counts):.2f} ± {statistics.stdev(counts) if len(counts) > 1 else 0:.2f}")
    print(f"  Fills per minute: {statistics.mean(rates):.2f} ± {statistics.stdev(rates) if len(rates) > 1 else 0:.2f}")
    print()


def result_row(chart_name: str, summary: ExtractionSummary) -> dict:
    """Flatten a summary into a JSON-friendly dict."""
    return {
        "chart": chart_name,
        "note_count": summary.song.note_count,
        "duration_ms": summary.song.duration_ms,
        "fill_count": summary.fill_count,
        "total_fill_duration_s": summary.total_fill_duration_s,
        "average_fill_duration_s": summary.average_fill_duration_s,
        "fills_per_minute": summary.fills_per_minute,
        "segments": [seg.model_dump(mode="json") for seg in summary.segments],
    }


def write_json_report(output_path: Path, all_results: list[dict]) -> None:
    """Write results to JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(all_results, f, indent=2)
    print(f"Results written to {output_path}")
