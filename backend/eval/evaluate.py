"""CLI entry point for running the fill extractor on chart files.

Subcommands:
  generate-charts  Write the built-in synthetic charts as JSON
  extract          Detect fills in one chart and print them
  batch            Run every *.json chart in a directory, print aggregates

Usage (from backend/ directory):
  uv run python -m eval.evaluate generate-charts --output-dir ./eval/charts
  uv run python -m eval.evaluate extract ./eval/charts/tom_fill.json --difficulty expert
  uv run python -m eval.evaluate batch ./eval/charts --output-json ./eval/results.json
"""

import argparse
import json
import sys
from pathlib import Path


def _load_chart(path: Path) -> dict:
    with open(path) as f:
        return json.load(f)


def _cmd_generate_charts(args: argparse.Namespace) -> None:
    from eval.patterns import generate_charts

    output_dir = Path(args.output_dir)
    print(f"Generating synthetic charts → {output_dir}")
    created = generate_charts(output_dir, bpm=args.bpm)
    print(f"Done. Created {len(created)} chart files.")


def _cmd_extract(args: argparse.Namespace) -> None:
    from eval.report import print_segment_table, result_row, write_json_report
    from fillscan.errors import FillDetectionError
    from fillscan.services.extractor import create_extraction_summary, extract_fills

    chart_path = Path(args.chart)
    output_json = Path(args.output_json) if args.output_json else None
    config = {"difficulty": args.difficulty}

    try:
        chart = _load_chart(chart_path)
        segments = extract_fills(chart, config=config, song_id=chart_path.stem)
        summary = create_extraction_summary(chart, segments, config)
    except (OSError, json.JSONDecodeError, FillDetectionError) as e:
        print(f"Error: {chart_path}: {e}", file=sys.stderr)
        sys.exit(1)

    print_segment_table(chart_path.stem, summary)

    if output_json:
        write_json_report(output_json, [result_row(chart_path.stem, summary)])


def _cmd_batch(args: argparse.Namespace) -> None:
    from eval.report import print_aggregate_table, print_segment_table, result_row, write_json_report
    from fillscan.errors import FillDetectionError
    from fillscan.services.extractor import create_extraction_summary, extract_fills

    chart_dir = Path(args.chart_dir)
    output_json = Path(args.output_json) if args.output_json else None
    config = {"difficulty": args.difficulty}

    chart_paths = sorted(chart_dir.glob("*.json"))
    if not chart_paths:
        print(f"Error: no .json charts found in {chart_dir}", file=sys.stderr)
        sys.exit(1)

    print(f"Extracting fills from {len(chart_paths)} charts in {chart_dir}\n")

    all_results: list[dict] = []
    for chart_path in chart_paths:
        try:
            chart = _load_chart(chart_path)
            segments = extract_fills(chart, config=config, song_id=chart_path.stem)
            summary = create_extraction_summary(chart, segments, config)
        except (OSError, json.JSONDecodeError, FillDetectionError) as e:
            print(f"  Warning: {chart_path.name} failed: {e}")
            continue

        if args.verbose:
            print_segment_table(chart_path.stem, summary)
        all_results.append(result_row(chart_path.stem, summary))

    print_aggregate_table(all_results)

    if output_json:
        write_json_report(output_json, all_results)


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Fillscan drum-fill extraction",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # --- generate-charts ---
    p_charts = subparsers.add_parser(
        "generate-charts",
        help="Write the built-in synthetic charts",
    )
    p_charts.add_argument("--output-dir", required=True, help="Directory to write .json charts")
    p_charts.add_argument("--bpm", type=float, default=120.0, help="Tempo (default: 120)")

    # --- extract ---
    p_extract = subparsers.add_parser(
        "extract",
        help="Detect fills in one chart",
    )
    p_extract.add_argument("chart", help="Chart JSON file")
    p_extract.add_argument("--difficulty", default="expert", help="Drum difficulty (default: expert)")
    p_extract.add_argument("--output-json", default=None, help="Write results to this JSON file")

    # --- batch ---
    p_batch = subparsers.add_parser(
        "batch",
        help="Detect fills in every chart of a directory",
    )
    p_batch.add_argument("chart_dir", help="Directory containing chart .json files")
    p_batch.add_argument("--difficulty", default="expert", help="Drum difficulty (default: expert)")
    p_batch.add_argument("--output-json", default=None, help="Write results to this JSON file")
    p_batch.add_argument("--verbose", action="store_true", help="Print every chart's fill table")

    args = parser.parse_args(argv)

    if args.command == "generate-charts":
        _cmd_generate_charts(args)
    elif args.command == "extract":
        _cmd_extract(args)
    elif args.command == "batch":
        _cmd_batch(args)


if __name__ == "__main__":
    main()
