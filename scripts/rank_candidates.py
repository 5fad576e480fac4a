#!/usr/bin/env python3
"""
Rank candidate records with an objective formula.

Reads a JSON list of records, each a mapping of feature name to a number,
boolean or string. Every key found in the records becomes a feature usable in
the formula; a record missing a key gets NaN for it and is excluded.

Usage:
    python scripts/rank_candidates.py --input candidates.json --formula "2*FM + LA - CG"
    python scripts/rank_candidates.py --input candidates.json --formula "FT - PT" --normalize --tie-break ROLL --tie-break PITCH
    python scripts/rank_candidates.py --input candidates.json --formula "score" --json

Exit status: 0 on success, 2 on a formula compile error, 1 on an evaluation error.
"""
import sys
import json
import argparse
import logging
import math
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from formula import CompileError, EvaluationError
from ranker import rank

logger = logging.getLogger("rank_candidates")


def load_records(path: str) -> list:
    with open(path) as f:
        records = json.load(f)
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise ValueError(f"{path}: expected a JSON list of objects")
    return records


def feature_names(records: list) -> list:
    names = []
    for record in records:
        for key in record:
            if key not in names:
                names.append(key)
    return names


def make_extractor(name: str):
    def extract(record: dict):
        value = record.get(name)
        return math.nan if value is None else value
    return extract


def record_label(record: dict, index: int) -> str:
    for key in ("id", "name"):
        if key in record:
            return str(record[key])
    return f"#{index}"


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Rank candidate records with an objective formula.",
    )
    parser.add_argument(
        "--input", required=True,
        help="JSON file holding a list of candidate records",
    )
    parser.add_argument(
        "--formula", required=True,
        help="Objective formula over the record keys, higher is better",
    )
    parser.add_argument(
        "--normalize", action="store_true",
        help="Min-max normalize numeric features over the batch before scoring",
    )
    parser.add_argument(
        "--tie-break", action="append", default=[], metavar="FEATURE",
        help="Numeric feature used to break score ties (repeatable, applied in order)",
    )
    parser.add_argument(
        "--json", action="store_true",
        help="Print the ranking as JSON instead of a table",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true",
        help="DEBUG logging",
    )

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        records = load_records(args.input)
    except (OSError, ValueError) as e:
        parser.error(str(e))

    names = feature_names(records)
    features = {name: make_extractor(name) for name in names}
    unknown = [name for name in args.tie_break if name not in features]
    if unknown:
        parser.error(f"Unknown tie-break feature(s): {', '.join(unknown)}")
    tie_breakers = [features[name] for name in args.tie_break]

    try:
        result = rank(records, features, args.formula, tie_breakers, normalize=args.normalize)
    except CompileError as e:
        print(f"Formula error: {e}", file=sys.stderr)
        return 2
    except EvaluationError as e:
        print(f"Evaluation error: {e}", file=sys.stderr)
        return 1

    positions = {id(r): i for i, r in enumerate(records)}
    if args.json:
        payload = {
            "formula": args.formula,
            "normalized": args.normalize,
            "ranking": [
                {
                    "rank": rank_index,
                    "index": positions[id(entry.candidate)],
                    "score": entry.score,
                    "record": entry.candidate,
                }
                for rank_index, entry in enumerate(result)
            ],
            "excluded": [positions[id(r)] for r in result.excluded],
        }
        print(json.dumps(payload, indent=2))
        return 0

    print(f"{'Rank':>4}  {'Score':>12}  Candidate")
    for rank_index, entry in enumerate(result):
        label = record_label(entry.candidate, positions[id(entry.candidate)])
        print(f"{rank_index:>4}  {entry.score:>12.6g}  {label}")
    if result.excluded:
        labels = [record_label(r, positions[id(r)]) for r in result.excluded]
        print(f"Excluded (non-finite features): {', '.join(labels)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
