#!/usr/bin/env python3
"""
Compile every club script under a directory for each club it mentions.

Looks for *.club files (default: repository root), collects the ids used in
CLUBS lines and runs the full pipeline once per id. Prints one line per
file/club and exits with 1 when anything failed.
"""
import argparse
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import clubc


def club_ids(program) -> List[int]:
    ids = set()
    for cmd in program:
        if cmd.op == "CLUBS":
            ids.update(clubc.parse_count(f, cmd.line_no) for f in cmd.fields[1:])
        ids.update(club_ids(cmd.children))
    return sorted(ids)

def check_file(path: Path, labels) -> List[Tuple[str, bool]]:
    try:
        program = clubc.parse_text(path.read_text())
        ids = club_ids(program) or [1]
    except clubc.ClubScriptError as e:
        return [(f"{path}: {e}", False)]
    report = []
    for club in ids:
        try:
            total = clubc.total_duration(clubc.compile_program(program, club, labels))
            report.append((f"{path} club {club}: OK {total}", True))
        except clubc.ClubScriptError as e:
            report.append((f"{path} club {club}: {e}", False))
    return report

def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description=__doc__)
    ap.add_argument("root", nargs="?", default=str(ROOT))
    ap.add_argument("--labels", help="Audacity project (.aup) with the label track")
    args = ap.parse_args(argv)
    labels = clubc.read_labels(args.labels) if args.labels else {}
    failed = False
    for fp in sorted(Path(args.root).rglob("*.club")):
        for line, ok in check_file(fp, labels):
            print(line)
            failed = failed or not ok
    return 1 if failed else 0

if __name__ == "__main__":
    sys.exit(main())
