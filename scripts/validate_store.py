#!/usr/bin/env python
"""Check a notes store for orphaned and duplicate connections.

Problems are reported, never repaired. A store that does not exist is an
error; it is never created.

Usage:
    python scripts/validate_store.py                       # store from TANGLE_* config
    python scripts/validate_store.py --backend json --path data/notes.json
    python scripts/validate_store.py --backend sql --path data/db/tangle.db --json
"""

import argparse
import json
import sys
from pathlib import Path

from tangle_notes.config import config
from tangle_notes.exceptions import TangleError
from tangle_notes.services.note_store import NoteStore
from tangle_notes.storage.json_backend import JsonFileBackend
from tangle_notes.storage.sql_backend import SqlBackend


def configured_path(backend: str) -> Path:
    if backend == "json":
        return config.get_absolute_path(config.json_path)
    return config.get_absolute_path(config.database_path)


def open_store(backend: str, path: Path) -> NoteStore:
    if backend == "json":
        return NoteStore(JsonFileBackend(path)).open()
    return NoteStore(SqlBackend(f"sqlite:///{path.resolve()}")).open()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Validate a Tangle notes store")
    parser.add_argument("--backend", choices=["json", "sql"], default=config.backend)
    parser.add_argument("--path", default=None, help="JSON document or SQLite file")
    parser.add_argument("--json", action="store_true", help="Print a JSON report")
    args = parser.parse_args(argv)

    # Opening a missing store would create an empty one
    path = Path(args.path) if args.path else configured_path(args.backend)
    if not path.exists():
        print(f"Could not open store: {path} does not exist", file=sys.stderr)
        return 2

    try:
        store = open_store(args.backend, path)
    except TangleError as e:
        print(f"Could not open store: {e}", file=sys.stderr)
        return 2

    with store:
        report = store.validate()
        stats = store.get_stats()

    if args.json:
        print(json.dumps({"stats": stats, "report": report.to_dict()}, indent=2))
    else:
        print(f"Store: {stats['backend']}")
        print(f"Notes: {stats['totalNotes']} ({stats['mainNotes']} main, "
              f"{stats['regularNotes']} regular)")
        print(f"Connections: {stats['totalConnections']}")
        if report.is_valid:
            print("No issues found")
        else:
            print(f"{len(report.issues)} issue(s):")
            for issue in report.issues:
                print(f"  [{issue.type}] {issue.message}")

    return 0 if report.is_valid else 1


if __name__ == "__main__":
    sys.exit(main())
