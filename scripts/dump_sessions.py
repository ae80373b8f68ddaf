import argparse
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import orjson


def _decode_record(path: Path) -> Any:
    """Decode a session record file into Python data."""
    raw = path.read_bytes()
    try:
        return orjson.loads(raw)
    except orjson.JSONDecodeError:
        return raw.decode("utf-8", errors="replace")


def _dump_all(storage_dir: Path) -> list[dict[str, Any]]:
    """Return every record in the storage directory."""
    return [
        {"id": path.stem, "record": _decode_record(path)}
        for path in sorted(storage_dir.glob("*.json"))
    ]


def _dump_selected(storage_dir: Path, session_ids: Iterable[str]) -> list[dict[str, Any]]:
    """Return records for the provided session ids."""
    result: list[dict[str, Any]] = []
    for session_id in session_ids:
        path = storage_dir / f"{session_id}.json"
        if path.is_file():
            result.append({"id": session_id, "record": _decode_record(path)})
    return result


def dump_sessions(storage_dir: Path, session_ids: Iterable[str] | None = None) -> None:
    """Print selected or all session records as JSON."""
    storage_dir = storage_dir.expanduser()
    records = _dump_selected(storage_dir, session_ids) if session_ids else _dump_all(storage_dir)
    print(orjson.dumps(records, option=orjson.OPT_INDENT_2).decode("utf-8"))


def main() -> None:
    parser = argparse.ArgumentParser(description="Dump stored image sessions as JSON")
    parser.add_argument(
        "path",
        type=Path,
        nargs="?",
        default=Path("~/.gemini-images/sessions"),
        help="Session storage directory",
    )
    parser.add_argument("ids", nargs="*", help="Session ids to retrieve")
    args = parser.parse_args()

    dump_sessions(args.path, args.ids)


if __name__ == "__main__":
    main()
