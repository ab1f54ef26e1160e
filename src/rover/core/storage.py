"""JSON document helpers shared by task, iteration and status files."""

import json
import os
from pathlib import Path
from typing import Any

from rover.errors import LoadError, SaveError


def read_json(path: Path) -> Any:
    """Read and parse a JSON document, wrapping failures in LoadError."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise LoadError(f"Failed to read {path}: {e}") from e

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise LoadError(f"Invalid JSON in {path}: {e}") from e


def atomic_write_json(path: Path, data: Any) -> None:
    """Write a JSON document via temp file + rename so readers never see a torn file."""
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, path)
    except OSError as e:
        tmp_path.unlink(missing_ok=True)
        raise SaveError(f"Failed to write {path}: {e}") from e
