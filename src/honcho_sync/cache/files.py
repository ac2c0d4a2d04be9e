"""JSON document repository: read the whole file, mutate in memory, write it back."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def atomic_write_text(path: Path, text: str) -> None:
    """Write text to path atomically (temp file + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class JsonDocument:
    """One JSON object on disk.

    A missing, unreadable or non-object file loads as an empty dict: a damaged
    cache must never block the hook that reads it.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring state file %s: expected a JSON object", self.path)
            return {}
        return data

    def save(self, data: dict[str, Any]) -> None:
        atomic_write_text(self.path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")

    def update(self, mutate: Callable[[dict[str, Any]], T]) -> T:
        """Re-read the file, apply ``mutate`` to it and write the result back."""
        data = self.load()
        result = mutate(data)
        self.save(data)
        return result

    def clear(self) -> None:
        if self.path.exists():
            self.save({})
