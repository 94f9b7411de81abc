"""File persistence for job definitions and run state.

Atomic writes use tempfile + fsync + os.replace(), then fsync the directory
so the rename itself survives a crash.
"""

import json
import logging
import os
import tempfile
import tomllib
from pathlib import Path
from typing import Any

import tomlkit

from demon.errors import PersistenceError

logger = logging.getLogger(__name__)


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def write_text_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            Path(tmp).unlink()
        except OSError:
            pass
        raise
    _fsync_dir(path.parent)


def read_jobs_file(path: Path) -> list[dict[str, Any]]:
    """Read the ``[[jobs]]`` tables from jobs.toml.

    Returns:
        Raw job dicts; empty if the file does not exist.

    Raises:
        PersistenceError: If the file cannot be read or parsed.
    """
    if not path.exists():
        return []
    try:
        with path.open("rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e

    jobs = data.get("jobs", [])
    if not isinstance(jobs, list) or not all(isinstance(j, dict) for j in jobs):
        raise PersistenceError(f"{path}: 'jobs' must be an array of tables")
    return jobs


def write_jobs_file(path: Path, jobs: list[dict[str, Any]]) -> None:
    """Write job dicts as a ``[[jobs]]`` array of tables."""
    doc = tomlkit.document()
    doc.add(tomlkit.comment("Managed by demon. Edit freely, then `demon job reload`."))
    tables = tomlkit.aot()
    for job in jobs:
        table = tomlkit.table()
        for key, value in job.items():
            table[key] = value
        tables.append(table)
    doc["jobs"] = tables
    try:
        write_text_atomic(path, tomlkit.dumps(doc))
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e


def read_state_file(path: Path) -> dict[str, dict[str, Any]]:
    """Read per-job run state keyed by job id.

    Raises:
        PersistenceError: If the file exists but is not valid JSON.
    """
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e
    if not isinstance(data, dict):
        raise PersistenceError(f"{path}: expected a JSON object")
    return data


def write_state_file(path: Path, state: dict[str, dict[str, Any]]) -> None:
    try:
        write_text_atomic(path, json.dumps(state, indent=2, sort_keys=True) + "\n")
    except OSError as e:
        raise PersistenceError(f"Failed to write {path}: {e}") from e
