"""
JSON Store - atomic whole-file JSON and append-only JSON lines

Missing or unreadable state is always read back as the caller's default.
Every mutation of a shared file goes through update_json(), which holds an
advisory exclusive lock for the whole read-modify-write.
"""

import copy
import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, List

try:
    import fcntl
except ImportError:  # Windows: no advisory locks, last writer wins
    fcntl = None

from inboxd.errors import LocalIOError


logger = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700


def ensure_dir(directory: Path) -> None:
    """Create the directory (owner-only) if it does not exist"""
    directory.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)


# === Whole-file JSON ===

def read_json(path: Path, default: Any) -> Any:
    """Parsed content of path, or a copy of default on any failure"""
    path = Path(path)
    try:
        content = path.read_bytes()
    except FileNotFoundError:
        return copy.deepcopy(default)
    except OSError as error:
        logger.warning(f"Could not read {path}: {error}")
        return copy.deepcopy(default)

    # UnicodeDecodeError is a ValueError too
    try:
        return json.loads(content.decode('utf-8'))
    except ValueError as error:
        # Left on disk untouched so it can be inspected
        logger.warning(f"Ignoring malformed JSON in {path}: {error}")
        return copy.deepcopy(default)


def write_json(path: Path, value: Any) -> None:
    """Serialize value to path atomically (temp file, fsync, rename)"""
    write_text(path, json.dumps(value, indent=2, ensure_ascii=False))


def write_text(path: Path, data: str) -> None:
    path = Path(path)
    ensure_dir(path.parent)
    tmp_path = path.with_name(path.name + '.tmp')
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except OSError as error:
        raise LocalIOError(f"Could not write {path}: {error}") from error


@contextmanager
def file_lock(path: Path) -> Iterator[None]:
    """Advisory exclusive lock on a sidecar '<path>.lock' file"""
    path = Path(path)
    ensure_dir(path.parent)
    lock_path = path.with_name(path.name + '.lock')
    fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, FILE_MODE)
    try:
        if fcntl is not None:
            fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        if fcntl is not None:
            fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


def update_json(path: Path, default: Any, mutate: Callable[[Any], Any]) -> Any:
    """Locked read-modify-write; mutate returns the value to persist"""
    with file_lock(path):
        current = read_json(path, default)
        updated = mutate(current)
        write_json(path, updated)
        return updated


# === JSON lines ===

def append_jsonl(path: Path, record: Any) -> None:
    """Append one newline-terminated JSON record"""
    path = Path(path)
    ensure_dir(path.parent)
    line = json.dumps(record, ensure_ascii=False) + '\n'
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, FILE_MODE)
        with os.fdopen(fd, 'a', encoding='utf-8') as handle:
            handle.write(line)
    except OSError as error:
        raise LocalIOError(f"Could not append to {path}: {error}") from error


def read_jsonl(path: Path) -> List[Any]:
    """All parseable records of a JSON-lines file; bad lines are skipped"""
    path = Path(path)
    try:
        content = path.read_text(encoding='utf-8', errors='replace')
    except OSError:
        return []

    records = []
    for line in content.splitlines():
        if not line.strip():
            continue
        try:
            records.append(json.loads(line))
        except ValueError:
            logger.debug(f"Skipping malformed line in {path}")
    return records


def remove_file(path: Path) -> bool:
    """Delete path if present, returns whether it existed"""
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        return False
