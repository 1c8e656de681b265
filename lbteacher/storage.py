"""
File-backed JSON documents shared between worker processes.

Read-modify-write cycles run under an exclusive ``fcntl`` lock on a sibling
``.lock`` file, and documents are replaced atomically (temp file +
``os.replace``) so a reader never sees a half-written file and no update
is silently dropped.
"""

import fcntl
import json
import logging
import os
import re
import tempfile
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9.-]")


def sanitize_domain(domain: str) -> str:
    """Filesystem-safe file stem for a domain."""
    s = (domain or "").strip()
    if not s:
        return "default"
    return _UNSAFE_CHARS.sub("_", s)


def lock_path_for(path: Path) -> Path:
    return path.with_name(f".{path.name}.lock")


@contextmanager
def locked(path: Path) -> Iterator[None]:
    """Hold an exclusive cross-process lock for ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    lock_file = lock_path_for(path)
    lock_file.touch(exist_ok=True)
    with open(lock_file, "r+") as lock:
        fcntl.flock(lock, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock, fcntl.LOCK_UN)


def read_json(path: Path, default: Callable[[], Any]) -> Any:
    """
    Load a JSON document, or ``default()`` when it does not exist.

    A corrupt document is moved aside (``<name>.corrupt-<timestamp>``)
    rather than overwritten, so its contents can be recovered by hand.
    """
    if not path.exists():
        return default()
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup = path.with_name(f"{path.name}.corrupt-{stamp}")
        os.replace(path, backup)
        logger.warning(f"Corrupt JSON in {path} ({e}); moved to {backup.name}")
        return default()


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp, path)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


def update_json(path: Path, mutate: Callable[[Any], Any], default: Callable[[], Any]) -> Any:
    """
    Atomically apply ``mutate`` to the document at ``path``.

    ``mutate`` receives the current document and returns the new one,
    which is written back and returned.
    """
    with locked(path):
        current = read_json(path, default)
        updated = mutate(current)
        write_json_atomic(path, updated)
        return updated
