"""Filesystem primitives shared by the procedure and progress stores."""

from __future__ import annotations

import fcntl
import hashlib
import os
import re
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

_LOCK_SUFFIX = ".lock"
_SAFE_COMPONENT = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")
_UNSAFE_RUN = re.compile(r"[^A-Za-z0-9._-]+")


@contextmanager
def locked_file(path: Path) -> Iterator[None]:
    """Hold an exclusive ``fcntl`` lock for *path* while the block runs.

    The lock lives on ``<path>.lock`` rather than on the document itself,
    because documents are swapped in with ``os.replace`` and a lock on the
    old inode would no longer guard the new one.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def atomic_write_text(path: Path, content: str) -> None:
    """Replace *path* with *content* so readers see the old or new document, never half of one.

    The temp file sits beside the target so the final ``os.replace`` is a
    same-filesystem rename, and it is fsynced before the rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def append_line(path: Path, line: str) -> None:
    """Append one newline-terminated line and fsync before returning."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line.rstrip("\n") + "\n")
        handle.flush()
        os.fsync(handle.fileno())


def read_text(path: Path, label: str) -> str:
    """Read a UTF-8 document.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise FileNotFoundError(f"{label} not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise ValueError(f"{label} at {path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise ValueError(f"{label} at {path} is empty")
    return text


def safe_component(value: str, *, label: str = "identifier") -> str:
    """Map an equipment or procedure id to a path component, one-to-one.

    Ids that are already safe (alphanumeric start, then ``[A-Za-z0-9._-]``,
    at most 128 chars) are used unchanged. Anything else becomes a readable
    slug plus ``~`` and a digest of the raw id; ``~`` never occurs in a safe
    id, so two distinct ids never share a file.

    Raises:
        ValueError: If the id is empty or whitespace only.
    """
    if not value.strip():
        raise ValueError(f"{label} must be non-empty")
    if _SAFE_COMPONENT.fullmatch(value):
        return value
    slug = _UNSAFE_RUN.sub("-", value.strip()).strip("-.")[:100]
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:12]
    return f"{slug}~{digest}"
