from __future__ import annotations

import hashlib
import os
import stat
import threading
import time
from pathlib import Path

from .errors import HashCancelledError, HashTimeoutError

# Version-control metadata directories are never descended into.
VCS_DIR_NAMES = frozenset({".git"})

_CHUNK_SIZE = 1024 * 1024


class _Budget:
    def __init__(self, root: Path, timeout_s: float | None, cancel: threading.Event | None) -> None:
        self.root = root
        self.timeout_s = timeout_s
        self.deadline = None if timeout_s is None else time.monotonic() + timeout_s
        self.cancel = cancel

    def check(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise HashCancelledError(f"hashing {self.root} was cancelled")
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise HashTimeoutError(f"hashing {self.root} timed out after {self.timeout_s:g}s")


def normalize_path(path: str) -> str:
    return path.replace(os.sep, "/")


def _raise(err: OSError) -> None:
    raise err


def _collect_files(root: Path, budget: _Budget) -> list[tuple[str, int]]:
    entries: list[tuple[str, int]] = []
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        budget.check()
        dirnames[:] = [d for d in dirnames if d not in VCS_DIR_NAMES]
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            st = os.lstat(full)
            if not stat.S_ISREG(st.st_mode):
                continue
            rel = normalize_path(os.path.relpath(full, root))
            entries.append((rel, st.st_mode & 0o777))
    entries.sort(key=lambda e: e[0])
    return entries


def _hash_file(path: Path, budget: _Budget) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            budget.check()
            h.update(chunk)
    return h.hexdigest()


def fingerprint(
    root: Path | str,
    *,
    timeout_s: float | None = None,
    cancel: threading.Event | None = None,
) -> str:
    """
    Deterministic checksum of the regular files under ``root``.

    Each file contributes ``"<sha256>  <octal mode>  <relative path>\\n"`` to an
    outer SHA-256, in relative path order. Modification times, traversal order
    and the absolute location of ``root`` do not affect the result.
    """
    root = Path(root)
    budget = _Budget(root, timeout_s, cancel)
    outer = hashlib.sha256()
    for rel, mode in _collect_files(root, budget):
        budget.check()
        digest = _hash_file(root.joinpath(*rel.split("/")), budget)
        outer.update(f"{digest}  {mode:o}  {rel}\n".encode("utf-8"))
    return outer.hexdigest()
