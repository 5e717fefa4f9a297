from __future__ import annotations

import os
from pathlib import Path

import structlog

from .dirhash import normalize_path
from .errors import ProviderError
from .git import Checkout, SourceProvider
from .lockfile import License

logger = structlog.get_logger()

LICENSE_CANDIDATES = ("LICENSE", "LICENSE.txt", "COPYING", "NOTICE")

_SPDX_MARKERS = (
    ("MIT License", "MIT"),
    ("Apache License", "Apache-2.0"),
    ("BSD 3-Clause", "BSD-3-Clause"),
)


def detect_spdx(text: str) -> str:
    for marker, spdx in _SPDX_MARKERS:
        if marker in text:
            return spdx
    return ""


def _find_first_file(directory: Path) -> Path | None:
    for name in LICENSE_CANDIDATES:
        candidate = directory / name
        if candidate.is_file() and not candidate.is_symlink():
            return candidate
    return None


def probe_license(
    skill_dir: Path,
    repo_dir: Path,
    *,
    provider: SourceProvider | None = None,
    checkout: Checkout | None = None,
) -> License | None:
    """Best-effort license lookup: skill dir, then repo dir, then files at HEAD outside the sparse set."""
    found = _find_first_file(skill_dir) or _find_first_file(repo_dir)
    if found is not None:
        try:
            text = found.read_text(encoding="utf-8", errors="replace")
        except OSError:
            text = ""
        return License(spdx=detect_spdx(text), path=normalize_path(os.path.relpath(found, repo_dir)))

    if provider is None or checkout is None:
        return None
    for name in LICENSE_CANDIDATES:
        try:
            content, ok = provider.read_file_at_head(checkout, name)
        except ProviderError as e:
            logger.info("license_probe_failed", repo=checkout.repo, error=str(e))
            return None
        if ok:
            return License(spdx=detect_spdx(content), path=name)
    return None
