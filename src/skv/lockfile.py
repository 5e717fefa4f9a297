from __future__ import annotations

import json
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Iterable

from .errors import ValidationError
from .fsutil import write_json_atomic
from .manifest import SkillEntry

LOCK_FILENAME = "skv.lock"
SCHEMA_VERSION = 1


@dataclass(frozen=True)
class License:
    spdx: str = ""
    path: str = ""

    def to_dict(self) -> dict[str, str]:
        return {k: v for k, v in (("spdx", self.spdx), ("path", self.path)) if v}


@dataclass(frozen=True)
class LockEntry:
    name: str
    checksum: str
    repo: str = ""
    path: str = ""
    ref: str = ""
    commit: str = ""
    local: str = ""
    license: License | None = None

    @property
    def is_local(self) -> bool:
        return bool(self.local)

    def matches(self, entry: SkillEntry) -> bool:
        """True when the recorded source descriptor is the one the manifest declares."""
        return (
            self.repo == entry.repo
            and self.path == entry.path
            and self.ref == entry.ref
            and self.local == entry.local
        )

    def with_checksum(self, checksum: str, license: License | None) -> "LockEntry":
        return replace(self, checksum=checksum, license=license)

    def to_dict(self) -> dict[str, Any]:
        item: dict[str, Any] = {"name": self.name}
        for key in ("local", "repo", "path", "ref", "commit"):
            value = getattr(self, key)
            if value:
                item[key] = value
        item["checksum"] = self.checksum
        if self.license is not None and self.license.to_dict():
            item["license"] = self.license.to_dict()
        return item


def _parse_entry(raw: Any) -> LockEntry:
    if not isinstance(raw, dict):
        raise ValidationError("lock entries must be objects")

    def _s(key: str) -> str:
        value = raw.get(key, "")
        return value.strip() if isinstance(value, str) else ""

    lic_raw = raw.get("license")
    license: License | None = None
    if isinstance(lic_raw, dict):
        spdx = lic_raw.get("spdx")
        lpath = lic_raw.get("path")
        license = License(
            spdx=spdx if isinstance(spdx, str) else "",
            path=lpath if isinstance(lpath, str) else "",
        )
    return LockEntry(
        name=_s("name"),
        checksum=_s("checksum"),
        repo=_s("repo"),
        path=_s("path"),
        ref=_s("ref"),
        commit=_s("commit"),
        local=_s("local"),
        license=license,
    )


def load_lock(path: Path, *, missing_ok: bool = True) -> list[LockEntry]:
    if not path.exists():
        if missing_ok:
            return []
        raise ValidationError(f"{path.name} not found in {path.parent}", hint="run `skv sync` first")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path.name} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ValidationError(f"{path.name} must be a JSON object")
    skills = raw.get("skills") or []
    if not isinstance(skills, list):
        raise ValidationError(f"{path.name}: 'skills' must be a list")
    return [_parse_entry(item) for item in skills]


def index_lock(entries: Iterable[LockEntry]) -> dict[str, LockEntry]:
    return {entry.name: entry for entry in entries}


def save_lock(path: Path, entries: Iterable[LockEntry]) -> None:
    ordered = sorted(entries, key=lambda e: e.name)
    payload = {
        "schema_version": SCHEMA_VERSION,
        "skills": [e.to_dict() for e in ordered],
    }
    write_json_atomic(path, payload, sort_keys=False)
