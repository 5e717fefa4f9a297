from __future__ import annotations

import json
import posixpath
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterable

from .errors import ValidationError
from .fsutil import write_json_atomic
from .vendor import BACKUP_SUFFIX, STAGING_PREFIX

MANIFEST_FILENAME = "skv.json"
SCHEMA_VERSION = 1

_COMMIT_RE = re.compile(r"^[0-9a-fA-F]{40}$")


@dataclass(frozen=True)
class SkillEntry:
    name: str
    repo: str = ""
    ref: str = ""
    path: str = ""
    local: str = ""

    @property
    def is_local(self) -> bool:
        return bool(self.local)

    def with_ref(self, ref: str) -> "SkillEntry":
        return replace(self, ref=ref)

    def to_dict(self) -> dict[str, str]:
        item = {"name": self.name}
        for key in ("repo", "ref", "path", "local"):
            value = getattr(self, key)
            if value:
                item[key] = value
        return item


@dataclass(frozen=True)
class Manifest:
    skills: tuple[SkillEntry, ...] = ()
    exclude_tools: tuple[str, ...] = field(default_factory=tuple)

    @property
    def excluded(self) -> frozenset[str]:
        return frozenset(t.strip().lower() for t in self.exclude_tools if t.strip())

    def find(self, name: str) -> SkillEntry | None:
        for skill in self.skills:
            if skill.name == name:
                return skill
        return None

    def with_skill(self, entry: SkillEntry) -> "Manifest":
        return replace(self, skills=self.skills + (entry,))

    def without_skill(self, name: str) -> "Manifest":
        return replace(self, skills=tuple(s for s in self.skills if s.name != name))


def is_commit_ref(ref: str) -> bool:
    return bool(_COMMIT_RE.match(ref or ""))


def clean_subpath(path: str) -> str:
    """Normalize a repository subpath; reject absolute paths and paths that escape the repo."""
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        return ""
    if raw.startswith("/") or re.match(r"^[A-Za-z]:/", raw):
        raise ValidationError(f"path must be relative: {path}")
    cleaned = posixpath.normpath(raw)
    if cleaned == ".":
        return ""
    if cleaned == ".." or cleaned.startswith("../"):
        raise ValidationError(f"path escapes repo: {path}")
    return cleaned


def _split_path_suffix(value: str) -> tuple[str, str]:
    # Colons in "scheme://host[:port]" or the "user@host:" prefix belong to the repo.
    start = 0
    scheme_end = value.find("://")
    if scheme_end != -1:
        slash = value.find("/", scheme_end + 3)
        start = slash if slash != -1 else len(value)
    else:
        first_colon = value.find(":")
        if first_colon != -1 and "@" in value[:first_colon] and "/" not in value[:first_colon]:
            start = first_colon + 1
    idx = value.rfind(":", start)
    if idx == -1:
        return value, ""
    return value[:idx], value[idx + 1 :]


def parse_repo_arg(arg: str) -> tuple[str, str, str]:
    """Split ``<repo>[#ref][:path]`` into ``(repo, ref, path)``."""
    value = arg.strip()
    if "#" in value:
        repo, ref_path = value.split("#", 1)
        ref, sep, path = ref_path.partition(":")
        return repo, ref, path if sep else ""
    repo, path = _split_path_suffix(value)
    return repo, "", path


def derive_name(repo: str, path: str = "") -> str:
    if path:
        return posixpath.basename(path.rstrip("/"))
    trimmed = repo.rstrip("/")
    trimmed = re.split(r"[/:]", trimmed)[-1]
    return trimmed.removesuffix(".git")


def validate_name(name: str) -> None:
    if not name or not name.strip():
        raise ValidationError("skill missing name")
    if name in (".", "..") or "/" in name or "\\" in name:
        raise ValidationError(f"invalid skill name {name!r}", skill=name)
    if name.startswith(STAGING_PREFIX) or name.endswith(BACKUP_SUFFIX):
        raise ValidationError(f"skill name {name!r} is reserved for vendoring", skill=name)


def check_entry(entry: SkillEntry) -> SkillEntry:
    """Validate one manifest entry and return it with a normalized subpath."""
    validate_name(entry.name)
    if entry.repo and entry.local:
        raise ValidationError(f"skill {entry.name!r} cannot set both repo and local", skill=entry.name)
    if entry.local:
        if entry.ref or entry.path:
            raise ValidationError(f"local skill {entry.name!r} cannot set ref or path", skill=entry.name)
        return entry
    if not entry.repo:
        raise ValidationError(f"skill {entry.name!r} missing repo or local source", skill=entry.name)
    try:
        cleaned = clean_subpath(entry.path)
    except ValidationError as e:
        raise ValidationError(e.message, skill=entry.name) from e
    return entry if cleaned == entry.path else replace(entry, path=cleaned)


def check_entries(skills: Iterable[SkillEntry]) -> list[SkillEntry]:
    seen: set[str] = set()
    checked: list[SkillEntry] = []
    for skill in skills:
        entry = check_entry(skill)
        if entry.name in seen:
            raise ValidationError(f"duplicate skill name {entry.name!r}", skill=entry.name)
        seen.add(entry.name)
        checked.append(entry)
    return checked


def _str_field(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"manifest field {key!r} must be a string")
    return value.strip()


def parse_manifest(raw: Any) -> Manifest:
    if not isinstance(raw, dict):
        raise ValidationError("manifest must be a JSON object")
    skills_raw = raw.get("skills", [])
    if not isinstance(skills_raw, list):
        raise ValidationError("manifest 'skills' must be a list")
    skills: list[SkillEntry] = []
    for item in skills_raw:
        if not isinstance(item, dict):
            raise ValidationError("manifest skill entries must be objects")
        skills.append(
            SkillEntry(
                name=_str_field(item, "name"),
                repo=_str_field(item, "repo"),
                ref=_str_field(item, "ref"),
                path=_str_field(item, "path"),
                local=_str_field(item, "local"),
            )
        )
    tools = raw.get("tools")
    exclude: list[str] = []
    if isinstance(tools, dict) and isinstance(tools.get("exclude"), list):
        exclude = [t for t in tools["exclude"] if isinstance(t, str)]
    return Manifest(skills=tuple(skills), exclude_tools=tuple(exclude))


def load_manifest(path: Path) -> Manifest:
    if not path.exists():
        raise ValidationError(f"{path.name} not found in {path.parent}", hint="run `skv init` first")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValidationError(f"{path.name} is not valid JSON: {e}") from e
    return parse_manifest(raw)


def save_manifest(path: Path, manifest: Manifest) -> None:
    payload: dict[str, Any] = {
        "schema_version": SCHEMA_VERSION,
        "skills": [s.to_dict() for s in manifest.skills],
    }
    if manifest.exclude_tools:
        payload["tools"] = {"exclude": list(manifest.exclude_tools)}
    write_json_atomic(path, payload)
