from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .config import DEFAULT_HASH_TIMEOUT_S
from .dirhash import fingerprint
from .errors import SkvError
from .lockfile import LockEntry
from .manifest import SkillEntry
from .vendor import VendorStore

STATE_OK = "ok"
STATE_MISSING = "missing"
STATE_MODIFIED = "modified"
STATE_ERROR = "error"


def short_commit(commit: str) -> str:
    return commit[:7]


@dataclass(frozen=True)
class SkillStatus:
    name: str
    state: str
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "state": self.state, "detail": self.detail}


class DriftDetector:
    """Read-only comparison of lock entries against vendored content."""

    def __init__(self, store: VendorStore, *, hash_timeout_s: float = DEFAULT_HASH_TIMEOUT_S) -> None:
        self.store = store
        self.hash_timeout_s = hash_timeout_s

    def classify(self, entry: SkillEntry, locked: LockEntry | None) -> SkillStatus:
        if locked is None:
            return SkillStatus(entry.name, STATE_MISSING, "not in lock file")
        try:
            vendor = self.store.path_for(entry.name)
            if not vendor.exists():
                return SkillStatus(entry.name, STATE_MISSING, "vendor directory missing")
            checksum = fingerprint(vendor, timeout_s=self.hash_timeout_s)
        except (OSError, SkvError) as e:
            return SkillStatus(entry.name, STATE_ERROR, str(e))
        if checksum != locked.checksum:
            return SkillStatus(entry.name, STATE_MODIFIED, "local changes detected")
        if locked.is_local:
            return SkillStatus(entry.name, STATE_OK, "local")
        return SkillStatus(entry.name, STATE_OK, f"{locked.ref or 'default'} @ {short_commit(locked.commit)}")

    def detect(self, skills: Iterable[SkillEntry], lock_index: dict[str, LockEntry]) -> list[SkillStatus]:
        return [self.classify(entry, lock_index.get(entry.name)) for entry in skills]
