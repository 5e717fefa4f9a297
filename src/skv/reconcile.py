from __future__ import annotations

import enum
import os
from pathlib import Path
from typing import Iterable

import structlog

from .config import DEFAULT_HASH_TIMEOUT_S
from .dirhash import fingerprint
from .errors import (
    DriftError,
    IntegrityError,
    MissingSkillFileError,
    TagMovedError,
    UsageError,
    ValidationError,
)
from .fsutil import is_within, same_path
from .git import Checkout, SourceProvider
from .license import probe_license
from .lockfile import LockEntry
from .manifest import SkillEntry, check_entries, check_entry, is_commit_ref
from .vendor import VendorStore

logger = structlog.get_logger()

REFETCH_HINT = "use --refresh or --accept-local"


class Policy(enum.Enum):
    NORMAL = "normal"
    OFFLINE = "offline"
    REFRESH = "refresh"
    ACCEPT_LOCAL = "accept-local"

    @classmethod
    def from_flags(cls, *, offline: bool = False, refresh: bool = False, accept_local: bool = False) -> "Policy":
        if offline and (refresh or accept_local):
            raise UsageError("offline mode is incompatible with --refresh or --accept-local")
        if refresh and accept_local:
            raise UsageError("--refresh and --accept-local are mutually exclusive")
        if offline:
            return cls.OFFLINE
        if refresh:
            return cls.REFRESH
        if accept_local:
            return cls.ACCEPT_LOCAL
        return cls.NORMAL


def resolve_local_path(root: Path, local: str) -> Path:
    if not local:
        raise ValidationError("local path is required")
    candidate = Path(local)
    path = candidate if candidate.is_absolute() else root / candidate
    path = Path(os.path.normpath(path))
    if not is_within(path, root):
        raise ValidationError(f"local path escapes repo: {local}")
    return path


class Reconciler:
    """
    Turns manifest entries into verified lock entries.

    One skill at a time: the caller decides what to do with the returned
    ``LockEntry`` and is expected to persist the lock only after every skill of
    a run succeeded.
    """

    def __init__(
        self,
        *,
        root: Path,
        store: VendorStore,
        provider: SourceProvider,
        hash_timeout_s: float = DEFAULT_HASH_TIMEOUT_S,
    ) -> None:
        self.root = root
        self.store = store
        self.provider = provider
        self.hash_timeout_s = hash_timeout_s

    def check_manifest(self, skills: Iterable[SkillEntry]) -> list[SkillEntry]:
        return check_entries(skills)

    def hash(self, path: Path) -> str:
        return fingerprint(path, timeout_s=self.hash_timeout_s)

    def reconcile(
        self,
        entry: SkillEntry,
        lock_index: dict[str, LockEntry],
        policy: Policy,
        *,
        force: bool = False,
    ) -> LockEntry:
        entry = check_entry(entry)
        existing = lock_index.get(entry.name)
        if entry.is_local:
            return self._reconcile_local(entry, existing, policy)
        return self._reconcile_remote(entry, existing, policy, force=force)

    def _reconcile_remote(
        self,
        entry: SkillEntry,
        existing: LockEntry | None,
        policy: Policy,
        *,
        force: bool,
    ) -> LockEntry:
        if policy is Policy.NORMAL:
            if existing is not None and existing.matches(entry):
                return self._reuse(entry, existing)
            return self.fetch(entry, existing, force=force)
        if policy is Policy.OFFLINE:
            return self._verify_locked(entry, existing)
        if policy is Policy.REFRESH:
            return self.fetch(entry, existing, force=force)
        if policy is Policy.ACCEPT_LOCAL:
            return self._accept_local_remote(entry, existing)
        raise AssertionError(f"unhandled policy {policy!r}")

    def _reconcile_local(self, entry: SkillEntry, existing: LockEntry | None, policy: Policy) -> LockEntry:
        if policy is Policy.NORMAL or policy is Policy.REFRESH:
            return self._copy_local(entry)
        if policy is Policy.OFFLINE:
            return self._verify_locked(entry, existing)
        if policy is Policy.ACCEPT_LOCAL:
            return self._accept_local_local(entry)
        raise AssertionError(f"unhandled policy {policy!r}")

    def _reuse(self, entry: SkillEntry, existing: LockEntry) -> LockEntry:
        vendor = self.store.path_for(entry.name)
        if not vendor.is_dir():
            raise DriftError(
                f"vendored content for {entry.name!r} is missing",
                skill=entry.name,
                hint=REFETCH_HINT,
            )
        try:
            self.store.validate(vendor)
        except MissingSkillFileError as e:
            raise DriftError(e.message, skill=entry.name, hint=REFETCH_HINT) from e
        checksum = self.hash(vendor)
        if checksum != existing.checksum:
            raise DriftError(
                f"vendored content for {entry.name!r} differs from lock "
                f"(expected {existing.checksum}, got {checksum})",
                skill=entry.name,
                hint=REFETCH_HINT,
                expected=existing.checksum,
                actual=checksum,
            )
        logger.debug("skill_reused", name=entry.name, commit=existing.commit or None)
        return existing

    def verify(self, locked: LockEntry) -> LockEntry:
        """Vendored content must exist, validate and hash to the recorded checksum."""
        vendor = self.store.path_for(locked.name)
        try:
            self.store.validate(vendor)
        except ValidationError as e:
            raise ValidationError(e.message, skill=locked.name, hint=e.hint) from e
        checksum = self.hash(vendor)
        if checksum != locked.checksum:
            raise DriftError(
                f"vendored content mismatch for {locked.name!r} (expected {locked.checksum}, got {checksum})",
                skill=locked.name,
                expected=locked.checksum,
                actual=checksum,
            )
        return locked

    def _verify_locked(self, entry: SkillEntry, existing: LockEntry | None) -> LockEntry:
        if existing is None:
            raise ValidationError(f"offline mode requires existing lock entry for {entry.name!r}", skill=entry.name)
        if not existing.matches(entry):
            raise DriftError(
                f"offline mode requires lock entry for {entry.name!r} to match the manifest",
                skill=entry.name,
                hint="run `skv sync` while online",
            )
        return self.verify(existing)

    def _require_vendor(self, entry: SkillEntry) -> Path:
        vendor = self.store.path_for(entry.name)
        if not vendor.exists():
            raise ValidationError(f"accept-local requires existing vendor for {entry.name!r}", skill=entry.name)
        self.store.validate(vendor)
        return vendor

    def _accept_local_remote(self, entry: SkillEntry, existing: LockEntry | None) -> LockEntry:
        if existing is None:
            raise ValidationError(f"accept-local requires existing lock entry for {entry.name!r}", skill=entry.name)
        if not existing.matches(entry):
            raise ValidationError(
                f"accept-local requires lock entry for {entry.name!r} to match the manifest",
                skill=entry.name,
            )
        vendor = self._require_vendor(entry)
        checksum = self.hash(vendor)
        license = probe_license(vendor, vendor) or existing.license
        if checksum != existing.checksum:
            logger.info("local_changes_accepted", name=entry.name, old=existing.checksum, new=checksum)
        return existing.with_checksum(checksum, license)

    def _accept_local_local(self, entry: SkillEntry) -> LockEntry:
        vendor = self._require_vendor(entry)
        checksum = self.hash(vendor)
        return LockEntry(
            name=entry.name,
            local=entry.local,
            checksum=checksum,
            license=probe_license(vendor, self.root),
        )

    def _copy_local(self, entry: SkillEntry) -> LockEntry:
        src = resolve_local_path(self.root, entry.local)
        self.store.validate(src)
        vendor = self.store.path_for(entry.name)
        if not same_path(src, vendor):
            self.store.materialize(src, entry.name)
        self._recheck(entry, vendor)
        checksum = self.hash(vendor)
        return LockEntry(
            name=entry.name,
            local=entry.local,
            checksum=checksum,
            license=probe_license(vendor, self.root),
        )

    def _recheck(self, entry: SkillEntry, vendor: Path) -> None:
        try:
            self.store.validate(vendor)
        except ValidationError as e:
            raise IntegrityError(
                f"vendored copy of {entry.name!r} failed re-validation: {e.message}",
                skill=entry.name,
            ) from e

    def _skill_root(self, entry: SkillEntry, checkout: Checkout) -> Path:
        src = checkout.path.joinpath(*entry.path.split("/")) if entry.path else checkout.path
        try:
            self.store.validate(src)
        except MissingSkillFileError as e:
            hint = None if entry.path else "repo root has no SKILL.md; specify a :path"
            raise MissingSkillFileError(e.message, skill=entry.name, hint=hint) from e
        except ValidationError as e:
            raise ValidationError(e.message, skill=entry.name) from e
        return src

    def _guard_tag(
        self,
        entry: SkillEntry,
        existing: LockEntry | None,
        checkout: Checkout,
        commit: str,
        *,
        force: bool,
    ) -> None:
        if not entry.ref or existing is None or not existing.commit:
            return
        if existing.repo != entry.repo or existing.ref != entry.ref or existing.commit == commit:
            return
        if not self.provider.is_tag(checkout, entry.ref):
            return
        if force:
            logger.warning("tag_move_accepted", name=entry.name, tag=entry.ref, old=existing.commit, new=commit)
            return
        raise TagMovedError(
            f"tag {entry.ref!r} moved for {entry.name!r} (locked {existing.commit}, now {commit})",
            skill=entry.name,
            hint="re-run with --force to accept",
            expected=existing.commit,
            actual=commit,
        )

    def fetch(self, entry: SkillEntry, existing: LockEntry | None, *, force: bool = False) -> LockEntry:
        """Clone, guard, validate, vendor atomically, re-validate, hash."""
        logger.info("skill_fetch", name=entry.name, repo=entry.repo, ref=entry.ref or None, path=entry.path or None)
        with self.provider.clone(entry.repo, entry.ref, entry.path) as checkout:
            self.store.check_checkout(checkout.path)
            commit = self.provider.head_commit(checkout)
            self._guard_tag(entry, existing, checkout, commit, force=force)
            src = self._skill_root(entry, checkout)
            vendor = self.store.materialize(src, entry.name)
            self._recheck(entry, vendor)
            checksum = self.hash(vendor)
            license = probe_license(src, checkout.path, provider=self.provider, checkout=checkout)
        return LockEntry(
            name=entry.name,
            repo=entry.repo,
            path=entry.path,
            ref=entry.ref,
            commit=commit,
            checksum=checksum,
            license=license,
        )

    def probe(self, entry: SkillEntry) -> None:
        """Check that the declared skill root carries a marker file, without vendoring anything."""
        entry = check_entry(entry)
        with self.provider.clone(entry.repo, entry.ref, entry.path) as checkout:
            self.store.check_checkout(checkout.path)
            self._skill_root(entry, checkout)

    def update(
        self,
        entry: SkillEntry,
        lock_index: dict[str, LockEntry],
        *,
        force: bool = False,
        ref_override: str = "",
    ) -> LockEntry:
        entry = check_entry(entry)
        if entry.is_local:
            raise ValidationError(f"cannot update local skill {entry.name!r}", skill=entry.name)
        if is_commit_ref(entry.ref) and not ref_override:
            raise ValidationError(
                f"skill {entry.name!r} is pinned to a commit",
                skill=entry.name,
                hint="pass --ref to move it",
            )
        if ref_override:
            entry = entry.with_ref(ref_override)
        return self.fetch(entry, lock_index.get(entry.name), force=force)
