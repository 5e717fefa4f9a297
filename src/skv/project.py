from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from .config import DEFAULT_HASH_TIMEOUT_S
from .errors import UsageError, ValidationError
from .fsutil import relative_or_abs
from .git import SourceProvider
from .license import probe_license
from .links import LinkManager
from .lockfile import LOCK_FILENAME, LockEntry, index_lock, load_lock, save_lock
from .manifest import (
    MANIFEST_FILENAME,
    Manifest,
    SkillEntry,
    check_entries,
    check_entry,
    clean_subpath,
    derive_name,
    is_commit_ref,
    load_manifest,
    parse_repo_arg,
    save_manifest,
    validate_name,
)
from .output import Output
from .reconcile import Policy, Reconciler, resolve_local_path
from .status import DriftDetector, SkillStatus, short_commit
from .vendor import DEFAULT_LIMITS, VendorLimits, VendorStore

logger = structlog.get_logger()

VENDOR_DIR = (".skv", "skills")


@dataclass(frozen=True)
class SyncResult:
    skills: tuple[LockEntry, ...]
    linked: tuple[Path, ...]
    lock_path: Path
    lock_written: bool


@dataclass(frozen=True)
class RemoveResult:
    name: str
    vendor_removed: bool
    links_removed: tuple[Path, ...]
    links_kept: tuple[Path, ...]


class SkillVendor:
    def __init__(
        self,
        root: Path,
        *,
        provider: SourceProvider,
        output: Output | None = None,
        hash_timeout_s: float = DEFAULT_HASH_TIMEOUT_S,
        limits: VendorLimits = DEFAULT_LIMITS,
        tools: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.manifest_path = self.root / MANIFEST_FILENAME
        self.lock_path = self.root / LOCK_FILENAME
        self.vendor_root = self.root.joinpath(*VENDOR_DIR)
        self.output = output if output is not None else Output()
        self.store = VendorStore(self.vendor_root, limits=limits)
        self.links = LinkManager(self.root, self.vendor_root, tools=tools)
        self.reconciler = Reconciler(
            root=self.root,
            store=self.store,
            provider=provider,
            hash_timeout_s=hash_timeout_s,
        )
        self.detector = DriftDetector(self.store, hash_timeout_s=hash_timeout_s)

    def _load_manifest(self) -> Manifest:
        return load_manifest(self.manifest_path)

    def _lock_index(self, *, required: bool = False) -> dict[str, LockEntry]:
        return index_lock(load_lock(self.lock_path, missing_ok=not required))

    def _save_lock_for(self, manifest: Manifest, lock_index: dict[str, LockEntry]) -> list[LockEntry]:
        entries = [lock_index[s.name] for s in manifest.skills if s.name in lock_index]
        save_lock(self.lock_path, entries)
        return entries

    def _rel(self, path: Path) -> str:
        return relative_or_abs(path, base=self.root)

    def init(self) -> Path:
        if self.manifest_path.exists():
            raise ValidationError(f"{MANIFEST_FILENAME} already exists")
        self.store.ensure_root()
        save_manifest(self.manifest_path, Manifest())
        save_lock(self.lock_path, [])
        self.output.success(f"Initialized skv in {self.root}")
        return self.manifest_path

    def add(self, source: str, *, name: str | None = None, no_sync: bool = False) -> LockEntry | None:
        if not source or not source.strip():
            raise UsageError("add requires <repo>[#ref][:path]")
        repo, ref, path = parse_repo_arg(source)
        if not repo:
            raise ValidationError("invalid repo argument")
        path = clean_subpath(path)
        name = (name or "").strip() or derive_name(repo, path)
        validate_name(name)

        manifest = self._load_manifest()
        if manifest.find(name) is not None:
            raise ValidationError(f"skill {name!r} already exists", skill=name)
        entry = check_entry(SkillEntry(name=name, repo=repo, ref=ref, path=path))
        updated = manifest.with_skill(entry)
        check_entries(updated.skills)

        if no_sync:
            self.reconciler.probe(entry)
            save_manifest(self.manifest_path, updated)
            self.output.success(f"Added {name} from {repo}")
            return None

        self.store.ensure_root()
        lock_index = self._lock_index()
        self.output.info(f"Fetching {name}...")
        locked = self.reconciler.reconcile(entry, lock_index, Policy.NORMAL)
        lock_index[name] = locked

        save_manifest(self.manifest_path, updated)
        self._save_lock_for(updated, lock_index)
        self.links.link(name, updated.excluded)
        self.output.success(f"Vendored {name} ({short_commit(locked.commit) or '(local)'})")
        return locked

    def sync(self, policy: Policy = Policy.NORMAL, *, force: bool = False) -> SyncResult:
        manifest = self._load_manifest()
        skills = self.reconciler.check_manifest(manifest.skills)
        self.store.ensure_root()
        lock_index = self._lock_index(required=policy is Policy.OFFLINE)
        logger.info("sync_started", policy=policy.value, skills=len(skills))

        entries: list[LockEntry] = []
        linked: list[Path] = []
        for entry in skills:
            self.output.info(f"Syncing {entry.name}...")
            entries.append(self.reconciler.reconcile(entry, lock_index, policy, force=force))
            linked.extend(self.links.link(entry.name, manifest.excluded))

        if policy is Policy.OFFLINE:
            self.output.success(f"Verified {len(entries)} skill(s) in offline mode")
            return SyncResult(tuple(entries), tuple(linked), self.lock_path, lock_written=False)

        save_lock(self.lock_path, entries)
        self.output.success(f"Synced {len(entries)} skill(s)")
        return SyncResult(tuple(entries), tuple(linked), self.lock_path, lock_written=True)

    def update(
        self,
        name: str | None = None,
        *,
        all_skills: bool = False,
        ref: str = "",
        force: bool = False,
    ) -> list[str]:
        if ref and not name:
            raise UsageError("--ref requires a skill name")
        if ref and all_skills:
            raise UsageError("--ref cannot be used with --all")
        if name and all_skills:
            raise UsageError("cannot combine a skill name with --all")

        manifest = self._load_manifest()
        check_entries(manifest.skills)
        self.store.ensure_root()
        lock_index = self._lock_index(required=True)

        if name:
            entry = manifest.find(name)
            if entry is None:
                raise ValidationError(f"skill {name!r} not found in {MANIFEST_FILENAME}", skill=name)
            targets = [entry]
        else:
            targets = [s for s in manifest.skills if not s.is_local and not is_commit_ref(s.ref)]

        if not targets:
            self.output.info("No skills to update")
            return []

        for entry in targets:
            self.output.info(f"Updating {entry.name}...")
            lock_index[entry.name] = self.reconciler.update(entry, lock_index, force=force, ref_override=ref)
            self.links.link(entry.name, manifest.excluded)

        if not self._save_lock_for(manifest, lock_index):
            raise ValidationError("no lock entries found after update")
        self.output.success(f"Updated {len(targets)} skill(s)")
        return [t.name for t in targets]

    def verify(self) -> list[LockEntry]:
        entries = load_lock(self.lock_path, missing_ok=False)
        seen: set[str] = set()
        for entry in entries:
            if not entry.name:
                raise ValidationError("lock entry missing name")
            if entry.name in seen:
                raise ValidationError(f"duplicate lock entry {entry.name!r}", skill=entry.name)
            seen.add(entry.name)
        for entry in entries:
            self.reconciler.verify(entry)
        self.output.success(f"Verified {len(entries)} skill(s)")
        return entries

    def import_skill(self, path: str) -> LockEntry:
        if not path or not path.strip():
            raise UsageError("import requires <agentDir>/<skill>")
        src = resolve_local_path(self.root, path)
        if not src.exists():
            raise ValidationError(f"import path does not exist: {src}")
        if not src.is_dir() or src.is_symlink():
            raise ValidationError(f"import path is not a directory: {src}")
        name = src.name
        validate_name(name)

        manifest = self._load_manifest()
        if manifest.find(name) is not None:
            raise ValidationError(f"skill {name!r} already exists in {MANIFEST_FILENAME}", skill=name)
        self.store.validate(src)

        vendor = self.store.adopt(src, name)
        checksum = self.reconciler.hash(vendor)
        local = "./" + "/".join((*VENDOR_DIR, name))
        updated = manifest.with_skill(SkillEntry(name=name, local=local))
        save_manifest(self.manifest_path, updated)

        lock_index = self._lock_index()
        locked = LockEntry(
            name=name,
            local=local,
            checksum=checksum,
            license=probe_license(vendor, self.root),
        )
        lock_index[name] = locked
        self._save_lock_for(updated, lock_index)
        self.links.link(name, updated.excluded)
        self.output.success(f"Imported {name}")
        return locked

    def list_skills(self) -> list[LockEntry]:
        return load_lock(self.lock_path, missing_ok=False)

    def remove(self, name: str) -> RemoveResult:
        manifest = self._load_manifest()
        if manifest.find(name) is None:
            raise ValidationError(f"skill {name!r} not found in {MANIFEST_FILENAME}", skill=name)

        vendor_removed = self.store.remove(name)
        removed, kept = self.links.unlink(name)
        for path in kept:
            self.output.warn(f"left directory in place at {self._rel(path)}")

        updated = manifest.without_skill(name)
        save_manifest(self.manifest_path, updated)
        lock_index = self._lock_index()
        lock_index.pop(name, None)
        self._save_lock_for(updated, lock_index)
        self.output.success(f"Removed {name}")
        return RemoveResult(
            name=name,
            vendor_removed=vendor_removed,
            links_removed=tuple(removed),
            links_kept=tuple(kept),
        )

    def status(self) -> list[SkillStatus]:
        manifest = self._load_manifest()
        return self.detector.detect(manifest.skills, self._lock_index())
