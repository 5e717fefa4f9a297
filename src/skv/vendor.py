from __future__ import annotations

import os
import shutil
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path

import structlog

from .dirhash import VCS_DIR_NAMES
from .errors import MissingSkillFileError, ValidationError

logger = structlog.get_logger()

MARKER_FILENAME = "SKILL.md"
STAGING_PREFIX = ".skv-tmp-"
BACKUP_SUFFIX = ".skv-backup"
LFS_POINTER_PREFIX = b"version https://git-lfs.github.com/spec/v1"


@dataclass(frozen=True)
class VendorLimits:
    max_file_bytes: int = 5 * 1024 * 1024
    max_skill_files: int = 5000
    max_skill_bytes: int = 20 * 1024 * 1024
    max_checkout_bytes: int = 50 * 1024 * 1024


DEFAULT_LIMITS = VendorLimits()


def _raise(err: OSError) -> None:
    raise err


def ensure_skill(path: Path) -> None:
    if not path.exists():
        raise ValidationError(f"skill path does not exist: {path}")
    if not path.is_dir():
        raise ValidationError(f"skill path is not a directory: {path}")
    if not (path / MARKER_FILENAME).exists():
        raise MissingSkillFileError(f"missing {MARKER_FILENAME} in {path}")


def is_lfs_pointer(path: Path) -> bool:
    with path.open("rb") as f:
        head = f.read(len(LFS_POINTER_PREFIX))
    return head == LFS_POINTER_PREFIX


def validate_skill_dir(root: Path, limits: VendorLimits = DEFAULT_LIMITS) -> None:
    total = 0
    count = 0
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise):
        for dirname in dirnames:
            if os.path.islink(os.path.join(dirpath, dirname)):
                raise ValidationError(f"symlinks are not allowed: {os.path.join(dirpath, dirname)}")
        dirnames[:] = [d for d in dirnames if d not in VCS_DIR_NAMES]
        for filename in filenames:
            full = os.path.join(dirpath, filename)
            st = os.lstat(full)
            if stat.S_ISLNK(st.st_mode):
                raise ValidationError(f"symlinks are not allowed: {full}")
            if not stat.S_ISREG(st.st_mode):
                continue
            count += 1
            if count > limits.max_skill_files:
                raise ValidationError(f"skill exceeds max file count ({limits.max_skill_files})")
            if st.st_size > limits.max_file_bytes:
                raise ValidationError(f"file {full} exceeds max size ({limits.max_file_bytes} bytes)")
            total += st.st_size
            if total > limits.max_skill_bytes:
                raise ValidationError(f"skill exceeds max size ({limits.max_skill_bytes} bytes)")
            if is_lfs_pointer(Path(full)):
                raise ValidationError(f"git lfs pointer detected: {full}")


def validate_checkout_size(root: Path, limits: VendorLimits = DEFAULT_LIMITS) -> None:
    total = 0
    for dirpath, _dirnames, filenames in os.walk(root, onerror=_raise):
        for filename in filenames:
            st = os.lstat(os.path.join(dirpath, filename))
            if not stat.S_ISREG(st.st_mode):
                continue
            total += st.st_size
            if total > limits.max_checkout_bytes:
                raise ValidationError(f"checkout exceeds max size ({limits.max_checkout_bytes} bytes)")


def _copy_file(src: Path, dst: Path, mode: int) -> None:
    shutil.copyfile(src, dst)
    os.chmod(dst, mode)


def copy_tree(src: Path, dst: Path) -> None:
    """Copy regular files and directories from ``src`` into the existing ``dst``."""
    for dirpath, dirnames, filenames in os.walk(src, onerror=_raise):
        dirnames[:] = [d for d in dirnames if d not in VCS_DIR_NAMES and not os.path.islink(os.path.join(dirpath, d))]
        rel = os.path.relpath(dirpath, src)
        target_dir = dst if rel == os.curdir else dst / rel
        target_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        for filename in filenames:
            st = os.lstat(os.path.join(dirpath, filename))
            if not stat.S_ISREG(st.st_mode):
                continue
            _copy_file(Path(dirpath) / filename, target_dir / filename, st.st_mode & 0o777)


def materialize(src: Path, dst: Path) -> None:
    """
    Replace ``dst`` with a copy of ``src``.

    The copy is staged in a sibling temporary directory and swapped in with
    renames, so readers see either the previous content or the new content.
    """
    parent = dst.parent
    parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=STAGING_PREFIX, dir=parent))
    try:
        os.chmod(staging, 0o755)
        copy_tree(src, staging)
        _swap_into_place(staging, dst)
    except BaseException:
        shutil.rmtree(staging, ignore_errors=True)
        raise


def _swap_into_place(staging: Path, dst: Path) -> None:
    backup = dst.with_name(dst.name + BACKUP_SUFFIX)
    if backup.exists() or backup.is_symlink():
        shutil.rmtree(backup, ignore_errors=True)
    had_existing = dst.exists() or dst.is_symlink()
    if had_existing:
        os.rename(dst, backup)
    try:
        os.rename(staging, dst)
    except OSError:
        if had_existing:
            os.rename(backup, dst)
        raise
    if had_existing:
        if backup.is_symlink() or not backup.is_dir():
            backup.unlink()
        else:
            shutil.rmtree(backup)


class VendorStore:
    def __init__(self, root: Path, *, limits: VendorLimits = DEFAULT_LIMITS) -> None:
        self.root = root
        self.limits = limits

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ValidationError(f"Could not create vendor directory: {self.root}") from e

    def path_for(self, name: str) -> Path:
        if not name or name in (".", "..") or "/" in name or "\\" in name or os.sep in name:
            raise ValidationError(f"invalid skill name {name!r}", skill=name or None)
        if name.startswith(STAGING_PREFIX) or name.endswith(BACKUP_SUFFIX):
            raise ValidationError(f"skill name {name!r} is reserved for vendoring", skill=name)
        return self.root / name

    def validate(self, path: Path) -> None:
        ensure_skill(path)
        validate_skill_dir(path, self.limits)

    def check_checkout(self, path: Path) -> None:
        validate_checkout_size(path, self.limits)

    def materialize(self, src: Path, name: str) -> Path:
        dst = self.path_for(name)
        self.ensure_root()
        materialize(src, dst)
        logger.debug("skill_materialized", name=name, src=str(src), dst=str(dst))
        return dst

    def adopt(self, src: Path, name: str) -> Path:
        dst = self.path_for(name)
        if dst.exists() or dst.is_symlink():
            raise ValidationError(f"vendored skill already exists: {dst}", skill=name)
        self.ensure_root()
        shutil.move(str(src), str(dst))
        return dst

    def remove(self, name: str) -> bool:
        path = self.path_for(name)
        if path.is_symlink() or path.is_file():
            path.unlink()
            return True
        if not path.exists():
            return False
        shutil.rmtree(path)
        return True
