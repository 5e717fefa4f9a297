from __future__ import annotations

import os
import stat
from pathlib import Path

import structlog

from .errors import ValidationError

logger = structlog.get_logger()

# Consumer tool -> link directory (relative to the repo root) holding one link per skill.
TOOL_LINK_DIRS: dict[str, tuple[str, ...]] = {
    "claude": (".claude", "skills"),
    "codex": (".codex", "skills"),
    "opencode": (".opencode", "skill"),
}


def ensure_link(target: Path, link_path: Path) -> None:
    try:
        st = os.lstat(link_path)
    except FileNotFoundError:
        st = None
    if st is not None:
        if stat.S_ISDIR(st.st_mode):
            raise ValidationError(f"refusing to replace directory {link_path}")
        link_path.unlink()

    link_path.parent.mkdir(parents=True, exist_ok=True)
    rel = os.path.relpath(target, link_path.parent)
    os.symlink(rel, link_path)


class LinkManager:
    def __init__(
        self,
        root: Path,
        vendor_root: Path,
        *,
        tools: dict[str, tuple[str, ...]] | None = None,
    ) -> None:
        self.root = root
        self.vendor_root = vendor_root
        self.tools = dict(TOOL_LINK_DIRS if tools is None else tools)

    def targets(self, name: str, excluded: frozenset[str] = frozenset()) -> dict[str, Path]:
        skipped = {t.lower() for t in excluded}
        return {
            tool: self.root.joinpath(*parts, name)
            for tool, parts in sorted(self.tools.items())
            if tool.lower() not in skipped
        }

    def link(self, name: str, excluded: frozenset[str] = frozenset()) -> list[Path]:
        target = self.vendor_root / name
        created: list[Path] = []
        for tool, link_path in self.targets(name, excluded).items():
            ensure_link(target, link_path)
            logger.debug("skill_linked", name=name, tool=tool, link=str(link_path))
            created.append(link_path)
        return created

    def unlink(self, name: str) -> tuple[list[Path], list[Path]]:
        """Remove every tool link for ``name``; returns (removed, left_in_place)."""
        removed: list[Path] = []
        kept: list[Path] = []
        for link_path in self.targets(name).values():
            try:
                st = os.lstat(link_path)
            except FileNotFoundError:
                continue
            if stat.S_ISDIR(st.st_mode):
                kept.append(link_path)
                continue
            link_path.unlink()
            removed.append(link_path)
        return removed, kept
