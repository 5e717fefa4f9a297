from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from .config import DEFAULT_GIT_TIMEOUT_S
from .errors import ProviderError, ProviderTimeoutError

logger = structlog.get_logger()


@dataclass
class Checkout:
    """A temporary working copy. Removing it is the owner's job; use it as a context manager."""

    path: Path
    repo: str
    ref: str = ""
    subpath: str = ""

    def cleanup(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> "Checkout":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


class SourceProvider(Protocol):
    def clone(self, repo: str, ref: str, subpath: str = "") -> Checkout:
        ...

    def head_commit(self, checkout: Checkout) -> str:
        ...

    def is_tag(self, checkout: Checkout, ref: str) -> bool:
        ...

    def read_file_at_head(self, checkout: Checkout, path: str) -> tuple[str, bool]:
        ...


class GitSourceProvider:
    def __init__(
        self,
        *,
        git_bin: str = "git",
        timeout_s: float = DEFAULT_GIT_TIMEOUT_S,
        tmp_dir: Path | None = None,
    ) -> None:
        self.git_bin = git_bin
        self.timeout_s = timeout_s
        self.tmp_dir = tmp_dir

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["GIT_TERMINAL_PROMPT"] = "0"
        env["GCM_INTERACTIVE"] = "never"
        return env

    def _exec(self, args: list[str], *, cwd: Path | None = None) -> subprocess.CompletedProcess[str]:
        label = " ".join(args[:2]) if args[0] == "sparse-checkout" else args[0]
        logger.debug("git_command", args=args, cwd=str(cwd) if cwd else None)
        try:
            return subprocess.run(
                [self.git_bin, *args],
                cwd=str(cwd) if cwd else None,
                env=self._env(),
                capture_output=True,
                text=True,
                timeout=self.timeout_s,
            )
        except subprocess.TimeoutExpired as e:
            raise ProviderTimeoutError(f"git {label} timed out after {self.timeout_s:g}s") from e
        except OSError as e:
            raise ProviderError(f"git {label} failed: {e}") from e

    def _run(self, args: list[str], *, cwd: Path | None = None) -> str:
        proc = self._exec(args, cwd=cwd)
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout).strip()
            raise ProviderError(f"git {' '.join(args)} failed (exit {proc.returncode}): {detail}")
        return proc.stdout

    def clone(self, repo: str, ref: str, subpath: str = "") -> Checkout:
        path = Path(tempfile.mkdtemp(prefix="skv-clone-", dir=self.tmp_dir))
        checkout = Checkout(path=path, repo=repo, ref=ref, subpath=subpath)
        try:
            self._run(["clone", "--no-checkout", "--quiet", "--", repo, str(path)])
            if subpath:
                self._run(["sparse-checkout", "init", "--cone"], cwd=path)
                self._run(["sparse-checkout", "set", subpath.replace(os.sep, "/")], cwd=path)
            target = ref or self._default_branch(path)
            self._run(["checkout", "--quiet", target], cwd=path)
        except BaseException:
            checkout.cleanup()
            raise
        logger.debug("git_checkout_ready", repo=repo, ref=ref or None, subpath=subpath or None, path=str(path))
        return checkout

    def _default_branch(self, path: Path) -> str:
        proc = self._exec(["symbolic-ref", "refs/remotes/origin/HEAD"], cwd=path)
        branch = proc.stdout.strip().removeprefix("refs/remotes/origin/") if proc.returncode == 0 else ""
        return branch or "HEAD"

    def head_commit(self, checkout: Checkout) -> str:
        return self._run(["rev-parse", "HEAD"], cwd=checkout.path).strip()

    def is_tag(self, checkout: Checkout, ref: str) -> bool:
        proc = self._exec(["rev-parse", "-q", "--verify", f"refs/tags/{ref}"], cwd=checkout.path)
        return proc.returncode == 0

    def read_file_at_head(self, checkout: Checkout, path: str) -> tuple[str, bool]:
        proc = self._exec(["show", f"HEAD:{path}"], cwd=checkout.path)
        if proc.returncode != 0:
            return "", False
        return proc.stdout, True
