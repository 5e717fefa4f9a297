from __future__ import annotations

import argparse
import json
import textwrap
from dataclasses import asdict, replace
from pathlib import Path

from ._version import __version__
from .config import Config, apply_env, config_path, load_config, save_config
from .errors import SkvError, UsageError
from .git import GitSourceProvider
from .lockfile import LockEntry
from .log import configure_logging
from .manifest import MANIFEST_FILENAME
from .output import Output
from .project import SkillVendor
from .reconcile import Policy
from .status import short_commit


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    cfg = apply_env(base)
    git_bin = getattr(args, "git_bin", None) or cfg.git_bin
    git_timeout_s = getattr(args, "git_timeout_s", None) or cfg.git_timeout_s
    hash_timeout_s = getattr(args, "hash_timeout_s", None) or cfg.hash_timeout_s
    return replace(cfg, git_bin=git_bin, git_timeout_s=git_timeout_s, hash_timeout_s=hash_timeout_s)


def _positive_float(value: str) -> float:
    try:
        parsed = float(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}") from e
    if parsed <= 0:
        raise argparse.ArgumentTypeError("must be greater than zero")
    return parsed


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="skv",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=f"Vendor skills into a repo and keep {MANIFEST_FILENAME} and skv.lock in sync.",
        epilog=textwrap.dedent(
            """\
            Examples:
              skv init
              skv add https://github.com/acme/skill-pack#v1.2.3:skills/skill-foo
              skv sync
              skv verify

            Environment variables:
              SKV_CONFIG_PATH, SKV_GIT_BIN, SKV_GIT_TIMEOUT_S, SKV_HASH_TIMEOUT_S
            """
        ),
    )
    p.add_argument("-q", "--quiet", action="store_true", help="Suppress non-error output")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More log output (repeatable)")
    p.add_argument("--root", default=".", help="Repository root (default: .)")
    p.add_argument("--git-bin", help="git executable")
    p.add_argument("--git-timeout-s", type=_positive_float, help="Timeout for each git command in seconds")
    p.add_argument("--hash-timeout-s", type=_positive_float, help="Timeout for hashing one skill in seconds")
    p.add_argument("--version", action="version", version=f"skv {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--git-bin", dest="set_git_bin")
    cfg_set.add_argument("--git-timeout-s", dest="set_git_timeout_s", type=_positive_float)
    cfg_set.add_argument("--hash-timeout-s", dest="set_hash_timeout_s", type=_positive_float)

    sub.add_parser("init", help="Create skv.json, skv.lock and .skv/skills")

    add = sub.add_parser("add", help="Add a skill and fetch it immediately")
    add.add_argument("source", help="<repo>[#ref][:path]")
    add.add_argument("--name", help="Override skill name")
    add.add_argument("--no-sync", action="store_true", help=f"Only add to {MANIFEST_FILENAME}, don't fetch")

    sync = sub.add_parser("sync", help="Vendor skills, update the lock, and link into tools")
    sync.add_argument("--offline", action="store_true", help="Verify and link using existing lock/vendor data")
    sync.add_argument("--refresh", action="store_true", help="Re-fetch remote skills and rewrite checksums")
    sync.add_argument("--accept-local", action="store_true", help="Trust vendored content and rewrite checksums")
    sync.add_argument("--force", action="store_true", help="Allow a tag ref to move")

    update = sub.add_parser("update", help="Update floating refs and rewrite skv.lock")
    update.add_argument("name", nargs="?", default=None)
    update.add_argument("--all", dest="all_skills", action="store_true", help="Update all non-commit refs")
    update.add_argument("--ref", default="", help="Temporary ref for this update")
    update.add_argument("--force", action="store_true", help="Allow a tag ref to move")

    sub.add_parser("verify", help="Check vendored content against skv.lock")

    imp = sub.add_parser("import", help="Move an existing skill directory under .skv/skills")
    imp.add_argument("path", help="<agentDir>/<skill>")

    lst = sub.add_parser("list", help="List vendored skills")
    lst_fmt = lst.add_mutually_exclusive_group()
    lst_fmt.add_argument("--json", action="store_true", help="Output JSON")
    lst_fmt.add_argument("--names", action="store_true", help="Only print skill names")

    rm = sub.add_parser("remove", aliases=["rm"], help="Remove a skill, its vendored content and links")
    rm.add_argument("name")

    status = sub.add_parser("status", help="Show drift between skv.lock and vendored content")
    status.add_argument("--json", action="store_true", help="Output JSON")

    return p


def _vendor_from_args(args: argparse.Namespace) -> SkillVendor:
    cfg = _merge_cfg(load_config(), args)
    provider = GitSourceProvider(git_bin=cfg.git_bin, timeout_s=cfg.git_timeout_s)
    return SkillVendor(
        Path(args.root),
        provider=provider,
        output=Output(quiet=args.quiet),
        hash_timeout_s=cfg.hash_timeout_s,
    )


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        print(json.dumps(asdict(load_config()), indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            git_bin=args.set_git_bin or cfg.git_bin,
            git_timeout_s=args.set_git_timeout_s if args.set_git_timeout_s is not None else cfg.git_timeout_s,
            hash_timeout_s=args.set_hash_timeout_s if args.set_hash_timeout_s is not None else cfg.hash_timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def _display_source(entry: LockEntry) -> tuple[str, str, str]:
    if entry.is_local:
        return entry.local, "(local)", "-"
    source = entry.repo.removeprefix("https://").removeprefix("http://").removesuffix(".git")
    if entry.path:
        source += ":" + entry.path
    return source, entry.ref or "(default)", short_commit(entry.commit)


def cmd_list(args: argparse.Namespace) -> int:
    vendor = _vendor_from_args(args)
    entries = vendor.list_skills()
    out = vendor.output

    if args.json:
        out.emit(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0
    if not entries:
        out.info("No skills installed")
        return 0
    if args.names:
        for entry in entries:
            out.emit(entry.name)
        return 0

    rows = [["NAME", "SOURCE", "REF", "COMMIT"]]
    for entry in entries:
        rows.append([entry.name, *_display_source(entry)])
    out.table(rows)
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    vendor = _vendor_from_args(args)
    statuses = vendor.status()
    out = vendor.output

    if args.json:
        out.emit(json.dumps([s.to_dict() for s in statuses], indent=2))
        return 0
    if not statuses:
        out.info(f"No skills defined in {MANIFEST_FILENAME}")
        return 0

    rows = [["NAME", "STATE", "DETAIL"]]
    for s in statuses:
        rows.append([s.name, s.state, s.detail])
    out.table(rows)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose, quiet=args.quiet)
    out = Output(quiet=args.quiet)
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "init":
            _vendor_from_args(args).init()
            return 0
        if args.cmd == "add":
            _vendor_from_args(args).add(args.source, name=args.name, no_sync=args.no_sync)
            return 0
        if args.cmd == "sync":
            policy = Policy.from_flags(offline=args.offline, refresh=args.refresh, accept_local=args.accept_local)
            _vendor_from_args(args).sync(policy, force=args.force)
            return 0
        if args.cmd == "update":
            _vendor_from_args(args).update(args.name, all_skills=args.all_skills, ref=args.ref, force=args.force)
            return 0
        if args.cmd == "verify":
            _vendor_from_args(args).verify()
            return 0
        if args.cmd == "import":
            _vendor_from_args(args).import_skill(args.path)
            return 0
        if args.cmd == "list":
            return cmd_list(args)
        if args.cmd in ("remove", "rm"):
            _vendor_from_args(args).remove(args.name)
            return 0
        if args.cmd == "status":
            return cmd_status(args)
        raise AssertionError("unreachable")
    except UsageError as e:
        out.error(str(e))
        return 2
    except (SkvError, OSError) as e:
        out.error(str(e))
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
