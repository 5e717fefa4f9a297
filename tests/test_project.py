import io
import json
import os
import tempfile
import unittest
from pathlib import Path

from skv.dirhash import fingerprint
from skv.errors import DriftError, UsageError, ValidationError
from skv.git import Checkout
from skv.output import Output
from skv.project import SkillVendor
from skv.reconcile import Policy
from skv.vendor import VendorLimits

REPO_A = "https://example.com/acme/A.git"
COMMIT_1 = "a" * 40
COMMIT_2 = "b" * 40


class FakeProvider:
    def __init__(self, tmp: Path) -> None:
        self.tmp = tmp
        self.files: dict[str, dict[str, str]] = {}
        self.commits: dict[str, str] = {}
        self.calls: list[tuple[str, str, str]] = []

    def clone(self, repo: str, ref: str, subpath: str = "") -> Checkout:
        self.calls.append((repo, ref, subpath))
        path = Path(tempfile.mkdtemp(dir=self.tmp))
        for rel, content in self.files[repo].items():
            target = path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        return Checkout(path=path, repo=repo, ref=ref, subpath=subpath)

    def head_commit(self, checkout: Checkout) -> str:
        return self.commits[checkout.repo]

    def is_tag(self, checkout: Checkout, ref: str) -> bool:
        return False

    def read_file_at_head(self, checkout: Checkout, path: str) -> tuple[str, bool]:
        return "", False


class _ProjectCase(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        base = Path(self._td.name).resolve()
        self.root = base / "repo"
        self.root.mkdir()
        clones = base / "clones"
        clones.mkdir()
        self.provider = FakeProvider(clones)
        self.provider.files[REPO_A] = {"SKILL.md": "# A\n", "LICENSE": "MIT License\n"}
        self.provider.commits[REPO_A] = COMMIT_1
        self.out = io.StringIO()
        self.err = io.StringIO()
        self.vendor = SkillVendor(self.root, provider=self.provider, output=Output(out=self.out, err=self.err))

    def _write_manifest(self, skills: list[dict[str, str]], exclude: list[str] | None = None) -> None:
        payload: dict = {"schema_version": 1, "skills": skills}
        if exclude is not None:
            payload["tools"] = {"exclude": exclude}
        (self.root / "skv.json").write_text(json.dumps(payload), encoding="utf-8")

    def _local_b(self) -> None:
        src = self.root / "local-B"
        src.mkdir()
        (src / "SKILL.md").write_text("# B\n", encoding="utf-8")

    def _lock(self) -> dict:
        return json.loads((self.root / "skv.lock").read_text(encoding="utf-8"))


class TestInit(_ProjectCase):
    def test_init_creates_layout_once(self) -> None:
        self.vendor.init()

        self.assertTrue((self.root / ".skv" / "skills").is_dir())
        self.assertEqual(json.loads((self.root / "skv.json").read_text(encoding="utf-8"))["skills"], [])
        self.assertEqual(self._lock(), {"schema_version": 1, "skills": []})
        with self.assertRaisesRegex(ValidationError, "already exists"):
            self.vendor.init()


class TestSync(_ProjectCase):
    def test_remote_and_local_end_to_end(self) -> None:
        self._write_manifest(
            [
                {"name": "B", "local": "./local-B"},
                {"name": "A", "repo": REPO_A, "ref": "main"},
            ]
        )
        self._local_b()

        result = self.vendor.sync()

        self.assertTrue(result.lock_written)
        lock = self._lock()
        self.assertEqual([s["name"] for s in lock["skills"]], ["A", "B"])
        a, b = lock["skills"]
        self.assertEqual(a["commit"], COMMIT_1)
        self.assertEqual(a["ref"], "main")
        self.assertEqual(a["license"], {"spdx": "MIT", "path": "LICENSE"})
        self.assertEqual(a["checksum"], fingerprint(self.root / ".skv" / "skills" / "A"))
        self.assertEqual(b["local"], "./local-B")
        self.assertNotIn("commit", b)
        for name in ("A", "B"):
            for parts in ((".claude", "skills"), (".codex", "skills"), (".opencode", "skill")):
                link = self.root.joinpath(*parts, name)
                self.assertTrue(link.is_symlink(), link)
                self.assertTrue((link / "SKILL.md").is_file())
        self.assertIn("Synced 2 skill(s)", self.out.getvalue())

        self.provider.calls.clear()
        self.vendor.sync()
        self.assertEqual(self.provider.calls, [])
        self.assertEqual([s.state for s in self.vendor.status()], ["ok", "ok"])

    def test_drift_aborts_without_writing_lock(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}])
        self.vendor.sync()
        before = (self.root / "skv.lock").read_text(encoding="utf-8")
        (self.root / ".skv" / "skills" / "A" / "SKILL.md").write_text("# mine\n", encoding="utf-8")

        with self.assertRaises(DriftError):
            self.vendor.sync()

        self.assertEqual((self.root / "skv.lock").read_text(encoding="utf-8"), before)
        self.assertEqual(self.vendor.status()[0].state, "modified")

        self.vendor.sync(Policy.ACCEPT_LOCAL)
        self.assertNotEqual((self.root / "skv.lock").read_text(encoding="utf-8"), before)
        self.assertEqual(self._lock()["skills"][0]["commit"], COMMIT_1)
        self.vendor.sync(Policy.OFFLINE)
        self.vendor.verify()

    def test_offline_does_not_write_lock(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}])
        with self.assertRaisesRegex(ValidationError, "skv.lock not found"):
            self.vendor.sync(Policy.OFFLINE)
        self.vendor.sync()
        os.remove(self.root / "skv.lock")
        (self.root / "skv.lock").write_text(json.dumps({"schema_version": 1, "skills": []}), encoding="utf-8")

        with self.assertRaises(ValidationError):
            self.vendor.sync(Policy.OFFLINE)
        self.assertEqual(self._lock()["skills"], [])

    def test_oversized_checkout_leaves_lock_and_vendor_untouched(self) -> None:
        self.vendor.init()
        self._write_manifest([{"name": "A", "repo": REPO_A}])
        small = SkillVendor(
            self.root,
            provider=self.provider,
            output=Output(out=self.out, err=self.err),
            limits=VendorLimits(max_checkout_bytes=8),
        )

        with self.assertRaisesRegex(ValidationError, "checkout exceeds max size"):
            small.sync()

        self.assertEqual(self._lock()["skills"], [])
        self.assertFalse((self.root / ".skv" / "skills" / "A").exists())
        self.assertFalse((self.root / ".claude").exists())

    def test_excluded_tools_are_not_linked(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}], exclude=["codex"])
        self.vendor.sync()
        self.assertTrue((self.root / ".claude" / "skills" / "A").is_symlink())
        self.assertFalse((self.root / ".codex").exists())

    def test_invalid_manifest_has_no_side_effects(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}, {"name": "A", "local": "./x"}])
        with self.assertRaisesRegex(ValidationError, "duplicate skill name"):
            self.vendor.sync()
        self.assertEqual(self.provider.calls, [])
        self.assertFalse((self.root / "skv.lock").exists())


class TestAdd(_ProjectCase):
    def test_add_fetches_then_persists(self) -> None:
        self.vendor.init()

        locked = self.vendor.add(REPO_A + "#main")

        self.assertEqual(locked.name, "A")
        manifest = json.loads((self.root / "skv.json").read_text(encoding="utf-8"))
        self.assertEqual(manifest["skills"], [{"name": "A", "repo": REPO_A, "ref": "main"}])
        self.assertEqual(self._lock()["skills"][0]["commit"], COMMIT_1)
        self.assertTrue((self.root / ".claude" / "skills" / "A").is_symlink())
        self.assertIn("Vendored A (aaaaaaa)", self.out.getvalue())
        with self.assertRaisesRegex(ValidationError, "already exists"):
            self.vendor.add(REPO_A)

    def test_add_failure_leaves_manifest_untouched(self) -> None:
        self.vendor.init()
        self.provider.files[REPO_A] = {"README.md": "no marker\n"}

        with self.assertRaisesRegex(ValidationError, "specify a :path"):
            self.vendor.add(REPO_A)

        manifest = json.loads((self.root / "skv.json").read_text(encoding="utf-8"))
        self.assertEqual(manifest["skills"], [])

    def test_add_no_sync_probes_and_writes_manifest_only(self) -> None:
        self.vendor.init()
        self.provider.files[REPO_A] = {"skills/x/SKILL.md": "# x\n"}

        self.assertIsNone(self.vendor.add(REPO_A + ":skills/x", name="renamed", no_sync=True))

        manifest = json.loads((self.root / "skv.json").read_text(encoding="utf-8"))
        self.assertEqual(manifest["skills"], [{"name": "renamed", "repo": REPO_A, "path": "skills/x"}])
        self.assertEqual(self._lock()["skills"], [])
        self.assertFalse((self.root / ".skv" / "skills" / "renamed").exists())

    def test_add_requires_source(self) -> None:
        with self.assertRaises(UsageError):
            self.vendor.add("  ")


class TestUpdate(_ProjectCase):
    def test_update_all_skips_local_and_pinned(self) -> None:
        self._write_manifest(
            [
                {"name": "A", "repo": REPO_A, "ref": "main"},
                {"name": "P", "repo": REPO_A, "ref": COMMIT_1},
                {"name": "B", "local": "./local-B"},
            ]
        )
        self._local_b()
        self.vendor.sync()
        self.provider.commits[REPO_A] = COMMIT_2
        self.provider.calls.clear()

        updated = self.vendor.update()

        self.assertEqual(updated, ["A"])
        lock = {s["name"]: s for s in self._lock()["skills"]}
        self.assertEqual(lock["A"]["commit"], COMMIT_2)
        self.assertEqual(lock["P"]["commit"], COMMIT_1)
        self.assertEqual(sorted(lock), ["A", "B", "P"])

    def test_update_flag_rules(self) -> None:
        with self.assertRaises(UsageError):
            self.vendor.update(ref="v2")
        with self.assertRaises(UsageError):
            self.vendor.update("A", all_skills=True)
        with self.assertRaises(UsageError):
            self.vendor.update("A", all_skills=True, ref="v2")

    def test_update_requires_lock(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}])
        with self.assertRaisesRegex(ValidationError, "skv sync"):
            self.vendor.update("A")


class TestImportRemoveList(_ProjectCase):
    def test_import_then_remove(self) -> None:
        self.vendor.init()
        src = self.root / ".claude" / "skills" / "mine"
        src.mkdir(parents=True)
        (src / "SKILL.md").write_text("# mine\n", encoding="utf-8")

        locked = self.vendor.import_skill(".claude/skills/mine")

        vendor_dir = self.root / ".skv" / "skills" / "mine"
        self.assertEqual(locked.local, "./.skv/skills/mine")
        self.assertEqual(locked.checksum, fingerprint(vendor_dir))
        self.assertTrue(src.is_symlink())
        self.assertEqual([e.name for e in self.vendor.list_skills()], ["mine"])
        self.vendor.sync()
        self.vendor.verify()

        result = self.vendor.remove("mine")

        self.assertTrue(result.vendor_removed)
        self.assertEqual(len(result.links_removed), 3)
        self.assertFalse(vendor_dir.exists())
        self.assertFalse(os.path.lexists(src))
        self.assertEqual(self._lock()["skills"], [])
        with self.assertRaisesRegex(ValidationError, "not found"):
            self.vendor.remove("mine")

    def test_remove_leaves_directories_and_warns(self) -> None:
        self._write_manifest([{"name": "A", "repo": REPO_A}])
        self.vendor.sync()
        blocker = self.root / ".codex" / "skills" / "A"
        blocker.unlink()
        blocker.mkdir()

        result = self.vendor.remove("A")

        self.assertEqual(result.links_kept, (blocker,))
        self.assertTrue(blocker.is_dir())
        self.assertIn("warning: left directory in place at .codex/skills/A", self.err.getvalue())

    def test_verify_rejects_duplicate_lock_entries(self) -> None:
        entry = {"name": "A", "repo": REPO_A, "checksum": "x"}
        (self.root / "skv.lock").write_text(json.dumps({"schema_version": 1, "skills": [entry, entry]}), encoding="utf-8")
        with self.assertRaisesRegex(ValidationError, "duplicate lock entry"):
            self.vendor.verify()
