import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from skv.dirhash import fingerprint
from skv.errors import HashTimeoutError
from skv.lockfile import LockEntry
from skv.manifest import SkillEntry
from skv.status import DriftDetector
from skv.vendor import VendorStore


class TestDriftDetector(unittest.TestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.addCleanup(self._td.cleanup)
        self.store = VendorStore(Path(self._td.name) / ".skv" / "skills")
        self.detector = DriftDetector(self.store)
        vendor = self.store.path_for("foo")
        vendor.mkdir(parents=True)
        (vendor / "SKILL.md").write_text("# foo\n", encoding="utf-8")
        self.checksum = fingerprint(vendor)
        self.entry = SkillEntry(name="foo", repo="https://example.com/foo.git", ref="v1")

    def _locked(self, **kwargs) -> LockEntry:
        fields = {"name": "foo", "repo": self.entry.repo, "ref": "v1", "commit": "abcdef0123" + "0" * 30, "checksum": self.checksum}
        fields.update(kwargs)
        return LockEntry(**fields)

    def test_ok_remote(self) -> None:
        status = self.detector.classify(self.entry, self._locked())
        self.assertEqual((status.state, status.detail), ("ok", "v1 @ abcdef0"))

    def test_ok_default_ref_and_local(self) -> None:
        status = self.detector.classify(self.entry, self._locked(ref=""))
        self.assertEqual(status.detail, "default @ abcdef0")
        status = self.detector.classify(SkillEntry(name="foo", local="./foo"), self._locked(repo="", ref="", commit="", local="./foo"))
        self.assertEqual((status.state, status.detail), ("ok", "local"))

    def test_missing(self) -> None:
        self.assertEqual(self.detector.classify(self.entry, None).state, "missing")
        self.store.remove("foo")
        status = self.detector.classify(self.entry, self._locked())
        self.assertEqual((status.state, status.detail), ("missing", "vendor directory missing"))

    def test_modified(self) -> None:
        (self.store.path_for("foo") / "SKILL.md").write_text("# changed\n", encoding="utf-8")
        self.assertEqual(self.detector.classify(self.entry, self._locked()).state, "modified")

    def test_error_carries_cause(self) -> None:
        with patch("skv.status.fingerprint", side_effect=HashTimeoutError("hashing timed out")):
            status = self.detector.classify(self.entry, self._locked())
        self.assertEqual(status.state, "error")
        self.assertIn("timed out", status.detail)

    def test_detect_keeps_manifest_order(self) -> None:
        other = SkillEntry(name="bar", local="./bar")
        statuses = self.detector.detect([other, self.entry], {"foo": self._locked()})
        self.assertEqual([s.name for s in statuses], ["bar", "foo"])
        self.assertEqual([s.state for s in statuses], ["missing", "ok"])
