import tempfile
import unittest
from pathlib import Path

from skv.errors import ProviderError
from skv.git import Checkout
from skv.license import detect_spdx, probe_license
from skv.lockfile import License


class _FailingProvider:
    def read_file_at_head(self, checkout: Checkout, path: str) -> tuple[str, bool]:
        raise ProviderError("git show failed")


class TestLicenseProbe(unittest.TestCase):
    def test_detect_spdx(self) -> None:
        self.assertEqual(detect_spdx("The MIT License (MIT)\n\nMIT License"), "MIT")
        self.assertEqual(detect_spdx("Apache License\nVersion 2.0"), "Apache-2.0")
        self.assertEqual(detect_spdx("BSD 3-Clause License"), "BSD-3-Clause")
        self.assertEqual(detect_spdx("All rights reserved"), "")

    def test_skill_dir_wins_over_repo_dir(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = Path(td)
            skill = repo / "skills" / "foo"
            skill.mkdir(parents=True)
            (repo / "LICENSE").write_text("MIT License\n", encoding="utf-8")
            (skill / "NOTICE").write_text("Apache License\n", encoding="utf-8")

            self.assertEqual(probe_license(skill, repo), License(spdx="Apache-2.0", path="skills/foo/NOTICE"))

    def test_candidate_order(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            repo = Path(td)
            (repo / "COPYING").write_text("BSD 3-Clause\n", encoding="utf-8")
            (repo / "LICENSE.txt").write_text("custom terms\n", encoding="utf-8")

            self.assertEqual(probe_license(repo, repo), License(spdx="", path="LICENSE.txt"))

    def test_nothing_found(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertIsNone(probe_license(Path(td), Path(td)))

    def test_provider_failure_is_not_fatal(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            checkout = Checkout(path=Path(td), repo="https://example.com/x.git")
            self.assertIsNone(probe_license(Path(td), Path(td), provider=_FailingProvider(), checkout=checkout))
