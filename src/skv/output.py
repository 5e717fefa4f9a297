from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import TextIO


@dataclass
class Output:
    """User-facing progress and results. Passed explicitly to whatever reports."""

    quiet: bool = False
    out: TextIO | None = None
    err: TextIO | None = None

    def _stdout(self) -> TextIO:
        return self.out if self.out is not None else sys.stdout

    def _stderr(self) -> TextIO:
        return self.err if self.err is not None else sys.stderr

    def info(self, message: str) -> None:
        if not self.quiet:
            print(message, file=self._stdout())

    def success(self, message: str) -> None:
        if not self.quiet:
            print(message, file=self._stdout())

    def warn(self, message: str) -> None:
        if not self.quiet:
            print(f"warning: {message}", file=self._stderr())

    def error(self, message: str) -> None:
        print(f"error: {message}", file=self._stderr())

    def emit(self, text: str) -> None:
        print(text, file=self._stdout())

    def table(self, rows: list[list[str]]) -> None:
        if not rows:
            return
        widths = [0] * len(rows[0])
        for r in rows:
            for i, c in enumerate(r):
                widths[i] = max(widths[i], len(c))
        for r in rows:
            line = "  ".join(c.ljust(widths[i]) for i, c in enumerate(r))
            self.emit(line.rstrip())
