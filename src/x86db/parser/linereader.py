from __future__ import annotations

import re
from collections.abc import Iterator
from contextlib import contextmanager
from importlib.resources.abc import Traversable
from typing import IO, Self

from ..input import InputLocation

_re_comment = re.compile(r"#")


class DefLineReader:
    """
    Iterates through the lines of a block-structured definition file.

    A block starts with a header line and ends at the first empty line.
    Trailing whitespace and comments are removed from the lines; lines that
    contain only a comment are skipped, so they do not end a block.
    """

    @classmethod
    @contextmanager
    def open(cls, path: Traversable) -> Iterator[Self]:
        with path.open() as lines:
            yield cls(str(path), lines)

    def __init__(self, path: str, lines: IO[str]):
        self._path = path
        self._lines = lines
        self._last_line: str | None = None
        self._lineno = 0

    def __iter__(self) -> Iterator[InputLocation]:
        return self

    def __next__(self) -> InputLocation:
        while True:
            try:
                line = next(self._lines).rstrip("\n").rstrip()
            except StopIteration:
                self._last_line = None
                raise
            self._last_line = line
            self._lineno += 1

            match = _re_comment.search(line)
            if match is None:
                return InputLocation(self._path, self._lineno, line, (0, len(line)))
            end = match.start()
            while end > 0 and line[end - 1].isspace():
                end -= 1
            if end != 0:
                return InputLocation(self._path, self._lineno, line, (0, end))

    @property
    def location(self) -> InputLocation:
        """The location of the current line, or of the end of the file."""
        last_line = self._last_line
        if last_line is None:
            return InputLocation(self._path, self._lineno, "[end of file]", (0, 0))
        return InputLocation(self._path, self._lineno, last_line, (0, len(last_line)))

    def iter_block(self) -> Iterator[InputLocation]:
        """Iterate through the remaining lines of the current block."""
        for line in self:
            if not line:
                break
            yield line

    def skip_block(self) -> None:
        """Skip the remainder of the current block."""
        for _ in self.iter_block():
            pass
