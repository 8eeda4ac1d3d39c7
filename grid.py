from __future__ import annotations
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from numpy.typing import NDArray


class BefungeError(Exception):
    """Base class for interpreter errors."""


class MalformedProgramError(BefungeError):
    """Raised when program text cannot be laid out as a rectangular grid."""


# Cells hold Unicode code points. Values outside 0..0x10FFFF are folded into range.
CODE_POINT_LIMIT = 0x110000


def to_code_point(value: int) -> int:
    return value % CODE_POINT_LIMIT


@dataclass
class SourceLine:
    text: str
    line: int


class ProgramScanner:
    """Splits raw program text into grid rows.

    Line terminators are ``\\r\\n``, ``\\n`` or ``\\r``. A terminator at the very
    end of the text does not start another row.
    """

    def __init__(self, text: str) -> None:
        self.text = text
        self.index = 0
        self.line = 1

    def scan(self) -> List[SourceLine]:
        rows: List[SourceLine] = []
        rows_append = rows.append
        text = self.text
        n = len(text)
        start = 0

        while self.index < n:
            ch = text[self.index]
            if ch == "\r" or ch == "\n":
                rows_append(SourceLine(text[start:self.index], self.line))
                if ch == "\r" and self.index + 1 < n and text[self.index + 1] == "\n":
                    self.index += 1
                self.index += 1
                self.line += 1
                start = self.index
                continue
            self.index += 1
        if start < n:
            rows_append(SourceLine(text[start:], self.line))
        return rows


@dataclass(eq=False)
class Grid:
    width: int
    height: int
    cells: NDArray[np.uint32]

    @classmethod
    def from_text(cls, text: str, filename: str = "<string>") -> "Grid":
        rows = ProgramScanner(text).scan()
        if not rows:
            raise MalformedProgramError(f"Invalid program: {filename} is empty")
        width = len(rows[0].text)
        if width == 0:
            raise MalformedProgramError(
                f"Invalid program: {filename}:{rows[0].line} starts with an empty line"
            )
        for row in rows:
            if len(row.text) != width:
                raise MalformedProgramError(
                    f"Invalid program: program is not rectangular and is not of size {width} "
                    f"at {filename}:{row.line}. Line of instructions: {row.text}"
                )

        cells = np.empty((len(rows), width), dtype=np.uint32)
        for y, row in enumerate(rows):
            cells[y, :] = [ord(ch) for ch in row.text]
        return cls(width=width, height=len(rows), cells=cells)

    def wrap(self, x: int, y: int) -> Tuple[int, int]:
        # Python's % is floor modulo, so negative coordinates land in range too.
        return x % self.width, y % self.height

    def read(self, x: int, y: int) -> int:
        x, y = self.wrap(x, y)
        return int(self.cells[y, x])

    def write(self, x: int, y: int, value: int) -> None:
        x, y = self.wrap(x, y)
        self.cells[y, x] = to_code_point(value)

    def char_at(self, x: int, y: int) -> str:
        return chr(self.read(x, y))

    def rows(self) -> List[str]:
        return ["".join(chr(int(code)) for code in row) for row in self.cells]
