"""Befunge extension: per-cell execution heat map.

Counts how many times each grid cell is executed and, when the program
halts, writes a shaded map of the playfield to stderr. Hot cells are drawn
with denser glyphs. The counts stay available on the interpreter as
``interpreter.heatmap`` (a ``numpy`` array indexed ``[y, x]``) for tools that
want the raw numbers.
"""

from __future__ import annotations

import sys
from typing import Any, List

import numpy as np

from extensions import ExtensionAPI


BEFUNGE_EXTENSION_NAME = "heatmap"
BEFUNGE_EXTENSION_API_VERSION = 1

SHADES = " .:-=+*#%@"


def render_heatmap(counts: np.ndarray) -> List[str]:
    peak = int(counts.max()) if counts.size else 0
    if peak == 0:
        return [" " * counts.shape[1] for _ in range(counts.shape[0])]
    # Scale 1..peak onto the non-blank shades; unvisited cells stay blank.
    levels = np.where(
        counts > 0,
        1 + (counts.astype(np.float64) * (len(SHADES) - 2) / peak).astype(np.int64),
        0,
    )
    return ["".join(SHADES[int(level)] for level in row) for row in levels]


def _on_start(interpreter: Any, state: Any) -> None:
    interpreter.heatmap = np.zeros((state.grid.height, state.grid.width), dtype=np.int64)


def _before_instruction(interpreter: Any, state: Any, instruction: Any) -> None:
    interpreter.heatmap[state.position.y, state.position.x] += 1


def _on_end(interpreter: Any, state: Any) -> None:
    counts = interpreter.heatmap
    print(f"heatmap: {int(counts.sum())} steps over {int(np.count_nonzero(counts))} cells", file=sys.stderr)
    for row in render_heatmap(counts):
        print(f"|{row}|", file=sys.stderr)


def befunge_register(ext: ExtensionAPI) -> None:
    ext.metadata(name="heatmap", version="0.1.0")
    ext.on_event("program_start", _on_start)
    ext.on_event("before_instruction", _before_instruction)
    ext.on_event("program_end", _on_end)
