from __future__ import annotations
import enum
from dataclasses import dataclass
from typing import Dict, Optional


class OpKind(enum.Enum):
    ADD = "ADD"
    SUB = "SUB"
    MUL = "MUL"
    DIV = "DIV"
    MOD = "MOD"
    GREATER = "GREATER"
    NOT = "NOT"
    GO_WEST = "GO_WEST"
    GO_EAST = "GO_EAST"
    GO_NORTH = "GO_NORTH"
    GO_SOUTH = "GO_SOUTH"
    GO_RANDOM = "GO_RANDOM"
    IF_HORIZONTAL = "IF_HORIZONTAL"
    IF_VERTICAL = "IF_VERTICAL"
    STRING = "STRING"
    DUP = "DUP"
    SWAP = "SWAP"
    DISCARD = "DISCARD"
    OUTPUT_INT = "OUTPUT_INT"
    OUTPUT_CHAR = "OUTPUT_CHAR"
    BRIDGE = "BRIDGE"
    PUT = "PUT"
    GET = "GET"
    STOP = "STOP"
    NOP = "NOP"
    PUSH = "PUSH"


BINARY_OPS = frozenset({OpKind.ADD, OpKind.SUB, OpKind.MUL, OpKind.DIV, OpKind.MOD, OpKind.GREATER})

OPERATORS: Dict[str, OpKind] = {
    "+": OpKind.ADD,
    "-": OpKind.SUB,
    "*": OpKind.MUL,
    "/": OpKind.DIV,
    "%": OpKind.MOD,
    "`": OpKind.GREATER,
    "!": OpKind.NOT,
    "<": OpKind.GO_WEST,
    ">": OpKind.GO_EAST,
    "^": OpKind.GO_NORTH,
    "v": OpKind.GO_SOUTH,
    "?": OpKind.GO_RANDOM,
    "_": OpKind.IF_HORIZONTAL,
    "|": OpKind.IF_VERTICAL,
    '"': OpKind.STRING,
    ":": OpKind.DUP,
    "\\": OpKind.SWAP,
    "$": OpKind.DISCARD,
    ".": OpKind.OUTPUT_INT,
    ",": OpKind.OUTPUT_CHAR,
    "#": OpKind.BRIDGE,
    "p": OpKind.PUT,
    "g": OpKind.GET,
    "@": OpKind.STOP,
    " ": OpKind.NOP,
}

DIGITS = "0123456789"


@dataclass(frozen=True)
class Instruction:
    kind: OpKind
    symbol: str
    # Only PUSH carries an operand.
    operand: Optional[int] = None


_DECODED: Dict[int, Instruction] = {}


def decode(code: int) -> Instruction:
    """Map a grid cell to the instruction it executes.

    Operator characters come from ``OPERATORS``. Any other cell pushes a value:
    the digit's value for ``0``-``9`` and the cell's code point for everything
    else. Decoded instructions are immutable and cached per code point.
    """
    cached = _DECODED.get(code)
    if cached is not None:
        return cached
    symbol = chr(code)
    kind = OPERATORS.get(symbol)
    if kind is not None:
        instruction = Instruction(kind, symbol)
    elif symbol in DIGITS:
        instruction = Instruction(OpKind.PUSH, symbol, ord(symbol) - ord("0"))
    else:
        instruction = Instruction(OpKind.PUSH, symbol, code)
    _DECODED[code] = instruction
    return instruction
