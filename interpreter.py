from __future__ import annotations
import enum
import json
import random
import weakref
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from grid import BefungeError, Grid, to_code_point
from instructions import BINARY_OPS, Instruction, OpKind, decode


DEFAULT_STACK_LIMIT = 1 << 20
DEFAULT_HISTORY = 64

_I32_SPAN = 1 << 32
_I32_MIN = -(1 << 31)


class BefungeRuntimeError(BefungeError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        position: Optional[Tuple[int, int]] = None,
        symbol: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.position = position
        self.symbol = symbol
        self.step_index: Optional[int] = None


class InterpreterBusyError(BefungeRuntimeError):
    """Raised when a run is started while another is still in flight."""


class StackOverflowError(BefungeRuntimeError):
    pass


class StepLimitError(BefungeRuntimeError):
    pass


def _to_i32(value: int) -> int:
    return ((value - _I32_MIN) % _I32_SPAN) + _I32_MIN


def _trunc_div(b: int, a: int) -> int:
    # Integer division truncating toward zero; division by zero yields 0.
    if a == 0:
        return 0
    q = abs(b) // abs(a)
    return q if (b < 0) == (a < 0) else -q


def _trunc_mod(b: int, a: int) -> int:
    if a == 0:
        return 0
    return b - a * _trunc_div(b, a)


class Stack:
    """LIFO integer store. Popping an empty stack yields 0."""

    def __init__(self, max_depth: int = DEFAULT_STACK_LIMIT) -> None:
        self.max_depth = max_depth
        self._items: List[int] = []

    def push(self, value: int) -> None:
        if len(self._items) >= self.max_depth:
            raise StackOverflowError(f"Stack overflow: depth limit {self.max_depth} reached")
        self._items.append(_to_i32(value))

    def pop(self) -> int:
        if self._items:
            return self._items.pop()
        return 0

    def peek(self) -> int:
        return self._items[-1] if self._items else 0

    def size(self) -> int:
        return len(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def snapshot(self) -> List[int]:
        return list(self._items)

    def __repr__(self) -> str:
        return f"Stack{self._items}"


class Direction(enum.Enum):
    EAST = ">"
    WEST = "<"
    NORTH = "^"
    SOUTH = "v"


_DELTAS: Dict[Direction, Tuple[int, int]] = {
    Direction.EAST: (1, 0),
    Direction.WEST: (-1, 0),
    Direction.NORTH: (0, -1),
    Direction.SOUTH: (0, 1),
}

RANDOM_DIRECTIONS = (Direction.WEST, Direction.EAST, Direction.NORTH, Direction.SOUTH)


@dataclass
class Position:
    x: int = 0
    y: int = 0

    def as_tuple(self) -> Tuple[int, int]:
        return (self.x, self.y)

    def __str__(self) -> str:
        return f"({self.x},{self.y})"


@dataclass(eq=False)
class ExecutionState:
    grid: Grid
    stack: Stack = field(default_factory=Stack)
    position: Position = field(default_factory=Position)
    direction: Direction = Direction.EAST
    rng: random.Random = field(default_factory=random.Random)
    instruction_count: int = 0
    halted: bool = False

    @property
    def current_code(self) -> int:
        return int(self.grid.cells[self.position.y, self.position.x])

    @property
    def current_symbol(self) -> str:
        return self.grid.char_at(self.position.x, self.position.y)

    def advance(self) -> None:
        """Move one cell along the current direction, wrapping at the edges."""
        delta = _DELTAS.get(self.direction)
        if delta is None:
            raise BefungeRuntimeError(
                f"Invalid direction: {self.direction!r}", position=self.position.as_tuple()
            )
        pos = self.position
        pos.x += delta[0]
        pos.y += delta[1]
        width, height = self.grid.width, self.grid.height
        while True:
            if pos.x >= width:
                pos.x = 0
            elif pos.x < 0:
                pos.x = width - 1
            elif pos.y >= height:
                pos.y = 0
            elif pos.y < 0:
                pos.y = height - 1
            else:
                break

    def describe(self) -> str:
        stopped = "[STOPPED] " if self.halted else ""
        return (
            f"{stopped}{self.current_symbol} {self.direction.value} {self.position} "
            f"[{self.grid.width}, {self.grid.height}] - M{self.stack.size()}"
        )


@dataclass
class StateEntry:
    step_index: int
    position: Tuple[int, int]
    direction: str
    symbol: str
    output: Optional[str]
    stack_snapshot: Optional[List[int]]


class StateLogger:
    """Keeps the most recent executed steps for crash reports."""

    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)

    def record(
        self,
        *,
        step_index: int,
        position: Tuple[int, int],
        direction: Direction,
        symbol: str,
        output: Optional[str],
        stack: Stack,
    ) -> StateEntry:
        entry = StateEntry(
            step_index=step_index,
            position=position,
            direction=direction.value,
            symbol=symbol,
            output=output,
            stack_snapshot=stack.snapshot() if self.verbose else None,
        )
        self.entries.append(entry)
        return entry

    def clear(self) -> None:
        self.entries.clear()


class OutputStream:
    """Lazy, single-pass sequence of output fragments for one run.

    Each ``next()`` resumes the engine and runs it until an instruction
    produces output or the program halts. Closing the stream (explicitly,
    through ``with`` or by dropping it) abandons the run and frees the
    interpreter for the next one.
    """

    def __init__(self, interpreter: "Interpreter", state: ExecutionState) -> None:
        self._interpreter = interpreter
        self.state = state
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> "OutputStream":
        return self

    def __next__(self) -> str:
        if self._closed:
            raise StopIteration
        interpreter = self._interpreter
        try:
            output = interpreter._step_until_output(self.state)
        except BefungeRuntimeError as error:
            interpreter._attach_context(error, self.state)
            self.close()
            interpreter._emit_event("on_error", interpreter, error)
            raise
        except Exception as exc:
            wrapped = BefungeRuntimeError(f"Internal interpreter error: {exc}")
            interpreter._attach_context(wrapped, self.state)
            self.close()
            interpreter._emit_event("on_error", interpreter, wrapped)
            raise wrapped from exc
        if output is None:
            self.close()
            interpreter._emit_event("program_end", interpreter, self.state)
            raise StopIteration
        return output

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._interpreter._release(self)

    def __repr__(self) -> str:
        status = "closed" if self._closed else "open"
        return f"<OutputStream {status} {self.state.describe()}>"

    def __enter__(self) -> "OutputStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __del__(self) -> None:
        if getattr(self, "_interpreter", None) is not None:
            self.close()


class Interpreter:
    def __init__(
        self,
        *,
        filename: str = "<string>",
        verbose: bool = False,
        seed: Optional[int] = None,
        services: Optional[RuntimeServices] = None,
        stack_limit: int = DEFAULT_STACK_LIMIT,
        history: int = DEFAULT_HISTORY,
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.seed = seed
        self.services = services or build_default_services()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.stack_limit = stack_limit
        self.logger = StateLogger(verbose=verbose, history=history)
        self.instruction_count = 0
        self.halted = False
        # Grid of the most recently released run, including its self-modifications.
        self.final_grid: Optional[Grid] = None
        # Weak so that dropping the stream abandons the run.
        self._active: Optional["weakref.ReferenceType[OutputStream]"] = None

    def _live_stream(self) -> Optional[OutputStream]:
        stream = self._active() if self._active is not None else None
        if stream is None:
            self._active = None
        return stream

    @property
    def running(self) -> bool:
        return self._live_stream() is not None

    @property
    def state(self) -> Optional[ExecutionState]:
        stream = self._live_stream()
        return stream.state if stream is not None else None

    def run(self, program: str) -> OutputStream:
        if self._live_stream() is not None:
            raise InterpreterBusyError("Currently in process of interpreting a program")
        grid = Grid.from_text(program, self.filename)
        state = ExecutionState(
            grid=grid,
            stack=Stack(self.stack_limit),
            rng=random.Random(self.seed),
        )
        self.instruction_count = 0
        self.halted = False
        self.logger.clear()
        stream = OutputStream(self, state)
        self._active = weakref.ref(stream)
        try:
            self._emit_event("program_start", self, state)
        except BaseException:
            stream.close()
            raise
        return stream

    def interpret(self, program: str) -> str:
        with self.run(program) as stream:
            return "".join(stream)

    def _release(self, stream: OutputStream) -> None:
        current = self._active() if self._active is not None else None
        if current is None or current is stream:
            self._active = None
            self.halted = stream.state.halted
            self.final_grid = stream.state.grid

    def _step_until_output(self, state: ExecutionState) -> Optional[str]:
        step = self.step
        while not state.halted:
            output = step(state)
            if output is not None:
                return output
        return None

    def step(self, state: ExecutionState) -> Optional[str]:
        """Fetch, decode and execute one instruction, then advance."""
        position = state.position.as_tuple()
        instruction = decode(state.current_code)
        if self.hook_registry.has_listeners("before_instruction"):
            self._emit_event("before_instruction", self, state, instruction)

        output = self.execute(state, instruction)

        state.instruction_count += 1
        self.instruction_count = state.instruction_count
        self._log_step(state, position, instruction, output)

        if state.halted:
            return None
        state.advance()
        if output is not None and self.hook_registry.has_listeners("on_output"):
            self._emit_event("on_output", self, output)
        return output

    def execute(self, state: ExecutionState, instruction: Instruction) -> Optional[str]:
        kind = instruction.kind
        stack = state.stack

        if kind is OpKind.PUSH:
            stack.push(instruction.operand)
        elif kind is OpKind.NOP:
            pass
        elif kind in BINARY_OPS:
            a = stack.pop()
            b = stack.pop()
            stack.push(self._binary(kind, a, b))
        elif kind is OpKind.NOT:
            stack.push(1 if stack.pop() == 0 else 0)
        elif kind is OpKind.GO_EAST:
            state.direction = Direction.EAST
        elif kind is OpKind.GO_WEST:
            state.direction = Direction.WEST
        elif kind is OpKind.GO_NORTH:
            state.direction = Direction.NORTH
        elif kind is OpKind.GO_SOUTH:
            state.direction = Direction.SOUTH
        elif kind is OpKind.GO_RANDOM:
            state.direction = state.rng.choice(RANDOM_DIRECTIONS)
        elif kind is OpKind.IF_HORIZONTAL:
            state.direction = Direction.EAST if stack.pop() == 0 else Direction.WEST
        elif kind is OpKind.IF_VERTICAL:
            state.direction = Direction.SOUTH if stack.pop() == 0 else Direction.NORTH
        elif kind is OpKind.STRING:
            state.advance()
            while state.current_symbol != '"':
                stack.push(state.current_code)
                state.advance()
        elif kind is OpKind.DUP:
            value = stack.pop()
            stack.push(value)
            stack.push(value)
        elif kind is OpKind.SWAP:
            a = stack.pop()
            b = stack.pop()
            stack.push(a)
            stack.push(b)
        elif kind is OpKind.DISCARD:
            stack.pop()
        elif kind is OpKind.OUTPUT_INT:
            return str(stack.pop())
        elif kind is OpKind.OUTPUT_CHAR:
            return chr(to_code_point(stack.pop()))
        elif kind is OpKind.BRIDGE:
            state.advance()
        elif kind is OpKind.PUT:
            y = stack.pop()
            x = stack.pop()
            value = stack.pop()
            state.grid.write(x, y, value)
        elif kind is OpKind.GET:
            y = stack.pop()
            x = stack.pop()
            stack.push(state.grid.read(x, y))
        elif kind is OpKind.STOP:
            state.halted = True
        else:
            raise BefungeRuntimeError(
                f"Unknown instruction kind {kind}", position=state.position.as_tuple(), symbol=instruction.symbol
            )
        return None

    def _binary(self, kind: OpKind, a: int, b: int) -> int:
        if kind is OpKind.ADD:
            return b + a
        if kind is OpKind.SUB:
            return b - a
        if kind is OpKind.MUL:
            return b * a
        if kind is OpKind.DIV:
            return _trunc_div(b, a)
        if kind is OpKind.MOD:
            return _trunc_mod(b, a)
        return 1 if b > a else 0

    def _attach_context(self, error: BefungeRuntimeError, state: ExecutionState) -> None:
        if error.step_index is None:
            error.step_index = state.instruction_count
        if error.position is None:
            error.position = state.position.as_tuple()
        if error.symbol is None:
            error.symbol = state.current_symbol

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except BefungeRuntimeError:
            raise
        except Exception as exc:
            raise BefungeRuntimeError(f"Extension hook '{event}' failed: {exc}")

    def _log_step(
        self,
        state: ExecutionState,
        position: Tuple[int, int],
        instruction: Instruction,
        output: Optional[str],
    ) -> None:
        entry = self.logger.record(
            step_index=state.instruction_count,
            position=position,
            direction=state.direction,
            symbol=instruction.symbol,
            output=output,
            stack=state.stack,
        )

        # Run extension step rules (every N steps) after recording.
        if not self.hook_registry.has_step_rules():
            return
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, symbol=entry.symbol, position=position, output=output),
            )
        except BefungeRuntimeError:
            raise
        except Exception as exc:
            raise BefungeRuntimeError(
                f"Extension step rule failed: {exc}",
                position=position,
                symbol=instruction.symbol,
            )


class CrashReport:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def format_text(self, error: BefungeRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent step last):"]
        for entry in self.interpreter.logger.entries:
            x, y = entry.position
            lines.append(f"  Step {entry.step_index} at ({x},{y}) {entry.symbol!r} heading {entry.direction}")
            if verbose and entry.stack_snapshot is not None:
                lines.append(f"    Stack: {entry.stack_snapshot}")
        grid = self.interpreter.final_grid
        if verbose and grid is not None:
            lines.append("  Grid:")
            lines.extend(f"    |{row}|" for row in grid.rows())
        where = ""
        if error.position is not None:
            where = f" at ({error.position[0]},{error.position[1]})"
            if error.symbol is not None:
                where += f" {error.symbol!r}"
        lines.append(f"{error.__class__.__name__}: {error.message}{where}")
        return "\n".join(lines)

    def to_json(self, error: BefungeRuntimeError) -> str:
        steps: List[Dict[str, Any]] = []
        for entry in self.interpreter.logger.entries:
            item: Dict[str, Any] = {
                "step_index": entry.step_index,
                "position": list(entry.position),
                "direction": entry.direction,
                "symbol": entry.symbol,
            }
            if entry.output is not None:
                item["output"] = entry.output
            if entry.stack_snapshot is not None:
                item["stack"] = entry.stack_snapshot
            steps.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
                "position": list(error.position) if error.position is not None else None,
                "symbol": error.symbol,
            },
            "steps": steps,
        }
        return json.dumps(data, indent=2)
