"""Befunge entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
import time
from typing import Callable, List, Optional, TextIO

from extensions import BefungeExtensionError, RuntimeServices, StepContext, build_default_services, load_runtime_services
from grid import MalformedProgramError
from interpreter import BefungeRuntimeError, CrashReport, Interpreter, StepLimitError


WHITE = "\x1b[97m"
CYAN = "\x1b[96m"
YELLOW = "\x1b[93m"
LIGHT_BLUE = "\x1b[38;2;153;221;255m"
RESET = "\033[0m"
SEPARATOR = "------------------------------------------"


def install_step_limit(services: RuntimeServices, max_steps: int) -> None:
    def _limit(_interpreter: Interpreter, ctx: StepContext) -> None:
        if ctx.step_index > max_steps:
            raise StepLimitError(
                f"Step limit of {max_steps} instructions exceeded",
                position=ctx.position,
                symbol=ctx.symbol,
            )

    services.hook_registry.add_step_rule(name="max_steps", every_n=1, handler=_limit, ext_name="cli")


def stream_program(
    interpreter: Interpreter,
    program: str,
    write: Callable[[str], None],
) -> float:
    """Run ``program`` writing each fragment as it is produced.

    Returns the elapsed wall time in seconds. The run is abandoned if the
    caller is interrupted mid-stream.
    """
    started = time.perf_counter()
    with interpreter.run(program) as stream:
        for fragment in stream:
            write(fragment)
    return time.perf_counter() - started


def _report_runtime_error(interpreter: Interpreter, error: BefungeRuntimeError, *, verbose: bool, as_json: bool, err: TextIO) -> None:
    formatter = CrashReport(interpreter)
    print(formatter.format_text(error, verbose=verbose), file=err)
    if as_json:
        print(formatter.to_json(error), file=err)


def run_program(
    interpreter: Interpreter,
    program: str,
    *,
    plain: bool,
    traceback_json: bool = False,
    out: Optional[TextIO] = None,
    err: Optional[TextIO] = None,
) -> int:
    out = out or sys.stdout
    err = err or sys.stderr

    encoding = getattr(out, "encoding", None) or "utf-8"

    def _write(text: str) -> None:
        # `,` can emit lone surrogates, which no console codec accepts.
        out.write(text.encode(encoding, "replace").decode(encoding))
        out.flush()

    if not plain:
        out.write(f"{WHITE}Program: \n{CYAN}{program}\n{SEPARATOR}\n\n{YELLOW}\n")

    try:
        elapsed = stream_program(interpreter, program, _write)
    except MalformedProgramError as error:
        print(f"ProgramError: {error}", file=err)
        return 1
    except BefungeRuntimeError as error:
        if not plain:
            out.write(RESET + "\n")
        _report_runtime_error(interpreter, error, verbose=interpreter.verbose, as_json=traceback_json, err=err)
        return 1
    except KeyboardInterrupt:
        if not plain:
            out.write(RESET + "\n")
        print(f"Interrupted after {interpreter.instruction_count} instructions", file=err)
        return 130

    if not plain:
        out.write(f"\n{CYAN}\n{SEPARATOR}\n\n{WHITE}\n")
        out.write(f"{interpreter.instruction_count} instructions executed in {elapsed:.6f}s{RESET}\n")
    return 0


def run_repl(interpreter: Interpreter) -> int:
    print(f"{LIGHT_BLUE}Befunge{RESET} REPL. Enter grid rows, blank line to run buffer.")
    buffer: List[str] = []

    while True:
        prompt = f"{LIGHT_BLUE}>>>{RESET} " if not buffer else f"{LIGHT_BLUE}..>{RESET} "
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        if line.strip() == "" and buffer:
            # Pad short rows so casual typing still forms a rectangle.
            width = max(len(row) for row in buffer)
            program = "\n".join(row.ljust(width) for row in buffer)
            buffer.clear()
            status = run_program(interpreter, program, plain=True)
            print()
            if status == 0:
                print(f"{LIGHT_BLUE}[{interpreter.instruction_count} instructions]{RESET}")
            continue
        if line.strip() == "":
            continue

        buffer.append(line)

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Befunge-93 interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record stack snapshots in crash reports")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON crash report")
    parser.add_argument("--plain", action="store_true", help="Write only program output, no banner or timing")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the '?' instruction")
    parser.add_argument("--max-steps", type=int, default=None, help="Abort after this many executed instructions")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], help="Extension .py file or .bfx list (repeatable)")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        services = load_runtime_services(args.extensions) if args.extensions else build_default_services()
    except BefungeExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1
    if args.max_steps is not None:
        if args.max_steps <= 0:
            print("--max-steps must be positive", file=sys.stderr)
            return 1
        install_step_limit(services, args.max_steps)

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        interpreter = Interpreter(filename="<repl>", verbose=args.verbose, seed=args.seed, services=services)
        return run_repl(interpreter)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(filename=filename, verbose=args.verbose, seed=args.seed, services=services)
    return run_program(interpreter, source_text, plain=args.plain, traceback_json=args.traceback_json)


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
