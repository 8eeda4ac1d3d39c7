import builtins
import json
from pathlib import Path

from befunge import run_cli, run_repl
from interpreter import Interpreter

HEATMAP = str(Path(__file__).resolve().parent.parent / "ext" / "heatmap.py")


def testPlainSource(capsys):
    assert 0 == run_cli(["--plain", "-source", "94+.@"])
    assert "13" == capsys.readouterr().out


def testBannerAndTiming(tmp_path, capsys):
    program = tmp_path / "Program.txt"
    program.write_text('"!dlroW ,olleH",,,,,,,,,,,,,@\n')
    assert 0 == run_cli([str(program)])
    out = capsys.readouterr().out
    assert "Program: " in out
    assert "Hello, World!" in out
    assert "15 instructions executed in " in out


def testLoneSurrogateOutputIsReplaced(capsys):
    assert 0 == run_cli(["--plain", "-source", '"\ud7ff"1+,@'])
    assert "?" == capsys.readouterr().out


def testMalformedProgram(capsys):
    assert 1 == run_cli(["--plain", "-source", "abc\nab"])
    captured = capsys.readouterr()
    assert "" == captured.out
    assert "ProgramError: Invalid program" in captured.err


def testMissingFile(tmp_path, capsys):
    assert 1 == run_cli([str(tmp_path / "missing.bf")])
    assert "Failed to read" in capsys.readouterr().err


def testMaxSteps(capsys):
    assert 1 == run_cli(["--plain", "--max-steps", "10", "--traceback-json", "-source", "1."])
    captured = capsys.readouterr()
    assert "11111" == captured.out
    assert "StepLimitError: Step limit of 10 instructions exceeded at (0,0) '1'" in captured.err
    payload = json.loads(captured.err[captured.err.index("{"):])
    assert "StepLimitError" == payload["error"]["type"]
    assert 11 == payload["error"]["failing_step_index"]


def testMaxStepsMustBePositive(capsys):
    assert 1 == run_cli(["--max-steps", "0", "-source", "@"])
    assert "--max-steps must be positive" in capsys.readouterr().err


def testSourceRequiresProgram(capsys):
    assert 1 == run_cli(["-source"])
    assert "-source requires a program string" in capsys.readouterr().err


def testExtensionFlag(capsys):
    assert 0 == run_cli(["--plain", "-ext", HEATMAP, "-source", "94+.@"])
    captured = capsys.readouterr()
    assert "13" == captured.out
    assert "heatmap: 5 steps over 5 cells" in captured.err


def testBadExtensionFlag(tmp_path, capsys):
    assert 1 == run_cli(["-ext", str(tmp_path / "nope.py"), "-source", "@"])
    assert "ExtensionError: Extension not found" in capsys.readouterr().err


def testSeededRandomIsRepeatable(capsys):
    program = "?1.@\n2   \n.   \n@   "
    run_cli(["--plain", "--seed", "4", "-source", program])
    first = capsys.readouterr().out
    run_cli(["--plain", "--seed", "4", "-source", program])
    assert first == capsys.readouterr().out


def testRepl(monkeypatch, capsys):
    lines = ["94+.@", "", "", "12..@", ""]

    def fake_input(prompt=""):
        if not lines:
            raise EOFError
        return lines.pop(0)

    monkeypatch.setattr(builtins, "input", fake_input)
    assert 0 == run_repl(Interpreter(filename="<repl>"))
    out = capsys.readouterr().out
    assert "13" in out
    assert "[5 instructions]" in out
    assert "21" in out
