import sys
from pathlib import Path

import numpy as np
import pytest

from extensions import (
    BefungeExtensionError,
    ExtensionAPI,
    ExtensionLoader,
    HookRegistry,
    RuntimeServices,
    StepContext,
    load_runtime_services,
)
from interpreter import BefungeRuntimeError, Interpreter

HEATMAP = Path(__file__).resolve().parent.parent / "ext" / "heatmap.py"


def testEventsRunByPriority():
    registry = HookRegistry()
    calls = []
    registry.on_event("x", lambda: calls.append("low"), priority=0, ext_name="a")
    registry.on_event("x", lambda: calls.append("high"), priority=5, ext_name="b")
    registry.emit("x")
    registry.emit("unused")
    assert ["high", "low"] == calls
    assert registry.has_listeners("x")
    assert not registry.has_listeners("unused")


def testStepRuleCadence():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")
    seen = []

    @ext.every_n_steps(2)
    def _every_other(interpreter, ctx: StepContext):
        seen.append((ctx.step_index, ctx.symbol))

    Interpreter(services=services).interpret("12+.@")
    assert [(2, "2"), (4, ".")] == seen


def testStepRuleRejectsZero():
    with pytest.raises(BefungeExtensionError):
        HookRegistry().add_step_rule(name="bad", every_n=0, handler=lambda i, c: None, ext_name="t")


def testOutputAndLifecycleEvents():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")
    events = []
    ext.on_event("program_start", lambda interp, state: events.append("start"))
    ext.on_event("on_output", lambda interp, text: events.append(text))
    ext.on_event("program_end", lambda interp, state: events.append(("end", state.instruction_count)))

    assert "12" == Interpreter(services=services).interpret("1.2.@")
    assert ["start", "1", "2", ("end", 5)] == events


def testHookFailureIsWrapped():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")

    def _boom(interp, text):
        raise ValueError("nope")

    ext.on_event("on_output", _boom)
    interp = Interpreter(services=services)
    with pytest.raises(BefungeRuntimeError) as info:
        interp.interpret("1.@")
    assert "Extension hook 'on_output' failed: nope" == info.value.message
    assert not interp.running


def testStepRuleFailureIsWrapped():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")

    def _boom(interp, ctx):
        raise KeyError("k")

    ext.every_n_steps(3, _boom)
    interp = Interpreter(services=services)
    with pytest.raises(BefungeRuntimeError) as info:
        interp.interpret("123..@")
    assert info.value.message.startswith("Extension step rule failed")
    assert (2, 0) == info.value.position
    assert 3 == info.value.step_index


def testOnErrorEvent():
    services = RuntimeServices()
    ext = ExtensionAPI(services=services, ext_name="test")
    errors = []
    ext.on_event("on_error", lambda interp, error: errors.append(error))
    interp = Interpreter(services=services, stack_limit=1)
    with pytest.raises(BefungeRuntimeError):
        interp.interpret("12@")
    assert 1 == len(errors)


def testLoadExtensionFromFile(tmp_path):
    path = tmp_path / "counter.py"
    path.write_text(
        "BEFUNGE_EXTENSION_NAME = 'counter'\n"
        "COUNTS = []\n"
        "def befunge_register(ext):\n"
        "    ext.metadata(name='counter', version='1.2.3')\n"
        "    ext.every_n_steps(1, lambda interp, ctx: COUNTS.append(ctx.step_index))\n"
    )
    services = load_runtime_services([str(path)])
    assert "counter" == services.metadata[0].name
    assert "1.2.3" == services.metadata[0].version
    Interpreter(services=services).interpret("@")
    assert services.hook_registry.has_step_rules()


def testLoadExtensionWithoutRegister(tmp_path):
    path = tmp_path / "empty.py"
    path.write_text("X = 1\n")
    with pytest.raises(BefungeExtensionError):
        load_runtime_services([str(path)])


def testLoadExtensionApiMismatch(tmp_path):
    path = tmp_path / "future.py"
    path.write_text("BEFUNGE_EXTENSION_API_VERSION = 99\ndef befunge_register(ext): pass\n")
    with pytest.raises(BefungeExtensionError):
        load_runtime_services([str(path)])


def testMissingExtension(tmp_path):
    with pytest.raises(BefungeExtensionError):
        load_runtime_services([str(tmp_path / "nope.py")])


def testPointerFile(tmp_path):
    (tmp_path / "a.py").write_text("def befunge_register(ext): pass\n")
    pointer = tmp_path / "set.bfx"
    pointer.write_text("# extensions\na.py  # first\n\n" + str(HEATMAP) + "\na.py\n")
    paths = ExtensionLoader().expand([str(pointer), str(tmp_path / "a.py")])
    assert [(tmp_path / "a.py").resolve(), HEATMAP] == paths


def testMissingPointerFile(tmp_path):
    with pytest.raises(BefungeExtensionError) as info:
        ExtensionLoader().expand([str(tmp_path / "none.bfx")])
    assert "Cannot read .bfx file" in str(info.value)


def testUnknownEventIsRejected(tmp_path):
    path = tmp_path / "typo.py"
    path.write_text("def befunge_register(ext):\n    ext.on_event('on_ouput', print)\n")
    with pytest.raises(BefungeExtensionError) as info:
        load_runtime_services([str(path)])
    assert "unknown event 'on_ouput'" in str(info.value)


def testImportFailureIsWrapped(tmp_path):
    path = tmp_path / "broken.py"
    path.write_text("raise RuntimeError('bad')\n")
    with pytest.raises(BefungeExtensionError) as info:
        load_runtime_services([str(path)])
    assert str(info.value).endswith("failed to import: bad")
    assert str(tmp_path.resolve()) not in sys.path


def testModuleLoadedOnce():
    loader = ExtensionLoader()
    assert loader.import_module(HEATMAP) is loader.import_module(HEATMAP)


def testHeatmapExtension(capsys):
    services = load_runtime_services([str(HEATMAP)])
    interp = Interpreter(services=services)
    assert "13" == interp.interpret("94+.@ ")
    assert [[1, 1, 1, 1, 1, 0]] == interp.heatmap.tolist()
    err = capsys.readouterr().err
    assert "heatmap: 5 steps over 5 cells" in err
    assert "|@@@@@ |" in err


def testHeatmapRender():
    module = ExtensionLoader().import_module(HEATMAP)
    assert [" +@"] == module.render_heatmap(np.array([[0, 1, 2]]))
    assert ["  "] == module.render_heatmap(np.zeros((1, 2), dtype=np.int64))
