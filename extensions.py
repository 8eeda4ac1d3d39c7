from __future__ import annotations

import importlib.util
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple


EXTENSION_API_VERSION = 1

HOOK_EVENTS = frozenset({"program_start", "before_instruction", "on_output", "program_end", "on_error"})


class BefungeExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    symbol: str
    position: Tuple[int, int]
    output: Optional[str]


@dataclass
class HookRegistry:
    # event -> list[(priority, handler, ext_name)]
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # list[(every_n, handler, ext_name, name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        self._events.setdefault(event, []).append((priority, handler, ext_name))
        self._events[event].sort(key=lambda t: t[0], reverse=True)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def has_listeners(self, event: str) -> bool:
        return bool(self._events.get(event))

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise BefungeExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def has_step_rules(self) -> bool:
        return bool(self._step_rules)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for every_n, handler, _ext, _name in self._step_rules:
            if ctx.step_index % every_n == 0:
                handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)


class ExtensionAPI:
    """Handle passed to an extension's ``befunge_register(ext)``.

    ``on_event`` and ``every_n_steps`` take the handler directly or work as
    decorators. Event names are checked against ``HOOK_EVENTS`` so a typo
    fails at load time instead of never firing.
    """

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        if event not in HOOK_EVENTS:
            raise BefungeExtensionError(f"Extension {self._ext_name} hooks unknown event {event!r}")

        def register(fn: Callable[..., None]) -> Callable[..., None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return register if handler is None else register(handler)

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        def register(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            self._services.hook_registry.add_step_rule(
                name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name
            )
            return fn

        return register if handler is None else register(handler)


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


class ExtensionLoader:
    """Imports extension files and lets each one register on shared services.

    A path ending in ``.bfx`` is a pointer file listing one extension per
    line, relative to the pointer file, with ``#`` comments. A file listed
    more than once is loaded once.
    """

    def __init__(self, services: Optional[RuntimeServices] = None) -> None:
        self.services = services or build_default_services()
        self.modules: Dict[Path, Any] = {}

    def expand(self, paths: Sequence[str]) -> List[Path]:
        expanded: List[Path] = []
        for raw in paths:
            path = Path(raw).resolve()
            targets = self._read_pointer_file(path) if path.suffix.lower() == ".bfx" else [path]
            for target in targets:
                if target not in expanded:
                    expanded.append(target)
        return expanded

    @staticmethod
    def _read_pointer_file(pointer: Path) -> List[Path]:
        try:
            text = pointer.read_text(encoding="utf-8")
        except OSError as exc:
            raise BefungeExtensionError(f"Cannot read .bfx file {pointer}: {exc}") from exc
        targets: List[Path] = []
        for line in text.splitlines():
            entry = line.split("#", 1)[0].strip()
            if entry:
                targets.append((pointer.parent / entry).resolve())
        return targets

    def import_module(self, path: Path) -> Any:
        path = path.resolve()
        if path in self.modules:
            return self.modules[path]
        if not path.is_file():
            raise BefungeExtensionError(f"Extension not found: {path}")
        stem = "".join(ch if ch.isalnum() else "_" for ch in path.stem)
        spec = importlib.util.spec_from_file_location(f"befunge_ext_{stem}_{len(self.modules)}", path)
        if spec is None or spec.loader is None:
            raise BefungeExtensionError(f"Extension {path} is not an importable Python file")
        module = importlib.util.module_from_spec(spec)

        # Siblings of the extension are importable while it loads.
        sys.path.insert(0, str(path.parent))
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise BefungeExtensionError(f"Extension {path} failed to import: {exc}") from exc
        finally:
            sys.path.remove(str(path.parent))
        self.modules[path] = module
        return module

    def register(self, path: Path) -> None:
        module = self.import_module(path)
        api_version = getattr(module, "BEFUNGE_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise BefungeExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "befunge_register", None)
        if not callable(register):
            raise BefungeExtensionError(f"Extension {path} must define callable befunge_register(ext)")
        ext_name = str(getattr(module, "BEFUNGE_EXTENSION_NAME", path.stem))
        register(ExtensionAPI(services=self.services, ext_name=ext_name))

    def load(self, paths: Sequence[str]) -> RuntimeServices:
        for path in self.expand(paths):
            self.register(path)
        return self.services


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    return ExtensionLoader(services).load(paths)
