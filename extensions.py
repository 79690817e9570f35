from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from lexer import LiquidError


LIQUID_EXTENSION_API_VERSION = 1

# Events emitted by the renderer.
RENDER_EVENTS = ("render_start", "before_node", "after_node", "render_end", "on_error")


class ExtensionError(LiquidError):
    pass


def _check_api(requires_api: Any, who: str) -> None:
    if requires_api != LIQUID_EXTENSION_API_VERSION:
        raise ExtensionError(f"{who} requires API {requires_api}, host supports {LIQUID_EXTENSION_API_VERSION}")


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = LIQUID_EXTENSION_API_VERSION
    ext_name: str = ""


@dataclass(frozen=True)
class ExtensionFilter:
    """A filter contributed by an extension, attached to each interpreter's filter table."""

    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    doc: str = ""
    ext_name: str = ""


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    node: str  # class name of the node that produced the step
    location: Any  # SourceLocation | None


@dataclass
class HookRegistry:
    # event -> [(priority, handler, ext_name)], highest priority first
    _events: Dict[str, List[Tuple[int, Callable[..., None], str]]] = field(default_factory=dict)
    # [(every_n, handler, ext_name, rule name)]
    _step_rules: List[Tuple[int, Callable[[Any, StepContext], None], str, str]] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in RENDER_EVENTS:
            raise ExtensionError(f"Unknown event '{event}'")
        handlers = self._events.setdefault(event, [])
        handlers.append((priority, handler, ext_name))
        handlers.sort(key=lambda item: item[0], reverse=True)

    def has_handlers(self, event: str) -> bool:
        return bool(self._events.get(event))

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for _priority, handler, _ext in self._events.get(event, []):
            handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: Callable[[Any, StepContext], None], ext_name: str) -> None:
        if every_n <= 0:
            raise ExtensionError("every_n_steps must be >= 1")
        self._step_rules.append((every_n, handler, ext_name, name))

    def after_step(self, interpreter: Any, step_index: int, node: str, location: Any) -> None:
        for every_n, handler, _ext, name in self._step_rules:
            if step_index % every_n:
                continue
            handler(interpreter, StepContext(step_index=step_index, rule=name, node=node, location=location))


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    filters: List[ExtensionFilter] = field(default_factory=list)


class ExtensionAPI:
    """Registration surface handed to an extension's ``liquid_register(ext)``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = LIQUID_EXTENSION_API_VERSION) -> None:
        _check_api(requires_api, f"Extension '{name}'")
        self._services.metadata.append(
            ExtensionMetadata(name=name, version=version, requires_api=requires_api, ext_name=self._ext_name)
        )

    def register_filter(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: Callable[..., Any],
        *,
        doc: str = "",
    ) -> None:
        if not name:
            raise ExtensionError("Filter name must be non-empty")
        self._services.filters.append(
            ExtensionFilter(
                name=name,
                min_args=int(min_args),
                max_args=None if max_args is None else int(max_args),
                impl=impl,
                doc=doc or (getattr(impl, "__doc__", None) or "").strip(),
                ext_name=self._ext_name,
            )
        )

    def filter(self, name: str, min_args: int = 0, max_args: Optional[int] = None, *, doc: str = ""):
        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_filter(name, min_args, max_args, fn, doc=doc)
            return fn

        return deco

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        registry = self._services.hook_registry
        if handler is not None:
            registry.on_event(event, handler, priority=priority, ext_name=self._ext_name)
            return handler

        def deco(fn: Callable[..., None]) -> Callable[..., None]:
            registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return deco

    def every_n_steps(self, every_n: int, handler: Optional[Callable[[Any, StepContext], None]] = None, *, name: str = ""):
        registry = self._services.hook_registry
        if handler is not None:
            registry.add_step_rule(name=name or handler.__name__, every_n=every_n, handler=handler, ext_name=self._ext_name)
            return handler

        def deco(fn: Callable[[Any, StepContext], None]) -> Callable[[Any, StepContext], None]:
            registry.add_step_rule(name=name or fn.__name__, every_n=every_n, handler=fn, ext_name=self._ext_name)
            return fn

        return deco


@contextmanager
def _sibling_imports(path: str) -> Iterator[None]:
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        yield
    finally:
        if sys.path and sys.path[0] == ext_dir:
            sys.path.pop(0)


def _import_extension(path: str) -> Any:
    if not os.path.isfile(path):
        raise ExtensionError(f"Extension not found: {path}")
    stem = "".join(ch if ch.isalnum() else "_" for ch in os.path.basename(path))
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    spec = importlib.util.spec_from_file_location(f"liquid_ext_{stem}_{digest}", path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)
    with _sibling_imports(path):
        spec.loader.exec_module(module)
    return module


def read_lqx(pointer_file: str) -> List[str]:
    """Read a ``.lqx`` pointer file: one extension path per line, ``#`` comments."""
    if not os.path.isfile(pointer_file):
        raise ExtensionError(f".lqx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.split("#", 1)[0].strip() for raw in handle]
    return [os.path.abspath(os.path.join(base_dir, entry)) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        if os.path.splitext(path)[1].lower() == ".lqx":
            expanded.extend(read_lqx(path))
        else:
            expanded.append(os.path.abspath(path))
    return expanded


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = RuntimeServices()
    for path in gather_extension_paths(paths):
        module = _import_extension(path)
        _check_api(getattr(module, "LIQUID_EXTENSION_API_VERSION", LIQUID_EXTENSION_API_VERSION), f"Extension {path}")
        register = getattr(module, "liquid_register", None)
        if not callable(register):
            raise ExtensionError(f"Extension {path} must define callable liquid_register(ext)")
        ext_name = str(getattr(module, "LIQUID_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=ext_name))
    return services
