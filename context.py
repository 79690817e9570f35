from __future__ import annotations
import inspect
import weakref
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Any, Dict, FrozenSet, Iterator, List, Optional

from lexer import LiquidError, StackLevelError, UndefinedVariable
from values import (
    TYPE_ARRAY,
    TYPE_MAP,
    TYPE_RANGE,
    TYPE_STR,
    Drop,
    inspect as inspect_value,
    kind_of,
    liquid_value,
    to_liquid,
)


class BreakInterrupt:
    pass


class ContinueInterrupt:
    pass


class Registers:
    """Per-render side-channel state.

    Reads fall through to a shared ``static`` mapping; all writes land in
    ``changes``, so the static mapping is never mutated.
    """

    def __init__(self, static: Optional[Mapping] = None) -> None:
        self.static: Mapping = static if static is not None else {}
        self.changes: Dict[str, Any] = {}

    def __getitem__(self, key: str) -> Any:
        if key in self.changes:
            return self.changes[key]
        return self.static[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.changes[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self.changes or key in self.static

    def get(self, key: str, default: Any = None) -> Any:
        if key in self.changes:
            return self.changes[key]
        return self.static.get(key, default)

    def setdefault(self, key: str, default: Any) -> Any:
        if key not in self.changes:
            self.changes[key] = default
        return self.changes[key]

    def delete(self, key: str) -> None:
        self.changes.pop(key, None)

    def child(self) -> "Registers":
        return Registers(self.static)


class ForloopDrop(Drop):
    def __init__(self, name: str, length: int, parentloop: Optional["ForloopDrop"] = None) -> None:
        self._name = name
        self._length = length
        self._index0 = 0
        self._parentloop = weakref.ref(parentloop) if parentloop is not None else None

    @property
    def name(self) -> str:
        return self._name

    @property
    def length(self) -> int:
        return self._length

    @property
    def index(self) -> int:
        return self._index0 + 1

    @property
    def index0(self) -> int:
        return self._index0

    @property
    def rindex(self) -> int:
        return self._length - self._index0

    @property
    def rindex0(self) -> int:
        return self._length - self._index0 - 1

    @property
    def first(self) -> bool:
        return self._index0 == 0

    @property
    def last(self) -> bool:
        return self._index0 == self._length - 1

    @property
    def parentloop(self) -> Optional["ForloopDrop"]:
        return self._parentloop() if self._parentloop is not None else None

    def _increment(self) -> None:
        self._index0 += 1


class TablerowloopDrop(Drop):
    def __init__(self, length: int, cols: int, parentloop: Optional[ForloopDrop] = None) -> None:
        self._length = length
        self._cols = cols
        self._index0 = 0
        self._row = 1
        self._col = 1
        self._parentloop = weakref.ref(parentloop) if parentloop is not None else None

    @property
    def length(self) -> int:
        return self._length

    @property
    def col(self) -> int:
        return self._col

    @property
    def col0(self) -> int:
        return self._col - 1

    @property
    def col_first(self) -> bool:
        return self._col == 1

    @property
    def col_last(self) -> bool:
        return self._col == self._cols

    @property
    def row(self) -> int:
        return self._row

    @property
    def index(self) -> int:
        return self._index0 + 1

    @property
    def index0(self) -> int:
        return self._index0

    @property
    def rindex(self) -> int:
        return self._length - self._index0

    @property
    def rindex0(self) -> int:
        return self._length - self._index0 - 1

    @property
    def first(self) -> bool:
        return self._index0 == 0

    @property
    def last(self) -> bool:
        return self._index0 == self._length - 1

    @property
    def parentloop(self) -> Optional[ForloopDrop]:
        return self._parentloop() if self._parentloop is not None else None

    def _increment(self) -> None:
        self._index0 += 1
        if self._col == self._cols:
            self._col = 1
            self._row += 1
        else:
            self._col += 1


class Context:
    """Variable scopes, environments, registers and interrupts for one render.

    Lookup order is: scope frames innermost first, then the environments,
    then the static environments. ``assign`` writes to the nearest frame
    that accepts assignments (the root frame or a partial's frame), so
    assignments made inside loops outlive the loop.
    """

    def __init__(
        self,
        *,
        environment: Optional[Mapping] = None,
        static_environments: Optional[List[Mapping]] = None,
        outer_scope: Optional[Mapping] = None,
        registers: Optional[Registers] = None,
        strict_variables: bool = False,
        max_depth: int = 100,
        base_depth: int = 0,
        disabled_tags: FrozenSet[str] = frozenset(),
        errors: Optional[List[LiquidError]] = None,
        template_name: Optional[str] = None,
    ) -> None:
        self.scopes: List[Dict[str, Any]] = [dict(outer_scope or {})]
        self._assign_frames: List[int] = [0]
        # The first environment also holds increment/decrement counters.
        self.environments: List[Dict[str, Any]] = [dict(environment or {})]
        self.static_environments: List[Mapping] = list(static_environments or [])
        self.registers = registers if registers is not None else Registers()
        self.interrupts: List[Any] = []
        self.strict_variables = strict_variables
        self.max_depth = max_depth
        self.base_depth = base_depth
        self.disabled_tags = disabled_tags
        self.errors: List[LiquidError] = errors if errors is not None else []
        self.template_name = template_name
        self._squash_environment_keys()
        self._check_depth()

    def _squash_environment_keys(self) -> None:
        root = self.scopes[0]
        for key in list(root):
            for environment in self.environments:
                if key in environment:
                    root[key] = environment[key]
                    break

    def _check_depth(self) -> None:
        if self.base_depth + len(self.scopes) > self.max_depth:
            raise StackLevelError("Nesting too deep")

    # ---- scopes ----

    def push_scope(self, values: Optional[Mapping] = None, *, assign_target: bool = False) -> None:
        self.scopes.append(dict(values or {}))
        if assign_target:
            self._assign_frames.append(len(self.scopes) - 1)
        try:
            self._check_depth()
        except StackLevelError:
            self.pop_scope()
            raise

    def pop_scope(self) -> None:
        if len(self.scopes) == 1:
            raise LiquidError("Cannot pop the root scope")
        if self._assign_frames[-1] == len(self.scopes) - 1:
            self._assign_frames.pop()
        self.scopes.pop()

    @contextmanager
    def scope(self, values: Optional[Mapping] = None, *, assign_target: bool = False) -> Iterator["Context"]:
        self.push_scope(values, assign_target=assign_target)
        try:
            yield self
        finally:
            self.pop_scope()

    def set_local(self, name: str, value: Any) -> None:
        self.scopes[-1][name] = value

    def assign(self, name: str, value: Any) -> None:
        self.scopes[self._assign_frames[-1]][name] = value

    @property
    def depth(self) -> int:
        return self.base_depth + len(self.scopes)

    def snapshot(self) -> Dict[str, str]:
        merged: Dict[str, Any] = {}
        for frame in self.scopes:
            merged.update(frame)
        return {str(key): inspect_value(value) for key, value in merged.items()}

    # ---- interrupts ----

    def push_interrupt(self, interrupt: Any) -> None:
        self.interrupts.append(interrupt)

    def pop_interrupt(self) -> Any:
        return self.interrupts.pop()

    def has_interrupt(self) -> bool:
        return bool(self.interrupts)

    # ---- counters ----

    def increment(self, name: str) -> int:
        counters = self.environments[0]
        value = counters.get(name, 0)
        counters[name] = value + 1
        return value

    def decrement(self, name: str) -> int:
        counters = self.environments[0]
        value = counters.get(name, 0) - 1
        counters[name] = value
        return value

    # ---- lookups ----

    def find_variable(self, name: Any, *, raise_on_missing: bool = True) -> Any:
        for frame in reversed(self.scopes):
            if _has_key(frame, name):
                return self._resolve(frame, name)
        for environment in self.environments:
            if _has_key(environment, name):
                return self._resolve(environment, name)
        for environment in self.static_environments:
            if _has_key(environment, name):
                return self._resolve(environment, name)
        if self.strict_variables and raise_on_missing:
            raise UndefinedVariable(f"undefined variable {name}")
        return None

    def lookup_property(self, obj: Any, key: Any, command: bool) -> Any:
        key = liquid_value(key)
        kind = kind_of(obj)
        if kind == TYPE_MAP and _has_key(obj, key):
            return self._resolve(obj, key)
        if kind == TYPE_ARRAY and isinstance(key, int) and not isinstance(key, bool):
            if -len(obj) <= key < len(obj):
                return self._wrap(obj[key])
        elif isinstance(obj, Drop):
            return self._wrap(obj.invoke_drop(key, self))
        elif command:
            found, value = _command(obj, kind, key)
            if found:
                return self._wrap(value)
        if self.strict_variables:
            raise UndefinedVariable(f"undefined variable {key}")
        return None

    def _resolve(self, mapping: Mapping, key: Any) -> Any:
        value = mapping[key]
        if callable(value) and not isinstance(value, (Drop, type)):
            value = _call_lazy(value, self)
        return self._wrap(value)

    def _wrap(self, value: Any) -> Any:
        return to_liquid(value)

    # ---- partial contexts ----

    def new_isolated_subcontext(self, *, disabled_tags: Optional[FrozenSet[str]] = None) -> "Context":
        return Context(
            static_environments=self.static_environments,
            registers=self.registers.child(),
            strict_variables=self.strict_variables,
            max_depth=self.max_depth,
            base_depth=self.depth,
            disabled_tags=self.disabled_tags if disabled_tags is None else disabled_tags,
            errors=self.errors,
            template_name=self.template_name,
        )


def _has_key(mapping: Mapping, key: Any) -> bool:
    try:
        return key in mapping
    except TypeError:
        return False


def _command(obj: Any, kind: str, key: Any):
    if key == "size":
        if kind in (TYPE_ARRAY, TYPE_MAP, TYPE_STR, TYPE_RANGE):
            return True, len(obj)
    elif key == "first":
        if kind == TYPE_ARRAY:
            return True, obj[0] if obj else None
        if kind == TYPE_STR:
            return True, obj[0] if obj else ""
        if kind == TYPE_MAP:
            return True, list(next(iter(obj.items()))) if obj else None
        if kind == TYPE_RANGE:
            return True, obj.start
    elif key == "last":
        if kind == TYPE_ARRAY:
            return True, obj[-1] if obj else None
        if kind == TYPE_STR:
            return True, obj[-1] if obj else ""
        if kind == TYPE_RANGE:
            return True, obj.end
    return False, None


def _call_lazy(func: Any, context: Context) -> Any:
    try:
        arity = len(inspect.signature(func).parameters)
    except (TypeError, ValueError):
        arity = 0
    return func(context) if arity >= 1 else func()
