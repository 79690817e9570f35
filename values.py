from __future__ import annotations
import inspect as _inspect
import math
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Iterator, List

from lexer import LiquidRenderError


TYPE_NIL = "nil"
TYPE_BOOL = "bool"
TYPE_INT = "integer"
TYPE_FLOAT = "float"
TYPE_STR = "string"
TYPE_ARRAY = "array"
TYPE_MAP = "map"
TYPE_RANGE = "range"
TYPE_DROP = "drop"


@dataclass(frozen=True)
class Range:
    """Inclusive integer range produced by ``(a..b)``."""

    start: int
    end: int

    def __iter__(self) -> Iterator[int]:
        return iter(range(self.start, self.end + 1))

    def __len__(self) -> int:
        return max(0, self.end - self.start + 1)

    def __contains__(self, item: Any) -> bool:
        if isinstance(item, bool) or not isinstance(item, (int, float, Decimal)):
            return False
        return self.start <= item <= self.end

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"


class Drop:
    """Host object exposed to templates through named properties.

    Public attributes, properties and zero-argument methods declared on a
    subclass are visible from templates. A method whose only parameter is
    named ``context`` receives the rendering context of the current lookup.
    Anything else is routed to ``liquid_method_missing``.
    """

    def invoke_drop(self, name: Any, context: Any = None) -> Any:
        if isinstance(name, str) and not name.startswith("_") and name not in _DROP_BASE_ATTRIBUTES:
            if hasattr(self, name):
                value = getattr(self, name)
                if _inspect.ismethod(value):
                    return value(context) if _takes_context(value) else value()
                return value
        return self.liquid_method_missing(name)

    def liquid_method_missing(self, name: Any) -> Any:
        return None

    def to_liquid(self) -> "Drop":
        return self

    def is_empty(self) -> bool:
        return False

    def is_blank(self) -> bool:
        return False

    def __str__(self) -> str:
        return type(self).__name__


_DROP_BASE_ATTRIBUTES = frozenset(dir(Drop))


def _takes_context(method: Any) -> bool:
    try:
        params = list(_inspect.signature(method).parameters)
    except (TypeError, ValueError):
        return False
    return params == ["context"]


class _Keyword:
    """The ``empty`` / ``blank`` comparison sentinels."""

    def __init__(self, name: str) -> None:
        self.name = name

    def __str__(self) -> str:
        return ""

    def __repr__(self) -> str:
        return self.name


EMPTY = _Keyword("empty")
BLANK = _Keyword("blank")


def kind_of(value: Any) -> str:
    if value is None:
        return TYPE_NIL
    if isinstance(value, bool):
        return TYPE_BOOL
    if isinstance(value, int):
        return TYPE_INT
    if isinstance(value, (float, Decimal)):
        return TYPE_FLOAT
    if isinstance(value, str):
        return TYPE_STR
    if isinstance(value, Range):
        return TYPE_RANGE
    if isinstance(value, Mapping):
        return TYPE_MAP
    if isinstance(value, (list, tuple)):
        return TYPE_ARRAY
    return TYPE_DROP


def liquid_value(value: Any) -> Any:
    """Primitive stand-in used for comparisons and keys."""
    hook = getattr(value, "to_liquid_value", None)
    if hook is not None and callable(hook):
        return hook()
    return value


def to_liquid(value: Any) -> Any:
    hook = getattr(value, "to_liquid", None)
    if hook is not None and callable(hook) and not isinstance(value, type):
        return hook()
    return value


def format_float(value: Any) -> str:
    if isinstance(value, Decimal):
        if not value.is_finite():
            value = float(value)
        else:
            text = format(value, "f")
            if "." not in text:
                return text + ".0"
            integral, _, fraction = text.partition(".")
            fraction = fraction.rstrip("0") or "0"
            return f"{integral}.{fraction}"
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    text = repr(value)
    if "e" in text:
        mantissa, _, exponent = text.partition("e")
        if "." not in mantissa:
            mantissa += ".0"
        sign = "-" if exponent.startswith("-") else "+"
        return f"{mantissa}e{sign}{exponent.lstrip('+-').zfill(2)}"
    return text


def to_output(value: Any) -> str:
    kind = kind_of(value)
    if kind == TYPE_NIL:
        return ""
    if kind == TYPE_STR:
        return value
    if kind == TYPE_BOOL:
        return "true" if value else "false"
    if kind == TYPE_INT:
        return str(value)
    if kind == TYPE_FLOAT:
        return format_float(value)
    if kind == TYPE_ARRAY:
        return "".join(to_output(item) for item in value)
    if kind == TYPE_MAP:
        return inspect(value)
    return str(value)


_INSPECT_ESCAPES = {'"': '\\"', "\\": "\\\\", "\n": "\\n", "\t": "\\t", "\r": "\\r"}


def inspect(value: Any) -> str:
    """Debug rendering of a value, used for maps and error messages."""
    kind = kind_of(value)
    if kind == TYPE_NIL:
        return "nil"
    if kind == TYPE_STR:
        return '"' + "".join(_INSPECT_ESCAPES.get(ch, ch) for ch in value) + '"'
    if kind == TYPE_ARRAY:
        return "[" + ", ".join(inspect(item) for item in value) + "]"
    if kind == TYPE_MAP:
        return "{" + ", ".join(f"{inspect(k)}=>{inspect(v)}" for k, v in value.items()) + "}"
    if kind in (TYPE_BOOL, TYPE_INT, TYPE_FLOAT):
        return to_output(value)
    return str(value)


def to_iterable(value: Any) -> List[Any]:
    kind = kind_of(value)
    if kind in (TYPE_NIL, TYPE_BOOL, TYPE_INT, TYPE_FLOAT):
        return []
    if kind == TYPE_STR:
        return [value] if value else []
    if kind == TYPE_ARRAY:
        return list(value)
    if kind == TYPE_MAP:
        return [[key, item] for key, item in value.items()]
    if kind == TYPE_RANGE:
        return list(value)
    if isinstance(value, Iterable):
        return list(value)
    return []


def is_truthy(value: Any) -> bool:
    return value is not None and value is not False


def is_empty(value: Any) -> bool:
    kind = kind_of(value)
    if kind in (TYPE_STR, TYPE_ARRAY, TYPE_MAP):
        return len(value) == 0
    if isinstance(value, Drop):
        return bool(value.is_empty())
    return False


def is_blank(value: Any) -> bool:
    kind = kind_of(value)
    if kind == TYPE_NIL:
        return True
    if kind == TYPE_BOOL:
        return not value
    if kind == TYPE_STR:
        return value.strip() == ""
    if kind in (TYPE_ARRAY, TYPE_MAP):
        return len(value) == 0
    if isinstance(value, Drop):
        return bool(value.is_blank())
    return False


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def liquid_eq(left: Any, right: Any) -> bool:
    if left is EMPTY or left is BLANK:
        left, right = right, left
    if right is EMPTY:
        return left is EMPTY or is_empty(liquid_value(left))
    if right is BLANK:
        return left is BLANK or is_blank(liquid_value(left))

    left, right = liquid_value(left), liquid_value(right)
    if _is_number(left) and _is_number(right):
        if isinstance(left, Decimal) != isinstance(right, Decimal):
            return float(left) == float(right)
        return left == right
    if isinstance(left, bool) or isinstance(right, bool):
        return left is right
    left_kind, right_kind = kind_of(left), kind_of(right)
    if left_kind != right_kind:
        return False
    if left_kind == TYPE_ARRAY:
        return len(left) == len(right) and all(liquid_eq(a, b) for a, b in zip(left, right))
    if left_kind == TYPE_MAP:
        if left.keys() != right.keys():
            return False
        return all(liquid_eq(left[key], right[key]) for key in left)
    return left == right


def _type_name(value: Any) -> str:
    if isinstance(value, int):
        return "Integer"
    if _is_number(value):
        return "Float"
    if isinstance(value, str):
        return "String"
    return type(value).__name__


def liquid_compare(left: Any, operator: str, right: Any) -> bool:
    left, right = liquid_value(left), liquid_value(right)
    if isinstance(left, Decimal) != isinstance(right, Decimal) and _is_number(left) and _is_number(right):
        left, right = float(left), float(right)
    ordered = _is_number(left) and _is_number(right) or isinstance(left, str) and isinstance(right, str)
    if not ordered:
        # Number/string pairings raise; any other unordered pair is false.
        if _is_number(left) and isinstance(right, str):
            raise LiquidRenderError(f"comparison of {_type_name(left)} with String failed")
        if isinstance(left, str) and _is_number(right):
            raise LiquidRenderError(f"comparison of String with {inspect(right)} failed")
        return False
    if operator == "<":
        return left < right
    if operator == ">":
        return left > right
    if operator == "<=":
        return left <= right
    if operator == ">=":
        return left >= right
    raise LiquidRenderError(f"Unknown operator {operator}")


def liquid_contains(left: Any, right: Any) -> bool:
    left, right = liquid_value(left), liquid_value(right)
    if left is None or right is None:
        return False
    kind = kind_of(left)
    if kind == TYPE_STR:
        return to_output(right) in left
    if kind == TYPE_ARRAY:
        return any(liquid_eq(item, right) for item in left)
    if kind == TYPE_MAP:
        try:
            return right in left
        except TypeError:
            return False
    if kind == TYPE_RANGE:
        return right in left
    return False


_INTEGER_STRING = re.compile(r"\s*[-+]?\d+\s*\Z")
_LEADING_INTEGER = re.compile(r"\s*([-+]?\d+)")
_DECIMAL_STRING = re.compile(r"-?\d+\.\d+\Z")


def to_integer(value: Any) -> int:
    if isinstance(value, bool) or value is None:
        raise LiquidRenderError("invalid integer")
    if isinstance(value, int):
        return value
    if isinstance(value, (float, Decimal)):
        return int(value)
    if isinstance(value, str) and _INTEGER_STRING.match(value):
        return int(value)
    raise LiquidRenderError("invalid integer")


def to_number(value: Any) -> Any:
    value = liquid_value(value)
    if _is_number(value):
        return value
    text = value.strip() if isinstance(value, str) else to_output(value)
    if _DECIMAL_STRING.match(text):
        return Decimal(text)
    return leading_integer(text)


def leading_integer(text: str) -> int:
    match = _LEADING_INTEGER.match(text)
    return int(match.group(1)) if match else 0


def to_range_bound(value: Any) -> int:
    value = liquid_value(value)
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, str):
        return leading_integer(value)
    if _is_number(value):
        return int(value)
    return to_integer(value)
