from __future__ import annotations
import base64
import datetime
import functools
import html
import math
import re
import urllib.parse
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from extensions import ExtensionError, ExtensionFilter, RuntimeServices
from lexer import LiquidRenderError, UndefinedFilter, ZeroDivisionLiquidError
from values import (
    TYPE_ARRAY,
    TYPE_MAP,
    TYPE_RANGE,
    TYPE_STR,
    Drop,
    is_empty,
    is_truthy,
    kind_of,
    liquid_eq,
    liquid_value,
    to_integer,
    to_number,
    to_output,
)

if TYPE_CHECKING:
    from interpreter import Interpreter


FilterImpl = Callable[["Interpreter", Any, List[Any], Dict[str, Any]], Any]


@dataclass
class FilterFunction:
    name: str
    min_args: int
    max_args: Optional[int]
    impl: FilterImpl
    doc: str = ""
    source: str = "builtin"

    def validate(self, supplied: int) -> None:
        if supplied < self.min_args or (self.max_args is not None and supplied > self.max_args):
            if self.max_args is None:
                expected = f"{self.min_args + 1}+"
            elif self.max_args == self.min_args:
                expected = str(self.min_args + 1)
            else:
                expected = f"{self.min_args + 1}..{self.max_args + 1}"
            raise LiquidRenderError(f"wrong number of arguments (given {supplied + 1}, expected {expected})")


class Filters:
    """Table of named filters. Every filter receives the piped value first."""

    def __init__(self) -> None:
        self.table: Dict[str, FilterFunction] = {}
        # strings
        self._register_string("downcase", str.lower)
        self._register_string("upcase", str.upper)
        self._register_string("capitalize", lambda s: s[:1].upper() + s[1:].lower())
        self._register_string("strip", str.strip)
        self._register_string("lstrip", str.lstrip)
        self._register_string("rstrip", str.rstrip)
        self._register_string("strip_newlines", lambda s: re.sub(r"\r?\n", "", s))
        self._register_string("newline_to_br", lambda s: re.sub(r"\r?\n", "<br />\n", s))
        self._register_string("strip_html", self._strip_html)
        self._register_string("escape_once", self._escape_once)
        self._register_string("url_decode", urllib.parse.unquote_plus)
        self._register_string("base64_encode", lambda s: base64.b64encode(s.encode("utf-8")).decode("ascii"))
        self._register_string("base64_decode", self._base64_decode)
        self._register_string("base64_url_safe_encode", lambda s: base64.urlsafe_b64encode(s.encode("utf-8")).decode("ascii"))
        self._register_string("base64_url_safe_decode", self._base64_url_safe_decode)
        self._register_custom("escape", 0, 0, self._escape)
        self._register_custom("h", 0, 0, self._escape)
        self._register_custom("url_encode", 0, 0, self._url_encode)
        self._register_custom("append", 1, 1, lambda _, value, args, __: to_output(value) + to_output(args[0]))
        self._register_custom("prepend", 1, 1, lambda _, value, args, __: to_output(args[0]) + to_output(value))
        self._register_custom("replace", 1, 2, self._replace)
        self._register_custom("replace_first", 1, 2, self._replace_first)
        self._register_custom("replace_last", 2, 2, self._replace_last)
        self._register_custom("remove", 1, 1, lambda _, value, args, __: to_output(value).replace(to_output(args[0]), ""))
        self._register_custom("remove_first", 1, 1, lambda _, value, args, __: to_output(value).replace(to_output(args[0]), "", 1))
        self._register_custom("remove_last", 1, 1, self._remove_last)
        self._register_custom("truncate", 0, 2, self._truncate)
        self._register_custom("truncatewords", 0, 2, self._truncatewords)
        self._register_custom("split", 1, 1, self._split)
        self._register_custom("slice", 1, 2, self._slice)
        self._register_custom("size", 0, 0, self._size)
        # arrays
        self._register_custom("join", 0, 1, self._join)
        self._register_custom("first", 0, 0, self._first)
        self._register_custom("last", 0, 0, self._last)
        self._register_custom("reverse", 0, 0, lambda _, value, __, ___: list(reversed(_input_items(value))))
        self._register_custom("sort", 0, 1, self._sort)
        self._register_custom("sort_natural", 0, 1, self._sort_natural)
        self._register_custom("uniq", 0, 1, self._uniq)
        self._register_custom("compact", 0, 1, self._compact)
        self._register_custom("map", 1, 1, self._map)
        self._register_custom("where", 1, 2, self._where)
        self._register_custom("reject", 1, 2, self._reject)
        self._register_custom("find", 1, 2, self._find)
        self._register_custom("find_index", 1, 2, self._find_index)
        self._register_custom("has", 1, 2, self._has)
        self._register_custom("concat", 1, 1, self._concat)
        self._register_custom("sum", 0, 1, self._sum)
        # math
        self._register_math("plus", lambda a, b: a + b)
        self._register_math("minus", lambda a, b: a - b)
        self._register_math("times", lambda a, b: a * b)
        self._register_math("divided_by", _divide)
        self._register_math("modulo", _modulo)
        self._register_math("at_least", max)
        self._register_math("at_most", min)
        self._register_custom("abs", 0, 0, lambda _, value, __, ___: _finish(abs(to_number(value))))
        self._register_custom("ceil", 0, 0, lambda _, value, __, ___: int(math.ceil(to_number(value))))
        self._register_custom("floor", 0, 0, lambda _, value, __, ___: int(math.floor(to_number(value))))
        self._register_custom("round", 0, 1, self._round)
        # misc
        self._register_custom("default", 0, 1, self._default)
        self._register_custom("date", 0, 1, self._date)

    def _register_string(self, name: str, func: Callable[[str], str]) -> None:
        def impl(_: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> Any:
            return func(to_output(value))

        self.table[name] = FilterFunction(name=name, min_args=0, max_args=0, impl=impl)

    def _register_math(self, name: str, func: Callable[[Any, Any], Any]) -> None:
        def impl(_: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
            left, right = _coerce_pair(to_number(value), to_number(args[0]))
            return _finish(func(left, right))

        self.table[name] = FilterFunction(name=name, min_args=1, max_args=1, impl=impl)

    def _register_custom(self, name: str, min_args: int, max_args: Optional[int], impl: FilterImpl) -> None:
        self.table[name] = FilterFunction(name=name, min_args=min_args, max_args=max_args, impl=impl)

    def register_extension_filter(self, ext_filter: ExtensionFilter) -> None:
        if ext_filter.name in self.table:
            raise ExtensionError(f"Cannot override existing filter '{ext_filter.name}'")
        self.table[ext_filter.name] = FilterFunction(
            name=ext_filter.name,
            min_args=ext_filter.min_args,
            max_args=ext_filter.max_args,
            impl=ext_filter.impl,
            doc=ext_filter.doc,
            source=ext_filter.ext_name or "extension",
        )

    @classmethod
    def with_extensions(cls, services: RuntimeServices) -> "Filters":
        filters = cls()
        for ext_filter in services.filters:
            filters.register_extension_filter(ext_filter)
        return filters

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(
        self,
        interpreter: "Interpreter",
        name: str,
        value: Any,
        args: List[Any],
        kwargs: Dict[str, Any],
    ) -> Any:
        function = self.table.get(name)
        if function is None:
            raise UndefinedFilter(f"undefined filter {name}")
        function.validate(len(args))
        return function.impl(interpreter, value, args, kwargs)

    # ---- string filters ----

    def _escape(self, _: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> Any:
        if value is None:
            return None
        return html.escape(to_output(value), quote=True).replace("&#x27;", "&#39;")

    def _url_encode(self, _: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> Any:
        if value is None:
            return None
        return urllib.parse.quote_plus(to_output(value))

    @staticmethod
    def _escape_once(text: str) -> str:
        return _ESCAPE_ONCE.sub(lambda m: _HTML_ESCAPES[m.group(0)], text)

    @staticmethod
    def _strip_html(text: str) -> str:
        text = _STRIP_HTML_BLOCKS.sub("", text)
        return _STRIP_HTML_TAGS.sub("", text)

    @staticmethod
    def _base64_decode(text: str) -> str:
        try:
            return base64.b64decode(text.encode("ascii"), validate=True).decode("utf-8")
        except (ValueError, UnicodeError):
            raise LiquidRenderError("invalid base64 provided to base64_decode") from None

    @staticmethod
    def _base64_url_safe_decode(text: str) -> str:
        try:
            padded = text + "=" * (-len(text) % 4)
            return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
        except (ValueError, UnicodeError):
            raise LiquidRenderError("invalid base64 provided to base64_url_safe_decode") from None

    def _replace(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> str:
        replacement = to_output(args[1]) if len(args) > 1 else ""
        return to_output(value).replace(to_output(args[0]), replacement)

    def _replace_first(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> str:
        replacement = to_output(args[1]) if len(args) > 1 else ""
        return to_output(value).replace(to_output(args[0]), replacement, 1)

    def _replace_last(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> str:
        text, target, replacement = to_output(value), to_output(args[0]), to_output(args[1])
        head, sep, tail = text.rpartition(target)
        if not sep:
            return text
        return head + replacement + tail

    def _remove_last(self, interpreter: "Interpreter", value: Any, args: List[Any], kwargs: Dict[str, Any]) -> str:
        return self._replace_last(interpreter, value, [args[0], ""], kwargs)

    def _truncate(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        if value is None:
            return None
        text = to_output(value)
        length = to_integer(args[0]) if args else 50
        ellipsis = to_output(args[1]) if len(args) > 1 else "..."
        if len(text) <= length:
            return text
        keep = max(0, length - len(ellipsis))
        return text[:keep] + ellipsis

    def _truncatewords(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        if value is None:
            return None
        text = to_output(value)
        words = to_integer(args[0]) if args else 15
        ellipsis = to_output(args[1]) if len(args) > 1 else "..."
        if words <= 0:
            words = 1
        wordlist = text.split(None, words)
        if len(wordlist) <= words:
            return text
        return " ".join(wordlist[:words]) + ellipsis

    def _split(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[str]:
        text, pattern = to_output(value), to_output(args[0])
        if pattern == " ":
            return text.split()
        if pattern == "":
            return list(text)
        parts = text.split(pattern)
        while parts and parts[-1] == "":
            parts.pop()
        return parts

    def _slice(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        offset = to_integer(args[0])
        length = to_integer(args[1]) if len(args) > 1 and args[1] is not None else 1
        if kind_of(value) == TYPE_ARRAY:
            items = list(value)
            sequence: Any = items
        else:
            sequence = to_output(value)
        size = len(sequence)
        if offset < 0:
            offset += size
        if offset < 0 or offset > size or length < 0:
            return [] if isinstance(sequence, list) else ""
        return sequence[offset:offset + length]

    def _size(self, _: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> int:
        if kind_of(value) in (TYPE_STR, TYPE_ARRAY, TYPE_MAP, TYPE_RANGE):
            return len(value)
        size = getattr(value, "size", None) if isinstance(value, Drop) else None
        return size if isinstance(size, int) else 0

    # ---- array filters ----

    def _join(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> str:
        glue = to_output(args[0]) if args else " "
        return glue.join(to_output(item) for item in _input_items(value))

    def _first(self, _: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return value[:1]
        items = _sequence(value)
        return items[0] if items else None

    def _last(self, _: "Interpreter", value: Any, __: List[Any], ___: Dict[str, Any]) -> Any:
        if isinstance(value, str):
            return value[-1:]
        items = _sequence(value)
        return items[-1] if items else None

    def _sort(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        items = _input_items(value)
        if args and args[0] is not None:
            key = args[0]
            return sorted(items, key=functools.cmp_to_key(lambda a, b: _nil_safe_compare(_property(a, key), _property(b, key))))
        return sorted(items, key=functools.cmp_to_key(_nil_safe_compare))

    def _sort_natural(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        items = _input_items(value)
        if args and args[0] is not None:
            key = args[0]
            return sorted(items, key=functools.cmp_to_key(lambda a, b: _nil_safe_casecmp(_property(a, key), _property(b, key))))
        return sorted(items, key=functools.cmp_to_key(_nil_safe_casecmp))

    def _uniq(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        seen: List[Any] = []
        result: List[Any] = []
        for item in _input_items(value):
            marker = _property(item, args[0]) if args and args[0] is not None else item
            if any(liquid_eq(marker, other) for other in seen):
                continue
            seen.append(marker)
            result.append(item)
        return result

    def _compact(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        if args and args[0] is not None:
            return [item for item in _input_items(value) if _property(item, args[0]) is not None]
        return [item for item in _input_items(value) if item is not None]

    def _map(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        key = args[0]
        result: List[Any] = []
        for item in _input_items(value):
            if key == "to_liquid":
                result.append(item)
            elif kind_of(item) in (TYPE_MAP,) or isinstance(item, Drop):
                result.append(_property(item, key))
            else:
                raise LiquidRenderError(f"cannot select the property '{to_output(key)}'")
        return result

    def _where(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        return [item for item in _input_items(value) if _matches(item, args)]

    def _reject(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        return [item for item in _input_items(value) if not _matches(item, args)]

    def _find(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        for item in _input_items(value):
            if _matches(item, args):
                return item
        return None

    def _find_index(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        for index, item in enumerate(_input_items(value)):
            if _matches(item, args):
                return index
        return None

    def _has(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> bool:
        return any(_matches(item, args) for item in _input_items(value))

    def _concat(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> List[Any]:
        if kind_of(args[0]) != TYPE_ARRAY:
            raise LiquidRenderError("concat filter requires an array argument")
        return _input_items(value) + list(args[0])

    def _sum(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        items = _input_items(value)
        if args and args[0] is not None:
            items = [_property(item, args[0]) if kind_of(item) == TYPE_MAP or isinstance(item, Drop) else 0 for item in items]
        total: Any = 0
        for item in items:
            left, right = _coerce_pair(total, to_number(item))
            total = left + right
        return _finish(total)

    # ---- numeric filters ----

    def _round(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        number = to_number(value)
        digits = int(to_number(args[0])) if args else 0
        if isinstance(number, float) and (math.isinf(number) or math.isnan(number)):
            return 0 if math.isinf(number) else number
        if isinstance(number, int) and digits >= 0:
            return number
        try:
            exponent = Decimal(1).scaleb(-digits)
            rounded = Decimal(repr(number) if isinstance(number, float) else number).quantize(exponent, rounding=ROUND_HALF_UP)
        except InvalidOperation:
            return _finish(number)
        if digits <= 0:
            return int(rounded)
        return float(rounded)

    # ---- misc ----

    def _default(self, _: "Interpreter", value: Any, args: List[Any], kwargs: Dict[str, Any]) -> Any:
        fallback = args[0] if args else ""
        if is_truthy(kwargs.get("allow_false")):
            use_fallback = value is None
        else:
            use_fallback = not is_truthy(liquid_value(value))
        if use_fallback or is_empty(value):
            return fallback
        return value

    def _date(self, _: "Interpreter", value: Any, args: List[Any], __: Dict[str, Any]) -> Any:
        fmt = to_output(args[0]) if args else ""
        if not fmt:
            return value
        moment = _to_date(value)
        if moment is None:
            return value
        return moment.strftime(fmt)


_HTML_ESCAPES = {"&": "&amp;", "<": "&lt;", ">": "&gt;", '"': "&quot;", "'": "&#39;"}
_ESCAPE_ONCE = re.compile(r"[\"><']|&(?!(?:[a-zA-Z]+|#\d+);)")
_STRIP_HTML_BLOCKS = re.compile(r"<script.*?</script>|<!--.*?-->|<style.*?</style>", re.S | re.I)
_STRIP_HTML_TAGS = re.compile(r"<.*?>", re.S)


def _input_items(value: Any) -> List[Any]:
    """Flattened item list for array filters; scalars become one item."""
    kind = kind_of(value)
    if value is None:
        return []
    if kind == TYPE_ARRAY:
        return _flatten(value)
    if kind == TYPE_RANGE:
        return list(value)
    if kind == TYPE_MAP or kind == TYPE_STR:
        return [value]
    if isinstance(value, Drop) and hasattr(value, "__iter__"):
        return list(value)
    return [value]


def _flatten(items: Any) -> List[Any]:
    result: List[Any] = []
    for item in items:
        if kind_of(item) == TYPE_ARRAY:
            result.extend(_flatten(item))
        else:
            result.append(item)
    return result


def _sequence(value: Any) -> List[Any]:
    kind = kind_of(value)
    if kind in (TYPE_ARRAY, TYPE_RANGE):
        return list(value)
    return []


def _property(item: Any, key: Any) -> Any:
    if kind_of(item) == TYPE_MAP:
        try:
            return item.get(key)
        except TypeError:
            return None
    if isinstance(item, Drop):
        return item.invoke_drop(key)
    return None


def _matches(item: Any, args: List[Any]) -> bool:
    if kind_of(item) != TYPE_MAP and not isinstance(item, Drop):
        return False
    actual = _property(item, args[0])
    if len(args) < 2 or args[1] is None:
        return is_truthy(actual)
    return liquid_eq(actual, args[1])


def _nil_safe_compare(a: Any, b: Any) -> int:
    a, b = liquid_value(a), liquid_value(b)
    both_numbers = _is_number(a) and _is_number(b)
    if both_numbers or (isinstance(a, str) and isinstance(b, str)):
        if both_numbers:
            a, b = _coerce_pair(a, b)
        return (a > b) - (a < b)
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    raise LiquidRenderError("cannot sort values of incompatible types")


def _nil_safe_casecmp(a: Any, b: Any) -> int:
    if a is None and b is None:
        return 0
    if a is None:
        return 1
    if b is None:
        return -1
    left, right = to_output(a).casefold(), to_output(b).casefold()
    return (left > right) - (left < right)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float, Decimal)) and not isinstance(value, bool)


def _coerce_pair(left: Any, right: Any):
    if isinstance(left, Decimal) and isinstance(right, float):
        return left, Decimal(repr(right))
    if isinstance(right, Decimal) and isinstance(left, float):
        return Decimal(repr(left)), right
    return left, right


def _finish(result: Any) -> Any:
    if isinstance(result, Decimal):
        return float(result)
    return result


def _divide(left: Any, right: Any) -> Any:
    if isinstance(left, int) and isinstance(right, int):
        if right == 0:
            raise ZeroDivisionLiquidError("divided by 0")
        return left // right
    if right == 0:
        if isinstance(right, Decimal) or isinstance(left, Decimal):
            raise ZeroDivisionLiquidError("divided by 0")
        if left == 0 or math.isnan(left):
            return math.nan
        return math.copysign(math.inf, left) * math.copysign(1.0, right)
    return left / right


def _modulo(left: Any, right: Any) -> Any:
    if right == 0:
        if isinstance(left, int) and isinstance(right, int) or isinstance(right, Decimal):
            raise ZeroDivisionLiquidError("divided by 0")
        return math.nan
    if isinstance(left, Decimal) or isinstance(right, Decimal):
        # Decimal's % truncates; match floored modulo.
        result = left % right
        if result and (result < 0) != (right < 0):
            result += right
        return result
    return left % right


_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
)


def _to_date(value: Any) -> Optional[datetime.datetime]:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    if _is_number(value):
        return datetime.datetime.fromtimestamp(float(value))
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.lower() in ("now", "today"):
        return datetime.datetime.now()
    if re.fullmatch(r"-?\d+", text):
        return datetime.datetime.fromtimestamp(int(text))
    try:
        return datetime.datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
