from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from context import (
    BreakInterrupt,
    Context,
    ContinueInterrupt,
    ForloopDrop,
    Registers,
    TablerowloopDrop,
)
from extensions import HookRegistry, RuntimeServices
from filesystem import BlankFileSystem
from filters import Filters
from lexer import (
    DisabledTagError,
    Lexer,
    LiquidError,
    LiquidRenderError,
    LiquidSyntaxError,
    RenderTimeoutError,
)
from parser import (
    Assign,
    Block,
    BreakStatement,
    Capture,
    CaseStatement,
    Comparison,
    ContinueStatement,
    CounterStatement,
    CycleStatement,
    Expression,
    FilteredExpression,
    ForStatement,
    IfchangedStatement,
    IfStatement,
    IncludeStatement,
    Literal,
    Logical,
    Node,
    Output,
    Parser,
    Program,
    RangeExpression,
    RenderStatement,
    SourceLocation,
    TablerowStatement,
    Text,
    VariableLookup,
)
from values import (
    TYPE_ARRAY,
    TYPE_MAP,
    TYPE_RANGE,
    Drop,
    Range,
    is_truthy,
    kind_of,
    liquid_compare,
    liquid_contains,
    liquid_eq,
    liquid_value,
    to_integer,
    to_iterable,
    to_output,
    to_range_bound,
)


@dataclass
class RenderOptions:
    error_mode: str = "strict"
    render_errors: bool = False
    strict_variables: bool = False
    max_depth: int = 100
    timeout: Optional[float] = None
    verbose: bool = False


class Template:
    """A parsed template. Immutable after parsing; safe to render repeatedly."""

    def __init__(self, program: Program, *, name: Optional[str] = None, source: str = "") -> None:
        self.program = program
        self.name = name
        self.source = source

    def render(self, environment: Optional[Mapping] = None, **kwargs: Any) -> str:
        output, _errors = render(self, environment, **kwargs)
        return output


def parse_template(source: str, *, name: Optional[str] = None, max_depth: int = 100) -> Template:
    filename = name or "<string>"
    try:
        tokens = Lexer(source, filename).tokenize()
        program = Parser(tokens, filename, source.splitlines(), max_depth=max_depth).parse()
    except LiquidSyntaxError as error:
        if name and error.template_name is None:
            error.template_name = name
        raise
    return Template(program, name=name, source=source)


def render(
    template: Template,
    environment: Optional[Mapping] = None,
    options: Optional[RenderOptions] = None,
    **collaborators: Any,
) -> Tuple[str, List[LiquidError]]:
    """Render ``template`` and return ``(output, errors)``.

    ``errors`` is only populated when ``options.render_errors`` is set;
    otherwise the first error propagates to the caller.
    """
    interpreter = Interpreter(template, options=options, **collaborators)
    output = interpreter.render(environment)
    return output, interpreter.errors


@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[SourceLocation]
    kind: str = "template"  # template, include or render
    source: str = ""


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    frame_id: Optional[str]
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    rule: str
    env_snapshot: Optional[Dict[str, str]] = None


class StateLogger:
    """Step log of dispatched nodes. Full history is kept only when verbose."""

    def __init__(self, verbose: bool) -> None:
        self.verbose = verbose
        self.entries: List[StateEntry] = []
        self.next_state_index = 0
        self.last_entry: Optional[StateEntry] = None
        self.frame_last_entry: Dict[str, StateEntry] = {}

    def record(
        self,
        *,
        frame: Optional[Frame],
        location: Optional[SourceLocation],
        rule: str,
        env_snapshot: Optional[Dict[str, str]] = None,
    ) -> StateEntry:
        step_index = self.next_state_index
        entry = StateEntry(
            step_index=step_index,
            state_id=f"s_{step_index:06d}",
            frame_id=frame.frame_id if frame else None,
            source_location=location,
            statement=location.statement if location else None,
            rule=rule,
            env_snapshot=env_snapshot,
        )
        if self.verbose:
            self.entries.append(entry)
        if frame:
            self.frame_last_entry[frame.frame_id] = entry
        self.last_entry = entry
        self.next_state_index += 1
        return entry

    def last_entry_for_frame(self, frame_id: str) -> Optional[StateEntry]:
        return self.frame_last_entry.get(frame_id)


class Interpreter:
    def __init__(
        self,
        template: Template,
        *,
        options: Optional[RenderOptions] = None,
        services: Optional[RuntimeServices] = None,
        file_system: Any = None,
        template_factory: Optional[Callable[[str], Optional[Template]]] = None,
        registers: Optional[Mapping] = None,
        static_environment: Optional[Mapping] = None,
        outer_scope: Optional[Mapping] = None,
    ) -> None:
        self.template = template
        self.options = options or RenderOptions()
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.filters = Filters.with_extensions(self.services)

        static_registers: Dict[str, Any] = dict(registers or {})
        static_registers["file_system"] = file_system or BlankFileSystem()
        static_registers["template_factory"] = template_factory
        self.static_registers = static_registers
        self.static_environment = static_environment
        self.outer_scope = outer_scope

        self.logger = StateLogger(verbose=self.options.verbose)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        self.errors: List[LiquidError] = []
        self._deadline: Optional[float] = None

    def render(self, environment: Optional[Mapping] = None) -> str:
        context = Context(
            environment=environment,
            static_environments=[self.static_environment] if self.static_environment is not None else [],
            outer_scope=self.outer_scope,
            registers=Registers(self.static_registers),
            strict_variables=self.options.strict_variables,
            max_depth=self.options.max_depth,
            errors=self.errors,
            template_name=self.template.name,
        )
        if self.options.timeout is not None:
            self._deadline = time.monotonic() + self.options.timeout
        self.call_stack.append(self._new_frame(self.template.name or "<template>", None, "template", self.template.source))
        output: List[str] = []
        self._emit_event("render_start", self, self.template, context)
        try:
            self._render_block(self.template.program.statements, context, output)
        except LiquidError as error:
            if error.step_index is None and self.logger.last_entry is not None:
                error.step_index = self.logger.last_entry.step_index
            self._emit_event("on_error", self, error)
            raise
        text = "".join(output)
        self._emit_event("render_end", self, text)
        self.call_stack.pop()
        return text

    # ---- block / node dispatch ----

    def _render_block(self, statements: List[Node], context: Context, output: List[str]) -> None:
        render_node = self._render_node
        for node in statements:
            render_node(node, context, output)
            if context.interrupts:
                break

    def _render_node(self, node: Node, context: Context, output: List[str]) -> None:
        if type(node) is Text:
            output.append(node.text)
            return
        self._check_deadline()
        self._log_step(node, context)
        self._emit_event("before_node", self, node, context)
        frames = len(self.call_stack)
        try:
            self._execute_node(node, context, output)
        except RenderTimeoutError:
            raise
        except LiquidError as error:
            self._handle_error(error, node, context, output)
            del self.call_stack[frames:]
        except Exception as exc:
            wrapped = LiquidRenderError("internal", line=node.location.line)
            wrapped.__cause__ = exc
            self._handle_error(wrapped, node, context, output)
            del self.call_stack[frames:]
        self._emit_event("after_node", self, node, context)

    def _handle_error(self, error: LiquidError, node: Node, context: Context, output: List[str]) -> None:
        if error.line is None:
            error.line = node.location.line
        if error.template_name is None:
            error.template_name = context.template_name
        if not self.options.render_errors:
            raise error
        context.errors.append(error)
        output.append(str(error))

    def _execute_node(self, node: Node, context: Context, output: List[str]) -> None:
        if isinstance(node, Output):
            output.append(to_output(self._evaluate(node.expression, context)))
            return
        if isinstance(node, Assign):
            context.assign(node.target, self._evaluate(node.expression, context))
            return
        if isinstance(node, Capture):
            buffer: List[str] = []
            self._render_block(node.block.statements, context, buffer)
            context.assign(node.target, "".join(buffer))
            return
        if isinstance(node, IfStatement):
            self._execute_if(node, context, output)
            return
        if isinstance(node, CaseStatement):
            self._execute_case(node, context, output)
            return
        if isinstance(node, ForStatement):
            self._execute_for(node, context, output)
            return
        if isinstance(node, TablerowStatement):
            self._execute_tablerow(node, context, output)
            return
        if isinstance(node, CycleStatement):
            self._execute_cycle(node, context, output)
            return
        if isinstance(node, CounterStatement):
            if node.delta > 0:
                output.append(to_output(context.increment(node.variable)))
            else:
                output.append(to_output(context.decrement(node.variable)))
            return
        if isinstance(node, BreakStatement):
            context.push_interrupt(BreakInterrupt())
            return
        if isinstance(node, ContinueStatement):
            context.push_interrupt(ContinueInterrupt())
            return
        if isinstance(node, RenderStatement):
            self._execute_render(node, context, output)
            return
        if isinstance(node, IncludeStatement):
            self._execute_include(node, context, output)
            return
        if isinstance(node, IfchangedStatement):
            self._execute_ifchanged(node, context, output)
            return
        if isinstance(node, Block):
            self._render_block(node.statements, context, output)
            return
        raise LiquidRenderError(f"Unsupported node {type(node).__name__}", line=node.location.line)

    # ---- expressions ----

    def _evaluate(self, expr: Expression, context: Context) -> Any:
        if isinstance(expr, Literal):
            return expr.value
        if isinstance(expr, VariableLookup):
            return self._lookup(expr, context)
        if isinstance(expr, FilteredExpression):
            value = self._evaluate(expr.expression, context)
            if expr.filters:
                value = self._apply_filters(value, expr, context)
            return value
        if isinstance(expr, Comparison):
            left = self._evaluate(expr.left, context)
            right = self._evaluate(expr.right, context)
            operator = expr.operator
            if operator == "==":
                return liquid_eq(left, right)
            if operator in ("!=", "<>"):
                return not liquid_eq(left, right)
            if operator == "contains":
                return liquid_contains(left, right)
            return liquid_compare(left, operator, right)
        if isinstance(expr, Logical):
            left = self._evaluate(expr.left, context)
            if expr.operator == "and":
                return is_truthy(left) and is_truthy(self._evaluate(expr.right, context))
            return is_truthy(left) or is_truthy(self._evaluate(expr.right, context))
        if isinstance(expr, RangeExpression):
            start = to_range_bound(self._evaluate(expr.start, context))
            end = to_range_bound(self._evaluate(expr.end, context))
            return Range(start, end)
        raise LiquidRenderError(f"Unsupported expression {type(expr).__name__}", line=expr.location.line)

    def _lookup(self, expr: VariableLookup, context: Context) -> Any:
        name = expr.name
        if not isinstance(name, str):
            name = liquid_value(self._evaluate(name, context))
        value = context.find_variable(name)
        for key, command in zip(expr.lookups, expr.command_flags):
            if not isinstance(key, str):
                key = self._evaluate(key, context)
            value = context.lookup_property(value, key, command)
        return value

    def _apply_filters(self, value: Any, expr: FilteredExpression, context: Context) -> Any:
        for call in expr.filters:
            args = [self._evaluate(arg, context) for arg in call.args]
            kwargs = {key: self._evaluate(arg, context) for key, arg in call.kwargs.items()}
            if not self.filters.has(call.name) and self.options.error_mode == "lax":
                continue
            value = self.filters.invoke(self, call.name, value, args, kwargs)
        return value

    # ---- control flow ----

    def _execute_if(self, statement: IfStatement, context: Context, output: List[str]) -> None:
        condition = is_truthy(self._evaluate(statement.condition, context))
        if statement.negate:
            condition = not condition
        if condition:
            self._render_block(statement.then_block.statements, context, output)
            return
        for branch in statement.elifs:
            if is_truthy(self._evaluate(branch.condition, context)):
                self._render_block(branch.block.statements, context, output)
                return
        if statement.else_block:
            self._render_block(statement.else_block.statements, context, output)

    def _execute_case(self, statement: CaseStatement, context: Context, output: List[str]) -> None:
        subject = self._evaluate(statement.subject, context)
        matched = False
        for branch in statement.branches:
            if not branch.values:
                if not matched:
                    self._render_block(branch.block.statements, context, output)
            else:
                for value in branch.values:
                    if liquid_eq(subject, self._evaluate(value, context)):
                        matched = True
                        self._render_block(branch.block.statements, context, output)
                        break
            if context.interrupts:
                return

    def _execute_for(self, statement: ForStatement, context: Context, output: List[str]) -> None:
        offsets = context.registers.setdefault("for", {})
        if statement.offset_continue:
            start = offsets.get(statement.name, 0)
        elif statement.offset is not None:
            offset = self._evaluate(statement.offset, context)
            start = 0 if offset is None else to_integer(offset)
        else:
            start = 0
        stop: Optional[int] = None
        if statement.limit is not None:
            limit = self._evaluate(statement.limit, context)
            if limit is not None:
                stop = start + to_integer(limit)

        collection = self._evaluate(statement.collection, context)
        segment = _slice_collection(collection, start, stop)
        if statement.reversed:
            segment.reverse()
        offsets[statement.name] = start + len(segment)

        if not segment:
            if statement.else_block:
                self._render_block(statement.else_block.statements, context, output)
            return

        for_stack = context.registers.setdefault("for_stack", [])
        parent = for_stack[-1] if for_stack else None
        loop = ForloopDrop(statement.name, len(segment), parent)
        body = statement.block.statements
        for_stack.append(loop)
        try:
            with context.scope():
                context.set_local("forloop", loop)
                for item in segment:
                    self._check_deadline()
                    context.set_local(statement.variable, item)
                    self._render_block(body, context, output)
                    loop._increment()
                    if context.interrupts:
                        if isinstance(context.pop_interrupt(), BreakInterrupt):
                            break
        finally:
            for_stack.pop()

    def _execute_tablerow(self, statement: TablerowStatement, context: Context, output: List[str]) -> None:
        collection = self._evaluate(statement.collection, context)
        if collection is None or collection is False:
            return
        start = 0
        if statement.offset is not None:
            offset = self._evaluate(statement.offset, context)
            start = 0 if offset is None else to_integer(offset)
        stop: Optional[int] = None
        if statement.limit is not None:
            limit = self._evaluate(statement.limit, context)
            if limit is not None:
                stop = start + to_integer(limit)
        segment = _slice_collection(collection, start, stop)
        length = len(segment)

        cols = length
        if statement.cols is not None:
            value = self._evaluate(statement.cols, context)
            if value is not None:
                cols = to_integer(value)
        if cols <= 0:
            cols = max(length, 1)

        for_stack = context.registers.get("for_stack") or []
        loop = TablerowloopDrop(length, cols, for_stack[-1] if for_stack else None)
        body = statement.block.statements
        output.append('<tr class="row1">\n')
        with context.scope():
            context.set_local("tablerowloop", loop)
            for item in segment:
                self._check_deadline()
                context.set_local(statement.variable, item)
                output.append(f'<td class="col{loop.col}">')
                self._render_block(body, context, output)
                output.append("</td>")
                if context.interrupts:
                    if isinstance(context.pop_interrupt(), BreakInterrupt):
                        break
                if loop.col_last and not loop.last:
                    output.append(f'</tr>\n<tr class="row{loop.row + 1}">')
                loop._increment()
        output.append("</tr>")

    def _execute_cycle(self, statement: CycleStatement, context: Context, output: List[str]) -> None:
        if statement.group is not None:
            key = liquid_value(self._evaluate(statement.group, context))
            if kind_of(key) in (TYPE_ARRAY, TYPE_MAP):
                key = to_output(key)
        else:
            key = statement.key
        cycles = context.registers.setdefault("cycle", {})
        iteration = cycles.get(key, 0)
        value = self._evaluate(statement.values[iteration % len(statement.values)], context)
        output.append(to_output(value))
        cycles[key] = (iteration + 1) % len(statement.values)

    def _execute_ifchanged(self, statement: IfchangedStatement, context: Context, output: List[str]) -> None:
        buffer: List[str] = []
        self._render_block(statement.block.statements, context, buffer)
        text = "".join(buffer)
        if text != context.registers.get("ifchanged"):
            context.registers["ifchanged"] = text
            output.append(text)

    # ---- partials ----

    def _execute_include(self, statement: IncludeStatement, context: Context, output: List[str]) -> None:
        if "include" in context.disabled_tags:
            raise DisabledTagError("include is not allowed in this context")
        name = self._evaluate(statement.template, context)
        if not isinstance(name, str):
            raise LiquidRenderError("Argument error in tag 'include' - Illegal template name")
        partial = self._load_partial(name, context)
        alias = statement.alias or name.split("/")[-1]
        if statement.variable is not None:
            variable = self._evaluate(statement.variable, context)
        else:
            variable = context.find_variable(name, raise_on_missing=False)

        saved_name = context.template_name
        self.call_stack.append(self._new_frame(name, statement.location, "include", partial.source))
        try:
            with context.scope(assign_target=True):
                context.template_name = name
                for key, expr in statement.attributes:
                    context.set_local(key, self._evaluate(expr, context))
                if kind_of(variable) == TYPE_ARRAY:
                    for item in variable:
                        context.set_local(alias, item)
                        self._render_block(partial.program.statements, context, output)
                        if context.interrupts:
                            break
                else:
                    context.set_local(alias, variable)
                    self._render_block(partial.program.statements, context, output)
        finally:
            context.template_name = saved_name
        self.call_stack.pop()

    def _execute_render(self, statement: RenderStatement, context: Context, output: List[str]) -> None:
        name = statement.template_name
        partial = self._load_partial(name, context)
        alias = statement.alias or name.split("/")[-1]
        variable = self._evaluate(statement.variable, context) if statement.variable is not None else None
        attributes = [(key, self._evaluate(expr, context)) for key, expr in statement.attributes]
        disabled = context.disabled_tags | {"include"}

        def render_one(value: Any, forloop: Optional[ForloopDrop]) -> None:
            inner = context.new_isolated_subcontext(disabled_tags=disabled)
            inner.template_name = name
            if forloop is not None:
                inner.set_local("forloop", forloop)
            for key, item in attributes:
                inner.set_local(key, item)
            if value is not None:
                inner.set_local(alias, value)
            self._render_block(partial.program.statements, inner, output)

        self.call_stack.append(self._new_frame(name, statement.location, "render", partial.source))
        if statement.is_for and _is_iterable(variable):
            items = to_iterable(variable)
            forloop = ForloopDrop(name, len(items), None)
            for item in items:
                self._check_deadline()
                render_one(item, forloop)
                forloop._increment()
        else:
            render_one(variable, None)
        self.call_stack.pop()

    def _load_partial(self, name: str, context: Context) -> Template:
        cache = context.registers.setdefault("cached_partials", {})
        template = cache.get(name)
        if template is not None:
            return template
        factory = context.registers.get("template_factory")
        template = factory(name) if factory is not None else None
        if template is None:
            file_system = context.registers.get("file_system") or BlankFileSystem()
            source = file_system.read_template_file(name)
            template = parse_template(source, name=name, max_depth=self.options.max_depth)
        cache[name] = template
        return template

    # ---- bookkeeping ----

    def _check_deadline(self) -> None:
        if self._deadline is not None and time.monotonic() > self._deadline:
            raise RenderTimeoutError("Render timed out")

    def _new_frame(self, name: str, call_location: Optional[SourceLocation], kind: str, source: str) -> Frame:
        frame_id = f"f_{self.frame_counter:04d}"
        self.frame_counter += 1
        return Frame(name=name, frame_id=frame_id, call_location=call_location, kind=kind, source=source)

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        if not self.hook_registry.has_handlers(event):
            return
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except LiquidError:
            raise
        except Exception as exc:
            line = None
            if self.logger.last_entry is not None and self.logger.last_entry.source_location is not None:
                line = self.logger.last_entry.source_location.line
            raise LiquidRenderError(f"Extension hook '{event}' failed: {exc}", line=line) from exc

    def _log_step(self, node: Node, context: Context) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        env_snapshot = context.snapshot() if self.options.verbose else None
        entry = self.logger.record(
            frame=frame,
            location=node.location,
            rule=type(node).__name__,
            env_snapshot=env_snapshot,
        )
        try:
            self.hook_registry.after_step(self, entry.step_index, entry.rule, node.location)
        except LiquidError:
            raise
        except Exception as exc:
            raise LiquidRenderError(f"Extension step rule failed: {exc}", line=node.location.line) from exc


def _slice_collection(collection: Any, start: int, stop: Optional[int]) -> List[Any]:
    segment: List[Any] = []
    for index, item in enumerate(to_iterable(collection)):
        if stop is not None and stop <= index:
            break
        if start <= index:
            segment.append(item)
    return segment


def _is_iterable(value: Any) -> bool:
    kind = kind_of(value)
    if kind in (TYPE_ARRAY, TYPE_MAP, TYPE_RANGE):
        return True
    return isinstance(value, Drop) and hasattr(value, "__iter__")


@dataclass
class TracebackFrame:
    template: str
    kind: str
    line: Optional[int]
    source_line: Optional[str]
    called_from: Optional[SourceLocation]
    state_entry: Optional[StateEntry]


class TracebackFormatter:
    """Renders the partial stack of a failed render, outermost template first."""

    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self) -> List[TracebackFrame]:
        frames: List[TracebackFrame] = []
        for frame in self.interpreter.call_stack:
            entry = self.interpreter.logger.last_entry_for_frame(frame.frame_id)
            line = entry.source_location.line if entry and entry.source_location else None
            frames.append(
                TracebackFrame(
                    template=frame.name,
                    kind=frame.kind,
                    line=line,
                    source_line=_source_line(frame.source, line),
                    called_from=frame.call_location,
                    state_entry=entry,
                )
            )
        return frames

    def format_text(self, error: LiquidError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames():
            where = f"line {frame.line}" if frame.line is not None else "before first node"
            head = f"  {frame.kind} '{frame.template}', {where}"
            if frame.called_from is not None:
                head += f" (from {frame.called_from.file} line {frame.called_from.line})"
            lines.append(head)
            if frame.source_line:
                lines.append(f"    {frame.source_line}")
            entry = frame.state_entry
            if entry is None:
                continue
            lines.append(f"    step {entry.step_index} ({entry.rule}) {entry.state_id}")
            if verbose and entry.env_snapshot:
                lines.append("    scope: " + ", ".join(f"{k}={v}" for k, v in entry.env_snapshot.items()))
        lines.append(f"{error.__class__.__name__}: {error}")
        return "\n".join(lines)

    def to_json(self, error: LiquidError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for frame in self.build_frames():
            item: Dict[str, Any] = {
                "template": frame.template,
                "kind": frame.kind,
                "line": frame.line,
                "source_line": frame.source_line,
                "called_from": None,
                "step": None,
            }
            if frame.called_from is not None:
                item["called_from"] = {"template": frame.called_from.file, "line": frame.called_from.line}
            entry = frame.state_entry
            if entry is not None:
                item["step"] = {"index": entry.step_index, "id": entry.state_id, "node": entry.rule}
                if entry.env_snapshot is not None:
                    item["scope"] = entry.env_snapshot
            frames_json.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "line": error.line,
                "template": error.template_name,
                "step_index": error.step_index,
                "rendered": str(error),
            },
            "frames": frames_json,
        }
        return json.dumps(data, indent=2)


def _source_line(source: str, line: Optional[int]) -> Optional[str]:
    if not source or line is None:
        return None
    lines = source.splitlines()
    if 1 <= line <= len(lines):
        return lines[line - 1].strip() or None
    return None
