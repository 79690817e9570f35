from __future__ import annotations
import itertools
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Set, Tuple

from lexer import (
    COLON,
    COMMA,
    COMPARISON,
    DOT,
    DOTDOT,
    EOS,
    ID,
    LBRACKET,
    LPAREN,
    NUMBER,
    PIPE,
    RAW,
    RBRACKET,
    RPAREN,
    STRING,
    TAG,
    TOKEN_NAMES,
    VAR,
    ExpressionLexer,
    LiquidSyntaxError,
    Token,
    tokenize_liquid_markup,
)
from values import BLANK, EMPTY, Range


MAX_KEYWORD_ARGUMENTS = 255
COMMAND_METHODS = frozenset({"size", "first", "last"})
_KEYWORD_LITERALS = {"nil": None, "null": None, "true": True, "false": False, "empty": EMPTY, "blank": BLANK}
_BLOCK_DELIMITERS = frozenset({"else", "elsif", "when"})

TAG_PARSERS = {
    "#": "_parse_inline_comment",
    "assign": "_parse_assign",
    "break": "_parse_break",
    "capture": "_parse_capture",
    "case": "_parse_case",
    "comment": "_parse_comment",
    "continue": "_parse_continue",
    "cycle": "_parse_cycle",
    "decrement": "_parse_decrement",
    "doc": "_parse_doc",
    "echo": "_parse_echo",
    "for": "_parse_for",
    "if": "_parse_if",
    "ifchanged": "_parse_ifchanged",
    "include": "_parse_include",
    "increment": "_parse_increment",
    "liquid": "_parse_liquid",
    "render": "_parse_render",
    "tablerow": "_parse_tablerow",
    "unless": "_parse_unless",
}

# Unnamed cycles over non-literal values are keyed by node identity.
_cycle_ids = itertools.count(1)


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


@dataclass
class Program(Node):
    statements: List["Statement"]


class Statement(Node):
    pass


@dataclass
class Block(Statement):
    statements: List[Statement]


class Expression(Node):
    pass


@dataclass
class Literal(Expression):
    value: Any


@dataclass
class VariableLookup(Expression):
    name: Any  # str, or an Expression for ``[expr]`` roots
    lookups: List[Any]
    command_flags: List[bool]


@dataclass
class RangeExpression(Expression):
    start: Expression
    end: Expression


@dataclass
class Comparison(Expression):
    left: Expression
    operator: str
    right: Expression


@dataclass
class Logical(Expression):
    operator: str
    left: Expression
    right: Expression


@dataclass
class FilterCall:
    name: str
    args: List[Expression]
    kwargs: Dict[str, Expression]
    location: SourceLocation


@dataclass
class FilteredExpression(Expression):
    expression: Expression
    filters: List[FilterCall]


@dataclass
class Text(Statement):
    text: str


@dataclass
class Output(Statement):
    expression: FilteredExpression


@dataclass
class Assign(Statement):
    target: str
    expression: FilteredExpression


@dataclass
class Capture(Statement):
    target: str
    block: Block


@dataclass
class IfBranch:
    condition: Expression
    block: Block


@dataclass
class IfStatement(Statement):
    condition: Expression
    then_block: Block
    elifs: List[IfBranch]
    else_block: Optional[Block]
    negate: bool = False


@dataclass
class WhenBranch:
    values: List[Expression]  # empty for the else branch
    block: Block


@dataclass
class CaseStatement(Statement):
    subject: Expression
    branches: List[WhenBranch]


@dataclass
class ForStatement(Statement):
    variable: str
    collection: Expression
    name: str
    block: Block
    else_block: Optional[Block]
    reversed: bool = False
    limit: Optional[Expression] = None
    offset: Optional[Expression] = None
    offset_continue: bool = False


@dataclass
class TablerowStatement(Statement):
    variable: str
    collection: Expression
    block: Block
    cols: Optional[Expression] = None
    limit: Optional[Expression] = None
    offset: Optional[Expression] = None


@dataclass
class CycleStatement(Statement):
    group: Optional[Expression]
    values: List[Expression]
    key: Any


@dataclass
class CounterStatement(Statement):
    variable: str
    delta: int


@dataclass
class BreakStatement(Statement):
    pass


@dataclass
class ContinueStatement(Statement):
    pass


@dataclass
class IfchangedStatement(Statement):
    block: Block


@dataclass
class PartialStatement(Statement):
    template: Expression
    variable: Optional[Expression]
    is_for: bool
    alias: Optional[str]
    attributes: List[Tuple[str, Expression]] = field(default_factory=list)


class IncludeStatement(PartialStatement):
    pass


@dataclass
class RenderStatement(PartialStatement):
    template_name: str = ""


class MarkupParser:
    """Recursive-descent parser over the tokens of one tag's markup."""

    def __init__(self, markup: str, location: SourceLocation) -> None:
        self.markup = markup
        self.location = location
        self.tokens = ExpressionLexer(markup, location.line).tokenize()
        self.index = 0

    # ---- entry points ----

    def filtered_expression(self) -> FilteredExpression:
        if self._peek().type == EOS:
            expression: Expression = Literal(location=self.location, value=None)
        else:
            expression = self.expression()
        filters: List[FilterCall] = []
        while self._match(PIPE):
            filters.append(self._filter_call())
        return FilteredExpression(location=self.location, expression=expression, filters=filters)

    def filtered_expression_to_end(self) -> FilteredExpression:
        expression = self.filtered_expression()
        self.end()
        return expression

    def condition(self) -> Expression:
        left = self.comparison()
        token = self._peek()
        if token.type == ID and token.value in ("and", "or"):
            self.index += 1
            right = self.condition()
            return Logical(location=self.location, operator=token.value, left=left, right=right)
        return left

    def comparison(self) -> Expression:
        left = self.expression()
        if self._peek().type == COMPARISON:
            operator = self._consume(COMPARISON).value
            right = self.expression()
            return Comparison(location=self.location, left=left, operator=operator, right=right)
        return left

    def expression(self) -> Expression:
        token = self._peek()
        if token.type == STRING:
            self.index += 1
            return Literal(location=self.location, value=token.value[1:-1])
        if token.type == NUMBER:
            self.index += 1
            return Literal(location=self.location, value=_parse_number(token.value))
        if token.type == LPAREN:
            return self._range()
        if token.type == ID:
            if token.value in _KEYWORD_LITERALS and self._peek_next().type not in (DOT, LBRACKET):
                self.index += 1
                return Literal(location=self.location, value=_KEYWORD_LITERALS[token.value])
            return self.variable_lookup()
        if token.type == LBRACKET:
            return self.variable_lookup()
        raise LiquidSyntaxError(f"{TOKEN_NAMES[token.type].capitalize()} is not a valid expression", line=token.line)

    def variable_lookup(self) -> VariableLookup:
        if self._match(LBRACKET):
            name: Any = self.expression()
            self._consume(RBRACKET)
        else:
            name = self._consume(ID).value
        lookups: List[Any] = []
        command_flags: List[bool] = []
        while True:
            if self._match(DOT):
                key = self._consume(ID).value
                lookups.append(key)
                command_flags.append(key in COMMAND_METHODS)
            elif self._match(LBRACKET):
                lookups.append(self.expression())
                self._consume(RBRACKET)
                command_flags.append(False)
            else:
                break
        return VariableLookup(location=self.location, name=name, lookups=lookups, command_flags=command_flags)

    def end(self) -> None:
        token = self._peek()
        if token.type != EOS:
            raise LiquidSyntaxError(f"Expected end_of_string but found {TOKEN_NAMES[token.type]}", line=token.line)

    # ---- helpers used by tag grammars ----

    def id_is(self, word: str) -> bool:
        token = self._peek()
        if token.type == ID and token.value == word:
            self.index += 1
            return True
        return False

    def look(self, token_type: str, ahead: int = 0) -> bool:
        position = min(self.index + ahead, len(self.tokens) - 1)
        return self.tokens[position].type == token_type

    def source_since(self, start_index: int) -> str:
        first = self.tokens[start_index]
        last = self.tokens[self.index - 1]
        return self.markup[first.column:last.column + len(last.value)]

    def attributes(self) -> List[Tuple[str, Expression]]:
        attributes: List[Tuple[str, Expression]] = []
        self._match(COMMA)
        while self.look(ID):
            key = self._consume(ID).value
            self._consume(COLON)
            attributes.append((key, self.expression()))
            self._match(COMMA)
        return attributes

    def _range(self) -> Expression:
        self._consume(LPAREN)
        start = self.expression()
        self._consume(DOTDOT)
        end = self.expression()
        self._consume(RPAREN)
        if isinstance(start, Literal) and isinstance(end, Literal) and _is_int(start.value) and _is_int(end.value):
            return Literal(location=self.location, value=Range(start.value, end.value))
        return RangeExpression(location=self.location, start=start, end=end)

    def _filter_call(self) -> FilterCall:
        name = self._consume(ID).value
        args: List[Expression] = []
        kwargs: Dict[str, Expression] = {}
        if self._match(COLON):
            while True:
                if self.look(ID) and self.look(COLON, 1):
                    key = self._consume(ID).value
                    self._consume(COLON)
                    kwargs[key] = self.expression()
                    if len(kwargs) > MAX_KEYWORD_ARGUMENTS:
                        raise LiquidSyntaxError("Too many keyword arguments", line=self.location.line)
                else:
                    args.append(self.expression())
                if not self._match(COMMA):
                    break
        return FilterCall(name=name, args=args, kwargs=kwargs, location=self.location)

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise LiquidSyntaxError(
                f"Expected {TOKEN_NAMES[token_type]} but found {TOKEN_NAMES[token.type]}",
                line=token.line,
            )
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        return self.tokens[min(self.index + 1, len(self.tokens) - 1)]


def _parse_number(text: str) -> Any:
    if "." in text:
        return float(text)
    return int(text)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _literal_key(expression: Expression) -> Any:
    value = expression.value
    if isinstance(value, (float, Decimal)):
        return ("float", repr(value))
    return (type(value).__name__, repr(value))


class Parser:
    """Builds a Program from template tokens, dispatching on tag names."""

    def __init__(
        self,
        tokens: List[Token],
        filename: str,
        source_lines: List[str],
        *,
        max_depth: int = 100,
        depth: int = 0,
    ):
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.max_depth = max_depth
        self.depth = depth
        self.index = 0

    def parse(self) -> Program:
        statements, _ = self._parse_statements(owner=None, delimiters=frozenset())
        location = SourceLocation(file=self.filename, line=1, column=1, statement="")
        return Program(location=location, statements=statements)

    def _parse_statements(
        self, owner: Optional[Token], delimiters: frozenset
    ) -> Tuple[List[Statement], Optional[Token]]:
        statements: List[Statement] = []
        while self.index < len(self.tokens):
            token = self.tokens[self.index]
            self.index += 1
            if token.type == RAW:
                statements.append(Text(location=self._location_from_token(token), text=token.value))
            elif token.type == VAR:
                location = self._location_from_token(token)
                expression = self._markup(token.value, location).filtered_expression_to_end()
                statements.append(Output(location=location, expression=expression))
            elif token.value in delimiters:
                return statements, token
            else:
                statement = self._parse_tag(token, owner)
                if statement is not None:
                    statements.append(statement)
        if owner is not None:
            raise LiquidSyntaxError(f"'{owner.value}' tag was never closed", line=owner.line)
        return statements, None

    def _parse_tag(self, token: Token, owner: Optional[Token]) -> Optional[Statement]:
        name = token.value
        handler_name = TAG_PARSERS.get(name)
        if handler_name is not None:
            return getattr(self, handler_name)(token)
        if name.startswith("end") or name in _BLOCK_DELIMITERS:
            if owner is None:
                raise LiquidSyntaxError(f"Unexpected outer '{name}' tag", line=token.line)
            raise LiquidSyntaxError(
                f"'{name}' is not a valid delimiter for {owner.value} tags. use end{owner.value}",
                line=token.line,
            )
        raise LiquidSyntaxError(f"Unknown tag '{name}'", line=token.line)

    def _parse_body(self, owner: Token, delimiters: Set[str]) -> Tuple[Block, Token]:
        self.depth += 1
        if self.depth > self.max_depth:
            raise LiquidSyntaxError("Nesting too deep", line=owner.line)
        try:
            statements, closing = self._parse_statements(owner, frozenset(delimiters))
        finally:
            self.depth -= 1
        return Block(location=self._location_from_token(owner), statements=statements), closing

    # ---- output-style tags ----

    def _parse_echo(self, token: Token) -> Output:
        location = self._location_from_token(token)
        return Output(location=location, expression=self._markup(token.markup, location).filtered_expression_to_end())

    def _parse_assign(self, token: Token) -> Assign:
        location = self._location_from_token(token)
        target, sep, source = token.markup.partition("=")
        target = target.strip()
        if not sep or not target or not _valid_target(target):
            raise LiquidSyntaxError("Syntax Error in 'assign' - Valid syntax: assign [var] = [source]", line=token.line)
        expression = self._markup(source.strip(), location).filtered_expression_to_end()
        return Assign(location=location, target=target, expression=expression)

    def _parse_capture(self, token: Token) -> Capture:
        target = token.markup.strip()
        if len(target) >= 2 and target[0] == target[-1] and target[0] in "'\"":
            target = target[1:-1]
        if not target or not _valid_target(target):
            raise LiquidSyntaxError("Syntax Error in 'capture' - Valid syntax: capture [var]", line=token.line)
        block, _ = self._parse_body(token, {"endcapture"})
        return Capture(location=self._location_from_token(token), target=target, block=block)

    def _parse_increment(self, token: Token) -> CounterStatement:
        return self._parse_counter(token, 1)

    def _parse_decrement(self, token: Token) -> CounterStatement:
        return self._parse_counter(token, -1)

    def _parse_counter(self, token: Token, delta: int) -> CounterStatement:
        variable = token.markup.strip()
        if not variable or not _valid_target(variable):
            raise LiquidSyntaxError(
                f"Syntax Error in '{token.value}' - Valid syntax: {token.value} [var]", line=token.line
            )
        return CounterStatement(location=self._location_from_token(token), variable=variable, delta=delta)

    def _parse_cycle(self, token: Token) -> CycleStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        if parser.look(EOS):
            raise LiquidSyntaxError(
                "Syntax Error in 'cycle' - Valid syntax: cycle [name :] var [, var2, var3 ...]", line=token.line
            )
        group: Optional[Expression] = None
        first = parser.expression()
        values: List[Expression] = []
        if parser._match(COLON):
            group = first
            values.append(parser.expression())
        else:
            values.append(first)
        while parser._match(COMMA):
            values.append(parser.expression())
        parser.end()
        if group is not None:
            key = None
        elif all(isinstance(value, Literal) for value in values):
            key = ("values",) + tuple(_literal_key(value) for value in values)
        else:
            key = ("node", next(_cycle_ids))
        return CycleStatement(location=location, group=group, values=values, key=key)

    # ---- control flow ----

    def _parse_if(self, token: Token) -> IfStatement:
        return self._parse_conditional(token, negate=False)

    def _parse_unless(self, token: Token) -> IfStatement:
        return self._parse_conditional(token, negate=True)

    def _parse_conditional(self, token: Token, *, negate: bool) -> IfStatement:
        end_name = f"end{token.value}"
        delimiters = {"elsif", "else", end_name}
        condition = self._condition(token)
        then_block, closing = self._parse_body(token, delimiters)
        elifs: List[IfBranch] = []
        else_block: Optional[Block] = None
        while closing.value == "elsif":
            branch_condition = self._condition(closing)
            block, next_closing = self._parse_body(token, delimiters)
            elifs.append(IfBranch(condition=branch_condition, block=block))
            closing = next_closing
        if closing.value == "else":
            else_block, closing = self._parse_body(token, {end_name})
        return IfStatement(
            location=self._location_from_token(token),
            condition=condition,
            then_block=then_block,
            elifs=elifs,
            else_block=else_block,
            negate=negate,
        )

    def _condition(self, token: Token) -> Expression:
        if not token.markup:
            raise LiquidSyntaxError(f"Syntax Error in tag '{token.value}' - Valid syntax: {token.value} [expression]", line=token.line)
        parser = self._markup(token.markup, self._location_from_token(token))
        condition = parser.condition()
        parser.end()
        return condition

    def _parse_case(self, token: Token) -> CaseStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        subject = parser.expression()
        parser.end()
        delimiters = {"when", "else", "endcase"}
        # Anything between the case tag and the first when is discarded.
        _, closing = self._parse_body(token, delimiters)
        branches: List[WhenBranch] = []
        while closing.value != "endcase":
            if closing.value == "when":
                values = self._when_values(closing)
            else:
                values = []
            block, closing = self._parse_body(token, delimiters)
            branches.append(WhenBranch(values=values, block=block))
        return CaseStatement(location=location, subject=subject, branches=branches)

    def _when_values(self, token: Token) -> List[Expression]:
        parser = self._markup(token.markup, self._location_from_token(token))
        values = [parser.expression()]
        while parser._match(COMMA) or parser.id_is("or"):
            values.append(parser.expression())
        parser.end()
        return values

    def _parse_for(self, token: Token) -> ForStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        variable, collection, name = self._loop_head(parser, token)
        is_reversed = parser.id_is("reversed")
        limit: Optional[Expression] = None
        offset: Optional[Expression] = None
        offset_continue = False
        parser._match(COMMA)
        while parser.look(ID):
            attribute = parser._consume(ID).value
            parser._consume(COLON)
            if attribute == "limit":
                limit = parser.expression()
            elif attribute == "offset":
                if parser.look(ID) and parser._peek().value == "continue" and not parser.look(DOT, 1) and not parser.look(LBRACKET, 1):
                    parser.index += 1
                    offset_continue = True
                else:
                    offset = parser.expression()
            else:
                raise LiquidSyntaxError("Invalid attribute in for loop. Valid attributes are limit and offset", line=token.line)
            parser._match(COMMA)
        parser.end()
        block, closing = self._parse_body(token, {"else", "endfor"})
        else_block: Optional[Block] = None
        if closing.value == "else":
            else_block, _ = self._parse_body(token, {"endfor"})
        return ForStatement(
            location=location,
            variable=variable,
            collection=collection,
            name=name,
            block=block,
            else_block=else_block,
            reversed=is_reversed,
            limit=limit,
            offset=offset,
            offset_continue=offset_continue,
        )

    def _parse_tablerow(self, token: Token) -> TablerowStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        variable, collection, _ = self._loop_head(parser, token)
        attributes = dict(parser.attributes())
        parser.end()
        for attribute in attributes:
            if attribute not in ("cols", "limit", "offset"):
                raise LiquidSyntaxError(
                    "Invalid attribute in tablerow loop. Valid attributes are cols, limit and offset", line=token.line
                )
        block, _ = self._parse_body(token, {"endtablerow"})
        return TablerowStatement(
            location=location,
            variable=variable,
            collection=collection,
            block=block,
            cols=attributes.get("cols"),
            limit=attributes.get("limit"),
            offset=attributes.get("offset"),
        )

    def _loop_head(self, parser: MarkupParser, token: Token) -> Tuple[str, Expression, str]:
        if not parser.look(ID) or not parser._peek_next().value == "in":
            raise LiquidSyntaxError(
                f"Syntax Error in '{token.value} loop' - Valid syntax: {token.value} [item] in [collection]",
                line=token.line,
            )
        variable = parser._consume(ID).value
        parser.id_is("in")
        start = parser.index
        collection = parser.expression()
        return variable, collection, f"{variable}-{parser.source_since(start)}"

    def _parse_break(self, token: Token) -> BreakStatement:
        return BreakStatement(location=self._location_from_token(token))

    def _parse_continue(self, token: Token) -> ContinueStatement:
        return ContinueStatement(location=self._location_from_token(token))

    def _parse_ifchanged(self, token: Token) -> IfchangedStatement:
        block, _ = self._parse_body(token, {"endifchanged"})
        return IfchangedStatement(location=self._location_from_token(token), block=block)

    # ---- partials ----

    def _parse_include(self, token: Token) -> IncludeStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        template = parser.expression()
        variable, is_for, alias, attributes = self._partial_tail(parser)
        return IncludeStatement(
            location=location,
            template=template,
            variable=variable,
            is_for=is_for,
            alias=alias,
            attributes=attributes,
        )

    def _parse_render(self, token: Token) -> RenderStatement:
        location = self._location_from_token(token)
        parser = self._markup(token.markup, location)
        if not parser.look(STRING):
            raise LiquidSyntaxError("Syntax error in tag 'render' - Template name must be a quoted string", line=token.line)
        template = parser.expression()
        variable, is_for, alias, attributes = self._partial_tail(parser)
        return RenderStatement(
            location=location,
            template=template,
            variable=variable,
            is_for=is_for,
            alias=alias,
            attributes=attributes,
            template_name=template.value,
        )

    def _partial_tail(self, parser: MarkupParser):
        variable: Optional[Expression] = None
        is_for = False
        if parser.id_is("with"):
            variable = parser.expression()
        elif parser.id_is("for"):
            variable = parser.expression()
            is_for = True
        alias: Optional[str] = None
        if parser.id_is("as"):
            alias = parser._consume(ID).value
        attributes = parser.attributes()
        parser.end()
        return variable, is_for, alias, attributes

    # ---- tags handled without parsing their markup ----

    def _parse_comment(self, token: Token) -> None:
        self._skip_until(token, "endcomment")
        return None

    def _parse_doc(self, token: Token) -> None:
        self._skip_until(token, "enddoc")
        return None

    def _parse_inline_comment(self, token: Token) -> None:
        for line in token.markup.splitlines()[1:]:
            if line.strip() and not line.strip().startswith("#"):
                raise LiquidSyntaxError(
                    "Syntax error in tag '#' - Each line of comments must be prefixed by the '#' character",
                    line=token.line,
                )
        return None

    def _skip_until(self, token: Token, end_name: str) -> None:
        depth = 0
        while self.index < len(self.tokens):
            current = self.tokens[self.index]
            self.index += 1
            if current.type != TAG:
                continue
            if current.value == token.value:
                depth += 1
            elif current.value == end_name:
                if depth == 0:
                    return
                depth -= 1
        raise LiquidSyntaxError(f"'{token.value}' tag was never closed", line=token.line)

    def _parse_liquid(self, token: Token) -> Block:
        tokens = tokenize_liquid_markup(token.markup, token.markup_line or token.line)
        parser = Parser(tokens, self.filename, self.source_lines, max_depth=self.max_depth, depth=self.depth)
        statements, _ = parser._parse_statements(owner=None, delimiters=frozenset())
        return Block(location=self._location_from_token(token), statements=statements)

    # ---- helpers ----

    def _markup(self, markup: str, location: SourceLocation) -> MarkupParser:
        return MarkupParser(markup, location)

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def _valid_target(name: str) -> bool:
    return all(ch.isalnum() or ch in "_-.[]" for ch in name)


def parse_markup_expression(markup: str, line: int = 1) -> FilteredExpression:
    location = SourceLocation(file="<markup>", line=line, column=1, statement=markup)
    return MarkupParser(markup, location).filtered_expression_to_end()
