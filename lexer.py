from __future__ import annotations
import re
from dataclasses import dataclass
from typing import List, Optional


class LiquidError(Exception):
    """Base class for template errors."""

    prefix = "Liquid error"

    def __init__(
        self,
        message: str,
        *,
        line: Optional[int] = None,
        template_name: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.line = line
        self.template_name = template_name
        self.step_index: Optional[int] = None

    def __str__(self) -> str:
        if self.line is not None:
            where = f"{self.template_name} line {self.line}" if self.template_name else f"line {self.line}"
            return f"{self.prefix} ({where}): {self.message}"
        if self.template_name:
            return f"{self.prefix} ({self.template_name}): {self.message}"
        return f"{self.prefix}: {self.message}"


class LiquidSyntaxError(LiquidError):
    """Raised when template or markup parsing fails."""

    prefix = "Liquid syntax error"


class LiquidRenderError(LiquidError):
    """Raised for render-time faults."""


class StackLevelError(LiquidRenderError):
    pass


class UndefinedVariable(LiquidRenderError):
    pass


class UndefinedFilter(LiquidRenderError):
    pass


class FileSystemError(LiquidRenderError):
    pass


class DisabledTagError(LiquidRenderError):
    pass


class ZeroDivisionLiquidError(LiquidRenderError):
    pass


class RenderTimeoutError(LiquidRenderError):
    pass


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int
    markup: str = ""
    markup_line: int = 0


# Template token kinds.
RAW = "RAW"
TAG = "TAG"
VAR = "VAR"

_MARKUP_START = re.compile(r"\{[\{%]")
_TAG_NAME = re.compile(r"\s*(#|\w+)", re.S)
_ENDRAW = re.compile(r"\{%(-?)\s*endraw\s*(-?)%\}")
_TRIM_CHARS = " \t\n\v\f\r"


class Lexer:
    """Splits template source into RAW / TAG / VAR tokens.

    Whitespace control markers are resolved here: RAW text next to a
    ``{%-`` / ``-%}`` (or ``{{-`` / ``-}}``) delimiter is stripped before it
    reaches the token stream. ``raw`` blocks are captured verbatim.
    """

    def __init__(self, text: str, filename: str = "<string>") -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self._line_start = 0

    def tokenize(self) -> List[Token]:
        # Each entry: (token, trim_left_of_token, trim_right_of_token)
        pending: List[tuple] = []
        pending_append = pending.append
        text = self.text
        n = len(text)

        while self.index < n:
            match = _MARKUP_START.search(text, self.index)
            if match is None:
                pending_append((self._raw_token(text[self.index:]), False, False))
                self._advance_to(n)
                break
            start = match.start()
            if start > self.index:
                pending_append((self._raw_token(text[self.index:start]), False, False))
                self._advance_to(start)

            line, col = self.line, start - self._line_start + 1
            is_tag = match.group(0) == "{%"
            closing = "%}" if is_tag else "}}"
            end = text.find(closing, start + 2)
            if end == -1:
                if is_tag:
                    raise LiquidSyntaxError(
                        f"Tag '{text[start:start + 40]}' was not properly terminated with regexp: /\\%\\}}/",
                        line=line,
                    )
                raise LiquidSyntaxError(
                    f"Variable '{text[start:start + 40]}' was not properly terminated with regexp: /\\}}\\}}/",
                    line=line,
                )

            inner = text[start + 2:end]
            trim_left = inner.startswith("-")
            trim_right = len(inner) > (1 if trim_left else 0) and inner.endswith("-")
            if trim_left:
                inner = inner[1:]
            if trim_right:
                inner = inner[:-1]
            self._advance_to(end + 2)

            if not is_tag:
                pending_append((Token(VAR, inner.strip(), line, col), trim_left, trim_right))
                continue

            name_match = _TAG_NAME.match(inner)
            if name_match is None:
                raise LiquidSyntaxError(f"Unknown tag '{inner.strip()}'", line=line)
            name = name_match.group(1)
            body = inner[name_match.end():].lstrip()
            markup_line = line + inner[: len(inner) - len(body)].count("\n")
            token = Token(TAG, name, line, col, markup=body.rstrip(), markup_line=markup_line)

            if name != "raw":
                pending_append((token, trim_left, trim_right))
                continue

            # raw: capture everything up to the matching endraw verbatim.
            end_match = _ENDRAW.search(text, self.index)
            if end_match is None:
                raise LiquidSyntaxError("'raw' tag was never closed", line=line)
            pending_append((Token(RAW, text[self.index:end_match.start()], line, col), trim_left, False))
            # The endraw delimiter's right trim applies to the following text.
            pending_append((None, False, bool(end_match.group(2))))
            self._advance_to(end_match.end())

        return self._apply_whitespace_control(pending)

    def _raw_token(self, value: str) -> Token:
        return Token(RAW, value, self.line, self.index - self._line_start + 1)

    def _apply_whitespace_control(self, pending: List[tuple]) -> List[Token]:
        tokens: List[Token] = []
        count = len(pending)
        for i, (token, _left, _right) in enumerate(pending):
            if token is None:
                continue
            if token.type == RAW and not _is_raw_block(pending, i):
                value = token.value
                if i > 0 and pending[i - 1][2]:
                    value = value.lstrip(_TRIM_CHARS)
                if i + 1 < count and pending[i + 1][1]:
                    value = value.rstrip(_TRIM_CHARS)
                if not value:
                    continue
                token.value = value
            tokens.append(token)
        return tokens

    def _advance_to(self, position: int) -> None:
        text = self.text
        newlines = text.count("\n", self.index, position)
        if newlines:
            self.line += newlines
            self._line_start = text.rfind("\n", self.index, position) + 1
        self.index = position


def _is_raw_block(pending: List[tuple], index: int) -> bool:
    # Body of a {% raw %} block: followed by the endraw marker entry.
    return index + 1 < len(pending) and pending[index + 1][0] is None


def tokenize_liquid_markup(markup: str, line: int) -> List[Token]:
    """Turn the body of a ``{% liquid %}`` tag into TAG tokens, one per line."""
    tokens: List[Token] = []
    for offset, raw_line in enumerate(markup.splitlines()):
        stripped = raw_line.strip()
        if not stripped:
            continue
        name_match = _TAG_NAME.match(stripped)
        if name_match is None:
            raise LiquidSyntaxError(f"Unknown tag '{stripped}'", line=line + offset)
        name = name_match.group(1)
        rest = stripped[name_match.end():].strip()
        tokens.append(Token(TAG, name, line + offset, 1, markup=rest, markup_line=line + offset))
    return tokens


# ---- markup (expression) tokens ----

ID = "ID"
STRING = "STRING"
NUMBER = "NUMBER"
COMPARISON = "COMPARISON"
DOT = "DOT"
DOTDOT = "DOTDOT"
PIPE = "PIPE"
COLON = "COLON"
COMMA = "COMMA"
LBRACKET = "LBRACKET"
RBRACKET = "RBRACKET"
LPAREN = "LPAREN"
RPAREN = "RPAREN"
EOS = "EOS"

SYMBOLS = {
    "|": PIPE,
    ".": DOT,
    ":": COLON,
    ",": COMMA,
    "[": LBRACKET,
    "]": RBRACKET,
    "(": LPAREN,
    ")": RPAREN,
}

TOKEN_NAMES = {
    ID: "id",
    STRING: "string",
    NUMBER: "number",
    COMPARISON: "comparison",
    DOT: "dot",
    DOTDOT: "dotdot",
    PIPE: "pipe",
    COLON: "colon",
    COMMA: "comma",
    LBRACKET: "open_square",
    RBRACKET: "close_square",
    LPAREN: "open_round",
    RPAREN: "close_round",
    EOS: "end_of_string",
}

_WHITESPACE = re.compile(r"\s+")
_COMPARISON = re.compile(r"==|!=|<>|<=|>=|<|>|contains(?=\s)")
_STRING = re.compile(r"'[^']*'|\"[^\"]*\"")
_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_IDENTIFIER = re.compile(r"[A-Za-z_][\w-]*\??")


class ExpressionLexer:
    """Tokenizes the markup of a single tag or output statement."""

    def __init__(self, markup: str, line: int) -> None:
        self.markup = markup
        self.line = line

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        markup = self.markup
        line = self.line
        n = len(markup)
        pos = 0

        while pos < n:
            match = _WHITESPACE.match(markup, pos)
            if match:
                pos = match.end()
                continue
            match = _COMPARISON.match(markup, pos)
            if match:
                tokens_append(Token(COMPARISON, match.group(0), line, pos))
                pos = match.end()
                continue
            match = _STRING.match(markup, pos)
            if match:
                tokens_append(Token(STRING, match.group(0), line, pos))
                pos = match.end()
                continue
            match = _NUMBER.match(markup, pos)
            if match:
                tokens_append(Token(NUMBER, match.group(0), line, pos))
                pos = match.end()
                continue
            match = _IDENTIFIER.match(markup, pos)
            if match:
                tokens_append(Token(ID, match.group(0), line, pos))
                pos = match.end()
                continue
            if markup.startswith("..", pos):
                tokens_append(Token(DOTDOT, "..", line, pos))
                pos += 2
                continue
            ch = markup[pos]
            if ch in SYMBOLS:
                tokens_append(Token(SYMBOLS[ch], ch, line, pos))
                pos += 1
                continue
            raise LiquidSyntaxError(f"Unexpected character {ch} in \"{markup}\"", line=line)

        tokens_append(Token(EOS, "", line, n))
        return tokens
