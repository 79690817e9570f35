import pytest

from lexer import (
    COMPARISON,
    DOT,
    EOS,
    ID,
    NUMBER,
    PIPE,
    RAW,
    STRING,
    TAG,
    VAR,
    COLON,
    COMMA,
    ExpressionLexer,
    Lexer,
    LiquidSyntaxError,
    tokenize_liquid_markup,
)


def test_splits_text_tags_and_variables():
    tokens = Lexer("Hello {{ name }}!{% if x %}y{% endif %}").tokenize()

    assert [t.type for t in tokens] == [RAW, VAR, RAW, TAG, RAW, TAG]
    assert tokens[0].value == "Hello "
    assert tokens[1].value == "name"
    assert tokens[3].value == "if"
    assert tokens[3].markup == "x"
    assert tokens[5].value == "endif"


def test_tag_markup_and_line_numbers():
    tokens = Lexer("a\n\n{% for i in items %}\n{{ i }}").tokenize()

    tag = [t for t in tokens if t.type == TAG][0]
    var = [t for t in tokens if t.type == VAR][0]
    assert tag.line == 3
    assert tag.markup == "i in items"
    assert var.line == 4


def test_whitespace_control_strips_adjacent_text():
    tokens = Lexer("a  \n {%- assign x = 1 -%} \n b {{- x -}}  c").tokenize()

    assert [(t.type, t.value) for t in tokens] == [
        (RAW, "a"),
        (TAG, "assign"),
        (RAW, "b"),
        (VAR, "x"),
        (RAW, "c"),
    ]


def test_raw_body_is_verbatim():
    tokens = Lexer("{% raw %} {{ x }} {%- if -%} {% endraw %}").tokenize()

    assert len(tokens) == 1
    assert tokens[0].type == RAW
    assert tokens[0].value == " {{ x }} {%- if -%} "


def test_unclosed_raw_fails():
    with pytest.raises(LiquidSyntaxError, match="'raw' tag was never closed"):
        Lexer("{% raw %}abc").tokenize()


def test_unterminated_tag_fails():
    with pytest.raises(LiquidSyntaxError, match="was not properly terminated"):
        Lexer("text {% if x").tokenize()


def test_unterminated_variable_fails_with_line():
    with pytest.raises(LiquidSyntaxError) as info:
        Lexer("one\ntwo {{ x").tokenize()

    assert info.value.line == 2
    assert "Variable '{{ x' was not properly terminated" in info.value.message


def test_inline_comment_tag_name():
    tokens = Lexer("{% # a note %}").tokenize()

    assert tokens[0].value == "#"
    assert tokens[0].markup == "a note"


def test_liquid_markup_becomes_one_tag_per_line():
    tokens = tokenize_liquid_markup("assign x = 1\n\n  echo x | upcase\n", 5)

    assert [(t.value, t.markup, t.line) for t in tokens] == [
        ("assign", "x = 1", 5),
        ("echo", "x | upcase", 7),
    ]


def test_expression_tokens():
    tokens = ExpressionLexer("product.title | truncate: 10, 'x'", 1).tokenize()

    assert [t.type for t in tokens] == [ID, DOT, ID, PIPE, ID, COLON, NUMBER, COMMA, STRING, EOS]
    assert tokens[8].value == "'x'"


def test_contains_needs_trailing_whitespace():
    assert ExpressionLexer("a contains b", 1).tokenize()[1].type == COMPARISON
    assert ExpressionLexer("containsx", 1).tokenize()[0].type == ID


def test_identifiers_allow_dashes_and_question_mark():
    tokens = ExpressionLexer("my-var empty?", 1).tokenize()

    assert [t.value for t in tokens[:2]] == ["my-var", "empty?"]


def test_unexpected_character():
    with pytest.raises(LiquidSyntaxError, match='Unexpected character @ in "a @ b"'):
        ExpressionLexer("a @ b", 1).tokenize()
