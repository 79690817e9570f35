import pytest

from filters import Filters, FilterFunction
from interpreter import RenderOptions, parse_template, render
from lexer import LiquidRenderError, UndefinedFilter, ZeroDivisionLiquidError


PRODUCTS = [
    {"title": "Hat", "type": "hat", "available": True, "price": 10},
    {"title": "Shoe", "type": "shoe", "available": False, "price": 25},
    {"title": "Boot", "type": "shoe", "available": True, "price": "5"},
]


@pytest.mark.parametrize(
    "source, expected",
    [
        ("{{ 'hello world' | capitalize }}", "Hello world"),
        ("{{ 'MiXeD' | downcase }}-{{ 'MiXeD' | upcase }}", "mixed-MIXED"),
        ("[{{ '  a  ' | strip }}][{{ '  a' | lstrip }}][{{ 'a  ' | rstrip }}]", "[a][a][a]"),
        ("{{ '<p>hi <b>there</b></p><script>x</script>' | strip_html }}", "hi there"),
        ("{{ \"<b>'x'</b>\" | escape }}", "&lt;b&gt;&#39;x&#39;&lt;/b&gt;"),
        ("{{ '&lt; <' | escape_once }}", "&lt; &lt;"),
        ("{{ 'a b&c' | url_encode }}", "a+b%26c"),
        ("{{ 'a+b%21' | url_decode }}", "a b!"),
        ("{{ 'hi' | base64_encode }}|{{ 'aGk=' | base64_decode }}", "aGk=|hi"),
        ("{{ 'abc' | append: 'd' | prepend: '_' }}", "_abcd"),
        ("{{ 'aXbXc' | replace: 'X', '-' }}", "a-b-c"),
        ("{{ 'aXbXc' | replace_first: 'X', '-' }}", "a-bXc"),
        ("{{ 'aXbXc' | replace_last: 'X', '-' }}", "aXb-c"),
        ("{{ 'aXbXc' | remove: 'X' }}|{{ 'aXbXc' | remove_first: 'X' }}|{{ 'aXbXc' | remove_last: 'X' }}", "abc|abXc|aXbc"),
        ("{{ 'Ground control to Major Tom.' | truncate: 20 }}", "Ground control to..."),
        ("{{ 'Ground control to Major Tom.' | truncate: 20, '' }}", "Ground control to Ma"),
        ("{{ 'Ground control to Major Tom.' | truncatewords: 3 }}", "Ground control to..."),
        ("{{ 'short' | truncatewords: 3 }}", "short"),
        ("{{ 'a,b,,c,,' | split: ',' | join: '-' }}", "a-b--c"),
        ("{{ 'a  b c' | split: ' ' | size }}", "3"),
        ("{{ 'Liquid' | slice: 2, 3 }}|{{ 'Liquid' | slice: -3, 2 }}|{{ 'Liquid' | slice: 0 }}", "qui|ui|L"),
        ("{{ 'line1\nline2' | newline_to_br }}", "line1<br />\nline2"),
        ("{{ 'a\nb' | strip_newlines }}", "ab"),
        ("{{ 'abc' | size }}|{{ nil | size }}", "3|0"),
    ],
)
def test_string_filters(render_text, source, expected):
    assert render_text(source) == expected


@pytest.mark.parametrize(
    "source, expected",
    [
        ("{{ list | join: ',' }}", "3,1,2"),
        ("{{ list | first }}|{{ list | last }}", "3|2"),
        ("{{ list | reverse | join }}", "2 1 3"),
        ("{{ list | sort | join: ',' }}", "1,2,3"),
        ("{{ with_nil | sort | join: ',' }}", "1,3,"),
        ("{{ names | sort | join: ',' }}|{{ names | sort_natural | join: ',' }}", "A,C,b|A,b,C"),
        ("{{ dupes | uniq | join: ',' }}", "1,2"),
        ("{{ with_nil | compact | join: ',' }}", "3,1"),
        ("{{ nested | join: ',' }}", "1,2,3"),
        ("{{ list | concat: names | join: ',' }}", "3,1,2,b,A,C"),
        ("{{ list | sum }}|{{ products | sum: 'price' }}", "6|40"),
        ("{{ products | map: 'title' | join: ',' }}", "Hat,Shoe,Boot"),
        ("{{ products | where: 'available' | map: 'title' | join: ',' }}", "Hat,Boot"),
        ("{{ products | where: 'type', 'shoe' | map: 'title' | join: ',' }}", "Shoe,Boot"),
        ("{{ products | reject: 'available' | map: 'title' | join: ',' }}", "Shoe"),
        ("{{ products | find: 'type', 'shoe' | map: 'title' }}", "Shoe"),
        ("{{ products | find_index: 'title', 'Boot' }}", "2"),
        ("{{ products | has: 'type', 'hat' }}|{{ products | has: 'type', 'sock' }}", "true|false"),
        ("{{ products | sort: 'title' | map: 'title' | join: ',' }}", "Boot,Hat,Shoe"),
        ("{{ (1..4) | join: '' }}", "1234"),
    ],
)
def test_array_filters(render_text, source, expected):
    environment = {
        "list": [3, 1, 2],
        "with_nil": [3, None, 1],
        "names": ["b", "A", "C"],
        "dupes": [1, 1, 2, 1],
        "nested": [1, [2, [3]]],
        "products": PRODUCTS,
    }

    assert render_text(source, environment) == expected


@pytest.mark.parametrize(
    "source, expected",
    [
        ("{{ 4 | plus: 2 }}", "6"),
        ("{{ '3' | times: '2' }}", "6"),
        ("{{ '1.5' | plus: 1 }}", "2.5"),
        ("{{ 10 | minus: 2.5 }}", "7.5"),
        ("{{ 10 | divided_by: 3 }}", "3"),
        ("{{ -7 | divided_by: 2 }}", "-4"),
        ("{{ 10 | divided_by: 4.0 }}", "2.5"),
        ("{{ 7 | modulo: 3 }}|{{ -7 | modulo: 3 }}", "1|2"),
        ("{{ 5 | at_least: 10 }}|{{ 5 | at_most: 3 }}", "10|3"),
        ("{{ -3 | abs }}|{{ '-2.5' | abs }}", "3|2.5"),
        ("{{ 1.2 | ceil }}|{{ 1.8 | floor }}", "2|1"),
        ("{{ 2.5 | round }}|{{ 3.14159 | round: 2 }}|{{ 7 | round }}", "3|3.14|7"),
        ("{{ 'abc' | plus: 1 }}", "1"),
    ],
)
def test_math_filters(render_text, source, expected):
    assert render_text(source) == expected


def test_default(render_text):
    assert render_text("{{ missing | default: 'x' }}") == "x"
    assert render_text("{{ false | default: 'x' }}") == "x"
    assert render_text("{{ false | default: 'x', allow_false: true }}") == "false"
    assert render_text("{{ '' | default: 'x' }}|{{ 'a' | default: 'x' }}") == "x|a"
    assert render_text("{{ list | default: 'x' }}", {"list": []}) == "x"


def test_date(render_text):
    assert render_text("{{ '2024-03-05' | date: '%Y/%m/%d' }}") == "2024/03/05"
    assert render_text("{{ 'March 5, 2024' | date: '%d.%m.%Y' }}") == "05.03.2024"
    assert render_text("{{ 'not a date' | date: '%Y' }}") == "not a date"


def _render(source, environment=None, **options):
    output, _errors = render(parse_template(source), environment, RenderOptions(**options))
    return output


def test_division_by_zero():
    with pytest.raises(ZeroDivisionLiquidError, match="divided by 0"):
        _render("{{ 1 | divided_by: 0 }}")
    with pytest.raises(ZeroDivisionLiquidError, match="divided by 0"):
        _render("{{ 1 | modulo: 0 }}")


def test_sort_incompatible_values():
    with pytest.raises(LiquidRenderError, match="cannot sort values of incompatible types"):
        _render("{{ list | sort }}", {"list": [1, "a"]})


def test_concat_requires_array():
    with pytest.raises(LiquidRenderError, match="concat filter requires an array argument"):
        _render("{{ list | concat: 1 }}", {"list": [1]})


def test_map_on_scalars_fails():
    with pytest.raises(LiquidRenderError, match="cannot select the property 'title'"):
        _render("{{ list | map: 'title' }}", {"list": [1]})


def test_wrong_number_of_arguments():
    with pytest.raises(LiquidRenderError, match=r"wrong number of arguments \(given 1, expected 2\)"):
        _render("{{ 'a' | append }}")
    with pytest.raises(LiquidRenderError, match=r"wrong number of arguments \(given 4, expected 2\.\.3\)"):
        _render("{{ 'a' | replace: 1, 2, 3 }}")


def test_undefined_filter_is_strict_by_default():
    with pytest.raises(UndefinedFilter, match="undefined filter nope"):
        _render("{{ 'a' | nope }}")


def test_lax_mode_skips_unknown_filters():
    assert _render("{{ 'a' | nope: 1 | upcase }}", error_mode="lax") == "A"


def test_filter_table_lookup():
    filters = Filters()

    assert filters.has("upcase")
    assert not filters.has("shout")
    assert isinstance(filters.table["plus"], FilterFunction)
    assert filters.invoke(None, "upcase", "abc", [], {}) == "ABC"
