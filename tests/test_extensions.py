import textwrap

import pytest

from extensions import (
    LIQUID_EXTENSION_API_VERSION,
    ExtensionAPI,
    ExtensionError,
    RuntimeServices,
    gather_extension_paths,
    load_runtime_services,
    read_lqx,
)
from interpreter import Interpreter, RenderOptions, parse_template, render
from lexer import LiquidRenderError


EXTENSION_SOURCE = textwrap.dedent(
    '''
    LIQUID_EXTENSION_API_VERSION = 1
    LIQUID_EXTENSION_NAME = "shouting"

    EVENTS = []


    def liquid_register(ext):
        ext.metadata(name="shouting", version="1.2.0")

        @ext.filter("shout", 0, 1)
        def shout(interpreter, value, args, kwargs):
            suffix = args[0] if args else "!"
            return str(value).upper() + suffix

        ext.on_event("render_end", lambda interpreter, output: EVENTS.append(output))
    '''
)


def _write(path, text):
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_extension_module_registers_filters_and_hooks(tmp_path):
    path = _write(tmp_path / "shouting.py", EXTENSION_SOURCE)

    services = load_runtime_services([path])
    output, _errors = render(parse_template("{{ 'hi' | shout }} {{ 'yo' | shout: '?' }}"), services=services)

    assert output == "HI! YO?"
    assert services.metadata[0].name == "shouting"
    assert services.metadata[0].version == "1.2.0"


def test_lqx_pointer_files(tmp_path):
    _write(tmp_path / "shouting.py", EXTENSION_SOURCE)
    pointer = _write(tmp_path / "all.lqx", "# extensions\nshouting.py  # relative to this file\n\n")

    assert read_lqx(pointer) == [str(tmp_path / "shouting.py")]
    assert gather_extension_paths([pointer]) == [str(tmp_path / "shouting.py")]
    assert load_runtime_services([pointer]).filters[0].name == "shout"


def test_extension_must_define_register(tmp_path):
    path = _write(tmp_path / "empty.py", "X = 1\n")

    with pytest.raises(ExtensionError, match="must define callable liquid_register"):
        load_runtime_services([path])


def test_extension_api_version_mismatch(tmp_path):
    path = _write(tmp_path / "future.py", "LIQUID_EXTENSION_API_VERSION = 99\ndef liquid_register(ext):\n    pass\n")

    with pytest.raises(ExtensionError, match="requires API 99"):
        load_runtime_services([path])


def test_missing_extension_file(tmp_path):
    with pytest.raises(ExtensionError, match="Extension not found"):
        load_runtime_services([str(tmp_path / "nope.py")])


def _services():
    services = RuntimeServices()
    return services, ExtensionAPI(services=services, ext_name="test")


def test_extension_filters_cannot_override_builtins():
    services, ext = _services()
    ext.register_filter("upcase", 0, 0, lambda interpreter, value, args, kwargs: value)

    with pytest.raises(ExtensionError, match="Cannot override existing filter 'upcase'"):
        Interpreter(parse_template("x"), services=services)


def test_events_fire_in_priority_order():
    services, ext = _services()
    seen = []
    ext.on_event("before_node", lambda interpreter, node, context: seen.append(("low", type(node).__name__)))
    ext.on_event("before_node", lambda interpreter, node, context: seen.append(("high", type(node).__name__)), priority=10)

    @ext.on_event("render_start")
    def started(interpreter, template, context):
        seen.append(("start", template.name))

    render(parse_template("a{{ x }}", name="page"), services=services)

    assert seen == [("start", "page"), ("high", "Output"), ("low", "Output")]


def test_unknown_event_is_rejected():
    _services_, ext = _services()

    with pytest.raises(ExtensionError, match="Unknown event 'on_tick'"):
        ext.on_event("on_tick", lambda *args: None)


def test_failing_hook_becomes_render_error():
    services, ext = _services()

    def explode(interpreter, node, context):
        raise ValueError("boom")

    ext.on_event("before_node", explode)

    with pytest.raises(LiquidRenderError, match="Extension hook 'before_node' failed: boom"):
        render(parse_template("{{ x }}"), services=services)


def test_on_error_hook_sees_the_error():
    services, ext = _services()
    errors = []
    ext.on_event("on_error", lambda interpreter, error: errors.append(error.message))

    with pytest.raises(LiquidRenderError):
        render(parse_template("{{ 1 | divided_by: 0 }}"), services=services)

    assert errors == ["divided by 0"]


def test_every_n_steps():
    services, ext = _services()
    steps = []

    @ext.every_n_steps(2)
    def sample(interpreter, step):
        steps.append((step.step_index, step.rule, step.node))

    render(parse_template("{{ a }}{{ b }}{% if true %}{{ c }}{% endif %}"), services=services)

    assert steps == [(0, "sample", "Output"), (2, "sample", "IfStatement")]


def test_every_n_steps_must_be_positive():
    _services_, ext = _services()

    with pytest.raises(ExtensionError, match="every_n_steps must be >= 1"):
        ext.every_n_steps(0, lambda interpreter, step: None)


def test_extension_filter_sees_interpreter_options():
    services, ext = _services()
    ext.register_filter("mode", 0, 0, lambda interpreter, value, args, kwargs: interpreter.options.error_mode)

    output, _errors = render(parse_template("{{ nil | mode }}"), options=RenderOptions(error_mode="lax"), services=services)

    assert output == "lax"
    assert LIQUID_EXTENSION_API_VERSION == 1


def test_metadata_api_must_match_host():
    _services_, ext = _services()

    with pytest.raises(ExtensionError, match="Extension 'later' requires API 2, host supports 1"):
        ext.metadata(name="later", requires_api=2)


def test_filter_docs_reach_the_filter_table():
    services, ext = _services()

    @ext.filter("wrap", 1, 1)
    def wrap(interpreter, value, args, kwargs):
        """Surround the value with the argument."""
        return f"{args[0]}{value}{args[0]}"

    ext.register_filter("bare", 0, 0, lambda interpreter, value, args, kwargs: value, doc="Return the input.")
    interp = Interpreter(parse_template("{{ 'x' | wrap: '*' }}"), services=services)

    assert interp.render() == "*x*"
    assert interp.filters.table["wrap"].doc == "Surround the value with the argument."
    assert interp.filters.table["wrap"].source == "test"
    assert interp.filters.table["bare"].doc == "Return the input."
    assert interp.filters.table["upcase"].source == "builtin"
