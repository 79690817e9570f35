import pytest

from context import BreakInterrupt, Context, ContinueInterrupt, ForloopDrop, Registers, TablerowloopDrop
from lexer import LiquidError, StackLevelError, UndefinedVariable


def test_registers_never_write_to_static():
    static = {"file_system": "fs"}
    registers = Registers(static)

    registers["cycle"] = {"a": 1}
    registers.setdefault("for", {})["x"] = 2

    assert static == {"file_system": "fs"}
    assert registers["file_system"] == "fs"
    assert registers["for"] == {"x": 2}
    assert "cycle" in registers


def test_register_child_sees_only_static_values():
    registers = Registers({"file_system": "fs"})
    registers["cycle"] = {"a": 1}

    child = registers.child()
    child["cycle"] = {"b": 2}

    assert child.get("file_system") == "fs"
    assert registers["cycle"] == {"a": 1}
    assert child.get("missing", "default") == "default"


def test_lookup_order_innermost_first():
    context = Context(environment={"a": "env"}, static_environments=[{"a": "static", "s": 1}])

    assert context.find_variable("a") == "env"
    context.push_scope({"a": "inner"})
    assert context.find_variable("a") == "inner"
    context.pop_scope()
    assert context.find_variable("a") == "env"
    assert context.find_variable("s") == 1
    assert context.find_variable("nope") is None


def test_outer_scope_is_squashed_by_environment():
    context = Context(environment={"a": 1}, outer_scope={"a": 0, "b": 2})

    assert context.find_variable("a") == 1
    assert context.find_variable("b") == 2


def test_assign_targets_nearest_assign_frame():
    context = Context()

    with context.scope():
        context.assign("x", 1)
        context.set_local("loop_only", True)
        with context.scope(assign_target=True):
            context.assign("y", 2)
            assert context.find_variable("y") == 2
        assert context.find_variable("y") is None

    assert context.find_variable("x") == 1
    assert context.find_variable("loop_only") is None


def test_root_scope_cannot_be_popped():
    with pytest.raises(LiquidError, match="Cannot pop the root scope"):
        Context().pop_scope()


def test_scope_depth_is_capped():
    context = Context(max_depth=2)
    context.push_scope()

    with pytest.raises(StackLevelError, match="Nesting too deep"):
        context.push_scope()
    assert len(context.scopes) == 2


def test_scope_is_released_on_error():
    context = Context()

    with pytest.raises(RuntimeError):
        with context.scope({"a": 1}):
            raise RuntimeError("boom")

    assert len(context.scopes) == 1


def test_interrupt_stack():
    context = Context()
    assert not context.has_interrupt()

    context.push_interrupt(ContinueInterrupt())
    context.push_interrupt(BreakInterrupt())

    assert context.has_interrupt()
    assert isinstance(context.pop_interrupt(), BreakInterrupt)
    assert isinstance(context.pop_interrupt(), ContinueInterrupt)
    assert not context.has_interrupt()


def test_counters():
    environment = {}
    context = Context(environment=environment)

    assert [context.increment("c"), context.increment("c")] == [0, 1]
    assert [context.decrement("d"), context.decrement("d")] == [-1, -2]
    assert environment == {}


def test_strict_variables():
    context = Context(strict_variables=True)

    with pytest.raises(UndefinedVariable, match="undefined variable missing"):
        context.find_variable("missing")
    assert context.find_variable("missing", raise_on_missing=False) is None


def test_lazy_values_are_called():
    context = Context(environment={"now": lambda: 5, "name": lambda ctx: ctx.template_name}, template_name="page")

    assert context.find_variable("now") == 5
    assert context.find_variable("name") == "page"


def test_lookup_commands():
    context = Context()

    assert context.lookup_property([1, 2, 3], "size", True) == 3
    assert context.lookup_property([1, 2, 3], "last", True) == 3
    assert context.lookup_property([1, 2, 3], -1, False) == 3
    assert context.lookup_property({"size": 9}, "size", True) == 9
    assert context.lookup_property({"a": 1}, "first", True) == ["a", 1]
    assert context.lookup_property("abc", "first", True) == "a"
    assert context.lookup_property([1], 5, False) is None


def test_isolated_subcontext():
    context = Context(environment={"a": 1}, static_environments=[{"shop": "s"}], disabled_tags=frozenset({"x"}))
    context.registers["cycle"] = {"k": 1}
    context.push_scope()

    child = context.new_isolated_subcontext(disabled_tags=frozenset({"x", "include"}))

    assert child.find_variable("a") is None
    assert child.find_variable("shop") == "s"
    assert child.base_depth == 2
    assert child.disabled_tags == frozenset({"x", "include"})
    assert child.registers.get("cycle") is None
    assert child.errors is context.errors


def test_forloop_drop():
    outer = ForloopDrop("o", 2)
    loop = ForloopDrop("i-items", 3, outer)

    assert (loop.index, loop.index0, loop.rindex, loop.rindex0) == (1, 0, 3, 2)
    assert loop.first and not loop.last
    loop._increment()
    loop._increment()
    assert loop.last
    assert loop.parentloop is outer
    assert loop.invoke_drop("length") == 3
    assert loop.invoke_drop("name") == "i-items"


def test_tablerowloop_drop_wraps_columns():
    loop = TablerowloopDrop(length=5, cols=2)
    seen = []
    for _ in range(5):
        seen.append((loop.col, loop.row, loop.col_first, loop.col_last))
        loop._increment()

    assert seen == [
        (1, 1, True, False),
        (2, 1, False, True),
        (1, 2, True, False),
        (2, 2, False, True),
        (1, 3, True, False),
    ]
