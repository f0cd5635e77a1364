"""
Tests for the restricted expression evaluator and scripted plugins.
"""

import pytest

from portflow.engine.context import RunStatus
from portflow.engine.models import WorkflowDefinition
from portflow.engine.ports import PluginContext
from portflow.engine.registry import PluginRegistry
from portflow.engine.sandbox import SandboxError, compile_expression
from portflow.engine.supervisor import run_workflow
from portflow.plugins.builtin import register_builtin_plugins
from portflow.plugins.scripted import ScriptedPluginSpec, build_scripted_plugin


def evaluate(source, **names):
    return compile_expression(source).evaluate(names)


# ============================================================
# Expression Tests
# ============================================================

class TestSafeExpressions:
    """Expressions the sandbox accepts."""

    def test_arithmetic_and_logic(self):
        assert evaluate("(a or 0) + (b or 0)", a=2, b=None) == 2
        assert evaluate("x * 2 if x > 1 else -x", x=3) == 6
        assert evaluate("1 < x <= 3", x=3) is True
        assert evaluate("not flag", flag=False) is True

    def test_subscripts_and_methods(self):
        data = {"name": "ada", "tags": ["a", "b", "c"]}
        assert evaluate("data['name'].title()", data=data) == "Ada"
        assert evaluate("data.get('missing', 'x')", data=data) == "x"
        assert evaluate("data['tags'][1:]", data=data) == ["b", "c"]
        assert evaluate("', '.join(data['tags'])", data=data) == "a, b, c"

    def test_builtins_and_literals(self):
        assert evaluate("len(items) + sum([1, 2])", items=[1, 2, 3]) == 6
        assert evaluate("sorted(items, reverse=True)", items=[1, 3, 2]) == [3, 2, 1]
        assert evaluate("{'n': round(x, 1)}", x=1.26) == {"n": 1.3}

    def test_fstring(self):
        assert evaluate("f'{greeting}, {name!r}: {value:.2f}'", greeting="Hi", name="Ada", value=1) == \
            "Hi, 'Ada': 1.00"


class TestRejectedExpressions:
    """Expressions the sandbox refuses."""

    @pytest.mark.parametrize("source", [
        "__import__('os')",
        "().__class__.__bases__",
        "data.__dict__",
        "open('/etc/passwd')",
        "lambda: 1",
        "[x for x in range(3)]",
        "x := 1",
        "getattr(data, 'keys')",
    ])
    def test_rejected_at_compile_time(self, source):
        with pytest.raises(SandboxError):
            compile_expression(source)

    def test_statements_are_not_expressions(self):
        with pytest.raises(SandboxError, match="Syntax error"):
            compile_expression("import os")

    def test_attribute_only_as_method_call(self):
        with pytest.raises(SandboxError, match="only allowed for method calls"):
            compile_expression("data.get")

    def test_unknown_method_rejected_at_runtime(self):
        expression = compile_expression("data.pop('a')")
        with pytest.raises(SandboxError, match="not allowed"):
            expression.evaluate({"data": {"a": 1}})

    def test_unknown_name(self):
        with pytest.raises(SandboxError, match="Unknown name"):
            evaluate("missing + 1")

    def test_length_limit(self):
        with pytest.raises(SandboxError, match="longer than"):
            compile_expression("1 + " * 100 + "1", max_length=50)

    def test_resource_limits(self):
        with pytest.raises(SandboxError, match="Exponent"):
            evaluate("10 ** 1000000")
        with pytest.raises(SandboxError, match="too large"):
            evaluate("'x' * 10000000")

    @pytest.mark.parametrize("source", [
        "('a' * 1000).replace('a', 'a' * 1000)",
        "''.replace('', 'a' * 1000).replace('a', 'a' * 1000)",
        "' '.join(['a' * 1000] * 1000)",
        "sum([['a'] * 1000] * 1000, [])",
        "'%1000000d' % 1",
        "'%(n)1000000d' % {'n': 1}",
    ])
    def test_growing_calls_rejected(self, source):
        with pytest.raises(SandboxError, match="too large"):
            evaluate(source)

    @pytest.mark.parametrize("source", [
        "f'{1:>1000000}'",
        "f'{1:.1000000f}'",
        "f'{1:>{width}}'",
    ])
    def test_format_width_rejected(self, source):
        with pytest.raises(SandboxError, match="Format width too large"):
            evaluate(source, width=1000000)

    def test_starred_percent_width_rejected(self):
        with pytest.raises(SandboxError, match="Starred"):
            evaluate("'%*d' % (1000000, 1)")

    @pytest.mark.parametrize("source", [
        "(((7 ** 100) ** 100) ** 100)",
        "(7 ** 100) ** 100",
        "(2 ** 100) ** 99 * (2 ** 100) ** 99",
    ])
    def test_integer_growth_rejected(self, source):
        with pytest.raises(SandboxError, match="bits"):
            evaluate(source)

    def test_limits_leave_ordinary_results_alone(self):
        assert evaluate("'a-b'.replace('-', '+')") == "a+b"
        assert evaluate("'-'.join(items)", items=("x", "y")) == "x-y"
        assert evaluate("sum([[1], [2]], [])") == [1, 2]
        assert evaluate("'%05.1f' % 2.25") == "002.2"
        assert evaluate("f'{n:>4}'", n=7) == "   7"
        assert evaluate("(7 ** 100) ** 10") == 7 ** 1000

    def test_runtime_errors_are_wrapped(self):
        with pytest.raises(SandboxError, match="ZeroDivisionError"):
            evaluate("1 / x", x=0)


# ============================================================
# Scripted Plugin Tests
# ============================================================

class TestScriptedPlugins:
    """Tests for plugins built from expressions."""

    def make_spec(self, **overrides):
        spec = {
            "id": "shout",
            "name": "Shout",
            "inputs": [{"id": "text", "dataType": "string"}],
            "outputs": [{"id": "loud", "dataType": "string"}],
            "default_data": {"suffix": "!"},
            "expressions": {"loud": "str(inputs.get('text') or '').upper() + data['suffix']"},
        }
        spec.update(overrides)
        return ScriptedPluginSpec.model_validate(spec)

    @pytest.mark.asyncio
    async def test_build_and_execute(self):
        descriptor = build_scripted_plugin(self.make_spec())

        assert descriptor.input_port("text").data_type.value == "string"
        context = PluginContext(node_id="n", node_data=descriptor.merge_data({"suffix": "?"}))
        assert await descriptor.execute({"text": "hey"}, context) == {"loud": "HEY?"}

    def test_unknown_output_port(self):
        with pytest.raises(SandboxError, match="unknown output port"):
            build_scripted_plugin(self.make_spec(expressions={"quiet": "1"}))

    def test_invalid_expression(self):
        with pytest.raises(SandboxError, match="Output 'loud'"):
            build_scripted_plugin(self.make_spec(expressions={"loud": "__import__('os')"}))

    @pytest.mark.asyncio
    async def test_saved_greeting_plugin(self):
        registry = register_builtin_plugins(PluginRegistry())
        definition = WorkflowDefinition.model_validate({
            "nodes": [
                {"id": "t", "type": "trigger", "data": {"initial_value": "Ada"}},
                {"id": "n", "type": "transform", "data": {"expression": "input['initial_value']"}},
                {"id": "g", "type": "greeting_node", "data": {"prefix": "Welcome"}},
            ],
            "edges": [
                {"source": "t", "target": "n"},
                {"source": "n", "target": "g", "targetHandle": "name_input"},
            ],
        })
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.COMPLETED
        assert run.get_output("g", "greeting_output") == "Welcome, Ada!"

    @pytest.mark.asyncio
    async def test_failing_expression_fails_node(self):
        registry = register_builtin_plugins(PluginRegistry())
        definition = WorkflowDefinition.model_validate({
            "nodes": [
                {"id": "t", "type": "trigger"},
                {"id": "x", "type": "transform", "data": {"expression": "input['nope']"}},
            ],
            "edges": [{"source": "t", "target": "x"}],
        })
        run = await run_workflow(definition, registry)

        assert run.status == RunStatus.FAILED
        assert run.error.node_id == "x"
        assert run.error.details["type"] == "SandboxError"
