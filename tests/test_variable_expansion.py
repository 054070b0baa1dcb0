"""Tests for ${...} variable expansion."""

import pytest

from localci.exceptions import CircularReferenceError, RecursionLimitError, RequiredVariableError
from localci.variables.expansion import VariableExpander
from localci.variables.store import VariableSource, VariableStore


@pytest.fixture
def expander():
    return VariableExpander()


class TestBasicExpansion:

    def test_simple_reference(self, expander):
        assert expander.expand("Hello ${NAME}!", {"NAME": "World"}) == "Hello World!"

    def test_multiple_references(self, expander):
        result = expander.expand("${A}-${B}-${A}", {"A": "1", "B": "2"})
        assert result == "1-2-1"

    def test_undefined_becomes_empty(self, expander):
        assert expander.expand("[${MISSING}]", {}) == "[]"

    def test_default_used_when_undefined(self, expander):
        assert expander.expand("${MISSING:-fallback}", {}) == "fallback"

    def test_default_ignored_when_defined(self, expander):
        assert expander.expand("${NAME:-fallback}", {"NAME": "set"}) == "set"

    def test_default_can_reference_variables(self, expander):
        assert expander.expand("${MISSING:-${OTHER}}", {"OTHER": "other"}) == "other"

    def test_text_without_placeholders_unchanged(self, expander):
        assert expander.expand("plain $HOME text", {"HOME": "/h"}) == "plain $HOME text"

    def test_none_and_empty(self, expander):
        assert expander.expand(None, {}) is None
        assert expander.expand("", {}) == ""

    def test_resolves_through_store(self, expander):
        store = VariableStore()
        store.set_variable("TARGET", "release", VariableSource.CLI_ARGUMENT)
        assert expander.expand("build --${TARGET}", store) == "build --release"


class TestEscapesAndLiterals:

    def test_escape_is_consumed(self, expander):
        assert expander.expand(r"\${NAME}", {"NAME": "value"}) == "${NAME}"

    def test_escape_next_to_expansion(self, expander):
        assert expander.expand(r"${NAME} \${NAME}", {"NAME": "value"}) == "value ${NAME}"

    def test_invalid_name_left_literal(self, expander):
        assert expander.expand("${1ABC}", {"1ABC": "x"}) == "${1ABC}"

    def test_unsupported_modifier_left_literal(self, expander):
        assert expander.expand("${NAME:+alt}", {"NAME": "x"}) == "${NAME:+alt}"

    def test_unclosed_placeholder_left_literal(self, expander):
        assert expander.expand("echo ${NAME", {"NAME": "x"}) == "echo ${NAME"


class TestRequired:

    def test_required_with_message(self, expander):
        with pytest.raises(RequiredVariableError) as exc_info:
            expander.expand("${API_URL:?API_URL must be set}", {})
        assert exc_info.value.variable_name == "API_URL"
        assert "API_URL must be set" in str(exc_info.value)

    def test_required_default_message_names_variable(self, expander):
        with pytest.raises(RequiredVariableError) as exc_info:
            expander.expand("${API_URL:?}", {})
        assert str(exc_info.value) == "Required variable 'API_URL' is not defined"

    def test_required_satisfied(self, expander):
        assert expander.expand("${API_URL:?missing}", {"API_URL": "http://x"}) == "http://x"

    def test_error_dict(self, expander):
        with pytest.raises(RequiredVariableError) as exc_info:
            expander.expand("${TOKEN:?}", {})
        error = exc_info.value.to_error()
        assert error["type"] == "required_variable"
        assert error["context"]["variable"] == "TOKEN"


class TestRecursion:

    def test_nested_values_expand(self, expander):
        variables = {"A": "${B}/a", "B": "${C}/b", "C": "c"}
        assert expander.expand("${A}", variables) == "c/b/a"

    def test_self_reference_is_circular(self, expander):
        with pytest.raises(CircularReferenceError) as exc_info:
            expander.expand("${A}", {"A": "x${A}"})
        assert exc_info.value.chain == ["A", "A"]

    def test_two_variable_cycle_names_chain(self, expander):
        with pytest.raises(CircularReferenceError) as exc_info:
            expander.expand("${A}", {"A": "${B}", "B": "${A}"})
        assert exc_info.value.chain == ["A", "B", "A"]
        assert "A -> B -> A" in str(exc_info.value)

    def test_recursion_limit_is_distinct_from_cycle(self):
        expander = VariableExpander(max_recursion_depth=3)
        variables = {f"V{i}": f"${{V{i + 1}}}" for i in range(10)}
        variables["V10"] = "end"

        with pytest.raises(RecursionLimitError) as exc_info:
            expander.expand("${V0}", variables)
        assert not isinstance(exc_info.value, CircularReferenceError)
        assert exc_info.value.max_depth == 3

    def test_chain_within_limit_succeeds(self):
        expander = VariableExpander(max_recursion_depth=10)
        variables = {f"V{i}": f"${{V{i + 1}}}" for i in range(5)}
        variables["V5"] = "end"
        assert expander.expand("${V0}", variables) == "end"

    def test_same_variable_twice_is_not_a_cycle(self, expander):
        variables = {"A": "${B}${B}", "B": "b"}
        assert expander.expand("${A}", variables) == "bb"

    def test_invalid_depth(self):
        with pytest.raises(ValueError):
            VariableExpander(max_recursion_depth=0)


class TestHelpers:

    def test_expand_dictionary(self, expander):
        result = expander.expand_dictionary({"URL": "http://${HOST}"}, {"HOST": "localhost"})
        assert result == {"URL": "http://localhost"}

    def test_expand_value_nested(self, expander):
        result = expander.expand_value({"args": ["${A}", 3]}, {"A": "x"})
        assert result == {"args": ["x", 3]}

    def test_extract_variable_names(self):
        names = VariableExpander.extract_variable_names(r"${A} ${B:-x} \${C} ${A} ${9}")
        assert names == ["A", "B"]
        assert VariableExpander.contains_variables("${A}")
        assert not VariableExpander.contains_variables(r"\${A}")

    def test_find_syntax_errors(self):
        assert VariableExpander.find_syntax_errors("${OK} ${ALSO:-fine}") == []
        assert VariableExpander.find_syntax_errors("${1BAD}")
        assert VariableExpander.find_syntax_errors("${OPEN")
        assert VariableExpander.find_syntax_errors("${NAME:+x}")
