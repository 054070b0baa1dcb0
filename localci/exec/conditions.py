"""
Condition evaluation for jobs and steps.

A condition is a bool, or a string that is expanded against the variables and
then evaluated:

- always() / success() / failure() status functions
- left == right, left != right (string comparison, quotes optional)
- anything else is truthy unless it is empty, "false", "0", "no" or "off"
"""

import re
from typing import Any, Optional, Union

from ..variables.expansion import VariableExpander


FALSY = {"", "false", "0", "no", "off", "null", "none"}

_COMPARISON = re.compile(r'^(?P<left>.*?)\s*(?P<op>==|!=)\s*(?P<right>.*)$', re.DOTALL)


class ConditionEvaluator:
    """Evaluates ``if`` conditions."""

    def __init__(self, expander: Optional[VariableExpander] = None):
        self.expander = expander or VariableExpander()

    def evaluate(
        self,
        condition: Optional[Union[bool, str]],
        variables: Any,
        previous_failed: bool = False,
    ) -> bool:
        """
        Evaluate a condition.

        Args:
            condition: The condition (None means always true)
            variables: Variable source for expansion
            previous_failed: Whether an earlier step (or dependency) failed

        Returns:
            True if the step or job should run

        Raises:
            VariableError: If expansion fails (e.g. a required variable)
        """
        if condition is None:
            return True
        if isinstance(condition, bool):
            return condition

        text = str(condition).strip()
        if text.startswith("${{") and text.endswith("}}"):
            text = text[3:-2].strip()

        status = text.lower().replace(" ", "")
        if status == "always()":
            return True
        if status == "success()":
            return not previous_failed
        if status == "failure()":
            return previous_failed

        expanded = self.expander.expand(text, variables).strip()
        match = _COMPARISON.match(expanded)
        if match:
            left = _unquote(match.group("left"))
            right = _unquote(match.group("right"))
            if match.group("op") == "==":
                return left == right
            return left != right

        if expanded.startswith("!"):
            return _unquote(expanded[1:]).lower() in FALSY
        return _unquote(expanded).lower() not in FALSY


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        return value[1:-1]
    return value
