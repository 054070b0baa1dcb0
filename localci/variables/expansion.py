"""
Variable expansion.

Supported syntax:
- ${NAME}            value of NAME (empty string if undefined)
- ${NAME:-default}   default when NAME is undefined or empty
- ${NAME:?message}   fail when NAME is undefined or empty
- \\${NAME}           literal ${NAME}; the backslash is consumed

Expansion is a single left-to-right scan. Values that themselves contain
variables are expanded recursively with the chain of names tracked, so cycles
and runaway nesting fail with a clear error instead of looping.
"""

import re
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from ..exceptions import CircularReferenceError, RecursionLimitError, RequiredVariableError


NAME_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')

DEFAULT_MAX_RECURSION_DEPTH = 10


def _find_closing_brace(text: str, open_index: int) -> int:
    """Return the index of the brace closing text[open_index], or -1."""
    depth = 0
    for i in range(open_index, len(text)):
        if text[i] == '{':
            depth += 1
        elif text[i] == '}':
            depth -= 1
            if depth == 0:
                return i
    return -1


class VariableExpander:
    """
    Expands ${...} references against a variable source.

    The source may be a VariableStore, a scoped view of one, or any mapping.
    """

    def __init__(self, max_recursion_depth: int = DEFAULT_MAX_RECURSION_DEPTH):
        if max_recursion_depth < 1:
            raise ValueError("max_recursion_depth must be at least 1")
        self.max_recursion_depth = max_recursion_depth

    def expand(self, text: Optional[str], variables: Any) -> Optional[str]:
        """
        Expand variables in a string.

        Args:
            text: Text containing ${...} references
            variables: Object with ``resolve(name)`` or a mapping

        Returns:
            Expanded text

        Raises:
            RequiredVariableError: A ${NAME:?msg} variable was undefined or empty
            CircularReferenceError: Values reference each other in a loop
            RecursionLimitError: Nesting exceeded max_recursion_depth
        """
        if not text:
            return text
        return self._expand(text, variables, [], 0)

    def expand_value(self, value: Union[str, List, Dict, Any], variables: Any) -> Any:
        """Expand strings inside lists and dicts; other values pass through."""
        if isinstance(value, str):
            return self.expand(value, variables)
        elif isinstance(value, list):
            return [self.expand_value(item, variables) for item in value]
        elif isinstance(value, dict):
            return {k: self.expand_value(v, variables) for k, v in value.items()}
        return value

    def expand_dictionary(self, values: Mapping[str, str], variables: Any) -> Dict[str, str]:
        return {key: self.expand(value, variables) for key, value in values.items()}

    def _expand(self, text: str, variables: Any, chain: List[str], depth: int) -> str:
        out: List[str] = []
        i = 0
        length = len(text)

        while i < length:
            char = text[i]

            if char == '\\' and text.startswith('${', i + 1):
                close = _find_closing_brace(text, i + 2)
                if close != -1:
                    out.append(text[i + 1:close + 1])
                    i = close + 1
                    continue
                out.append(char)
                i += 1
                continue

            if char == '$' and text.startswith('{', i + 1):
                close = _find_closing_brace(text, i + 1)
                if close == -1:
                    # Unclosed: keep the remainder as written
                    out.append(text[i:])
                    break
                out.append(self._substitute(text[i:close + 1], variables, chain, depth))
                i = close + 1
                continue

            out.append(char)
            i += 1

        return ''.join(out)

    def _substitute(self, placeholder: str, variables: Any, chain: List[str], depth: int) -> str:
        content = placeholder[2:-1]
        name, modifier = self._split(content)

        if not NAME_PATTERN.match(name):
            return placeholder
        if modifier and modifier[0] not in '-?':
            return placeholder

        if name in chain:
            raise CircularReferenceError(name, chain + [name])

        value = self._lookup(variables, name)

        if not value:
            if modifier.startswith('-'):
                default = modifier[1:]
                if '${' in default:
                    return self._recurse(default, variables, chain + [name], depth, name)
                return default
            if modifier.startswith('?'):
                raise RequiredVariableError(name, modifier[1:] or None)
            return ""

        if '${' in value:
            return self._recurse(value, variables, chain + [name], depth, name)
        return value

    def _recurse(self, text: str, variables: Any, chain: List[str], depth: int, name: str) -> str:
        if depth + 1 > self.max_recursion_depth:
            raise RecursionLimitError(name, self.max_recursion_depth)
        return self._expand(text, variables, chain, depth + 1)

    @staticmethod
    def _split(content: str) -> Tuple[str, str]:
        if ':' in content:
            name, modifier = content.split(':', 1)
            return name, modifier
        return content, ""

    @staticmethod
    def _lookup(variables: Any, name: str) -> Optional[str]:
        if hasattr(variables, 'resolve'):
            return variables.resolve(name)
        value = variables.get(name)
        return None if value is None else str(value)

    @staticmethod
    def contains_variables(text: Optional[str]) -> bool:
        """True if text holds at least one unescaped, well-formed reference."""
        return bool(VariableExpander.extract_variable_names(text))

    @staticmethod
    def extract_variable_names(text: Optional[str]) -> List[str]:
        """Return referenced names in order of first appearance."""
        names: List[str] = []
        if not text:
            return names
        i = 0
        while i < len(text):
            if text[i] == '\\' and text.startswith('${', i + 1):
                close = _find_closing_brace(text, i + 2)
                i = close + 1 if close != -1 else i + 1
                continue
            if text.startswith('${', i):
                close = _find_closing_brace(text, i + 1)
                if close == -1:
                    break
                name, _ = VariableExpander._split(text[i + 2:close])
                if NAME_PATTERN.match(name) and name not in names:
                    names.append(name)
                i = close + 1
                continue
            i += 1
        return names

    @staticmethod
    def find_syntax_errors(text: Optional[str]) -> List[str]:
        """Report unclosed or malformed placeholders, for validation."""
        errors: List[str] = []
        if not text:
            return errors
        i = 0
        while i < len(text):
            if text[i] == '\\' and text.startswith('${', i + 1):
                close = _find_closing_brace(text, i + 2)
                i = close + 1 if close != -1 else i + 1
                continue
            if text.startswith('${', i):
                close = _find_closing_brace(text, i + 1)
                if close == -1:
                    errors.append(f"Unclosed variable reference at position {i}: '{text[i:i + 20]}'")
                    break
                content = text[i + 2:close]
                name, modifier = VariableExpander._split(content)
                if not NAME_PATTERN.match(name):
                    errors.append(f"Invalid variable name '{name}' in '{text[i:close + 1]}'")
                elif modifier and modifier[0] not in '-?':
                    errors.append(f"Unsupported modifier ':{modifier[0]}' in '{text[i:close + 1]}'")
                i = close + 1
                continue
            i += 1
        return errors
