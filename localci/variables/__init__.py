"""
Variable storage and expansion.
"""

from .store import (
    VariableStore,
    VariableSource,
    VariableContext,
    BuiltInVariables,
    ScopedVariables,
)
from .expansion import VariableExpander

__all__ = [
    'VariableStore',
    'VariableSource',
    'VariableContext',
    'BuiltInVariables',
    'ScopedVariables',
    'VariableExpander',
]
