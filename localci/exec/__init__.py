"""
Execution module.
Handles cancellation, process execution, output capture and step executors.
"""

from .cancellation import CancellationToken
from .process import ProcessRunner, CommandResult
from .output_capture import OutputCapture, CapturedOutput
from .context import ExecutionContext
from .registry import StepExecutorRegistry
from .step_executors import create_default_registry
from .conditions import ConditionEvaluator

__all__ = [
    "CancellationToken",
    "ProcessRunner",
    "CommandResult",
    "OutputCapture",
    "CapturedOutput",
    "ExecutionContext",
    "StepExecutorRegistry",
    "create_default_registry",
    "ConditionEvaluator",
]
