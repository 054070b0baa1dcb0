"""localci exceptions.

Three families are distinguished because the runner treats them differently:

- Authoring errors (bad pipeline or variable usage) abort a job regardless of
  continue-on-error and map to exit code 2 at the CLI.
- Environment errors (container runtime, missing tools) abort a job.
- Cancellation and timeouts are raised through the cancellation token.
"""

from typing import Any, Dict, List, Optional
from dataclasses import dataclass


@dataclass
class ValidationError:
    """Single validation error."""
    message: str
    path: str = ""
    exit_code: int = 2


class PipelineValidationError(Exception):
    """Raised when pipeline or configuration validation fails.

    Carries every finding so the CLI can report them together.
    """

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        self.exit_code = 2

        messages = []
        for error in errors:
            messages.append(f"Validation error: {error.message}")

        super().__init__("\n".join(messages))


class CycleDetectedError(PipelineValidationError):
    """
    Raised when job dependencies form a cycle.

    A self-dependency gets its own message in addition to the generic
    cycle error.
    """

    def __init__(self, cycle: List[str], self_reference: bool = False):
        self.cycle = cycle
        self.self_reference = self_reference
        path = f"jobs.{cycle[0]}.depends_on"
        errors = []
        if self_reference:
            errors.append(ValidationError(message=f"Job '{cycle[0]}' cannot depend on itself", path=path))
        errors.append(ValidationError(message=f"Circular dependency detected: {' -> '.join(cycle)}", path=path))
        super().__init__(errors)


class VariableError(Exception):
    """Base class for variable expansion failures."""

    error_code = "variable_error"

    def __init__(self, message: str, variable_name: str):
        super().__init__(message)
        self.message = message
        self.variable_name = variable_name

    def to_error(self) -> Dict[str, Any]:
        return {
            "type": self.error_code,
            "message": self.message,
            "context": {"variable": self.variable_name},
        }


class RequiredVariableError(VariableError):
    """A ${NAME:?message} variable was undefined or empty."""

    error_code = "required_variable"

    def __init__(self, variable_name: str, custom_message: Optional[str] = None):
        if custom_message:
            message = f"Required variable '{variable_name}': {custom_message}"
        else:
            message = f"Required variable '{variable_name}' is not defined"
        super().__init__(message, variable_name)
        self.custom_message = custom_message


class CircularReferenceError(VariableError):
    """Variable values reference each other in a loop."""

    error_code = "circular_reference"

    def __init__(self, variable_name: str, chain: List[str]):
        message = (
            f"Circular reference detected for variable '{variable_name}': "
            f"{' -> '.join(chain)}"
        )
        super().__init__(message, variable_name)
        self.chain = chain

    def to_error(self) -> Dict[str, Any]:
        error = super().to_error()
        error["context"]["chain"] = self.chain
        return error


class RecursionLimitError(VariableError):
    """Nested expansion went deeper than the configured limit."""

    error_code = "recursion_limit"

    def __init__(self, variable_name: str, max_depth: int):
        message = (
            f"Variable expansion exceeded maximum recursion depth of {max_depth} "
            f"for variable '{variable_name}'"
        )
        super().__init__(message, variable_name)
        self.max_depth = max_depth


class ExecutionEnvironmentError(Exception):
    """The execution substrate could not run a step at all."""

    error_type = "environment_error"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_error(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message, "context": dict(self.context)}


class ContainerRuntimeUnavailableError(ExecutionEnvironmentError):
    error_type = "container_runtime_unavailable"


class ImagePullError(ExecutionEnvironmentError):
    error_type = "image_pull_failed"


class ContainerCreateError(ExecutionEnvironmentError):
    error_type = "container_create_failed"


class ContainerExecError(ExecutionEnvironmentError):
    """The runtime failed to run a command, as opposed to the command exiting non-zero."""
    error_type = "container_exec_failed"


class ToolNotFoundError(ExecutionEnvironmentError):
    """A required executable is not available on the host PATH."""

    error_type = "tool_not_found"

    def __init__(self, tool: str, suggestions: Optional[List[str]] = None):
        self.tool = tool
        self.suggestions = suggestions or []
        message = f"Required tool '{tool}' not found on PATH"
        if self.suggestions:
            message += f". {' '.join(self.suggestions)}"
        super().__init__(message, {"tool": tool, "suggestions": self.suggestions})


class StepAuthoringError(Exception):
    """A step cannot run as written."""

    error_type = "invalid_step"

    def __init__(self, message: str, step_name: str = ""):
        super().__init__(message)
        self.message = message
        self.step_name = step_name

    def to_error(self) -> Dict[str, Any]:
        return {"type": self.error_type, "message": self.message, "context": {"step": self.step_name}}


class UnsupportedStepError(StepAuthoringError):
    """No executor is registered for the step's kind."""

    error_type = "unsupported_step"

    def __init__(self, kind: str, step_name: str = "", backend: Optional[str] = None):
        where = f" on the {backend} backend" if backend else ""
        super().__init__(f"No executor registered for step kind '{kind}'{where}", step_name)
        self.kind = kind
        self.backend = backend


class InvalidStepError(StepAuthoringError):
    """A step's parameters are missing or malformed."""


class OperationCancelledError(Exception):
    """The run was cancelled.

    Output produced before the process was stopped is attached when known.
    """

    error_type = "cancelled"

    def __init__(self, message: str = "Operation was cancelled"):
        super().__init__(message)
        self.message = message
        self.stdout = b""
        self.stderr = b""


class StepTimeoutError(OperationCancelledError):
    """A step or job exceeded its time budget."""

    error_type = "timeout"

    def __init__(self, timeout_sec: float):
        super().__init__(f"Timed out after {timeout_sec} seconds")
        self.timeout_sec = timeout_sec
