"""
Step executor registry.

Maps step kinds to executor objects. A registration may be tied to one
backend ("host" or "container"); lookups prefer that over the generic entry.
"""

import logging
from typing import Dict, List, Optional, Protocol, Tuple

from ..exceptions import UnsupportedStepError
from ..models import Step, StepKind


logger = logging.getLogger(__name__)


class StepExecutor(Protocol):
    """Anything with ``execute(step, context) -> CommandResult``."""

    def execute(self, step: Step, context): ...


class StepExecutorRegistry:
    """Registry of step executors keyed by (backend, kind)."""

    def __init__(self):
        self._executors: Dict[Tuple[Optional[str], StepKind], StepExecutor] = {}

    def register(self, kind: StepKind, executor: StepExecutor, backend: Optional[str] = None) -> None:
        """
        Register an executor for a step kind.

        Args:
            kind: Step kind handled
            executor: Executor instance
            backend: Restrict to one backend name, or None for all
        """
        self._executors[(backend, kind)] = executor
        where = f" ({backend})" if backend else ""
        logger.debug(f"Registered executor for {kind.value}{where}: {type(executor).__name__}")

    def get(self, kind: StepKind, backend: Optional[str] = None, step_name: str = "") -> StepExecutor:
        """
        Look up the executor for a step kind.

        Raises:
            UnsupportedStepError: If nothing is registered for the kind
        """
        executor = self._executors.get((backend, kind)) or self._executors.get((None, kind))
        if executor is None:
            raise UnsupportedStepError(kind.value, step_name=step_name, backend=backend)
        return executor

    def exists(self, kind: StepKind, backend: Optional[str] = None) -> bool:
        return (backend, kind) in self._executors or (None, kind) in self._executors

    def list_kinds(self, backend: Optional[str] = None) -> List[StepKind]:
        return sorted(
            {kind for (owner, kind) in self._executors if owner is None or owner == backend},
            key=lambda kind: kind.value,
        )
