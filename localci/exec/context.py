"""Per-job execution context handed to step executors."""

import posixpath
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from ..exceptions import ToolNotFoundError
from ..models import Job, Step
from .cancellation import CancellationToken
from .process import CommandResult, tool_hints


class CommandRunner(Protocol):
    """How a backend runs a command inside its execution environment."""

    def run(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cancellation: CancellationToken,
    ) -> CommandResult: ...

    def tool_exists(self, tool: str, env: Dict[str, str]) -> bool: ...


@dataclass(frozen=True)
class ExecutionContext:
    """
    Everything a step executor needs, independent of the backend.

    ``workspace`` and ``working_directory`` are paths as the command sees
    them (``/workspace`` inside a container); ``host_workspace`` is the same
    directory on the host.
    """
    backend: str
    runner: CommandRunner
    job: Job
    workspace: str
    host_workspace: Path
    working_directory: str
    cancellation: CancellationToken
    env: Dict[str, str] = field(default_factory=dict)
    step: Optional[Step] = None
    source_workspace: Optional[Path] = None
    container_id: Optional[str] = None
    artifact_handler: Optional[Any] = None

    def for_step(
        self,
        step: Step,
        env: Dict[str, str],
        working_directory: Optional[str],
        cancellation: CancellationToken,
    ) -> "ExecutionContext":
        """Derive the context for one step; the job context is left untouched."""
        return replace(
            self,
            step=step,
            env=env,
            working_directory=self.resolve_path(working_directory) if working_directory else self.workspace,
            cancellation=cancellation,
        )

    def resolve_path(self, path: str) -> str:
        """Resolve a path relative to the workspace, as the command sees it."""
        if posixpath.isabs(path):
            return path
        return posixpath.normpath(posixpath.join(self.workspace, path))

    def host_path(self, path: str) -> Path:
        """Map a workspace path (absolute or relative) to the host."""
        resolved = self.resolve_path(path)
        relative = posixpath.relpath(resolved, self.workspace)
        if relative == '.':
            return self.host_workspace
        return self.host_workspace / relative

    def scratch_file(self, name: str):
        """
        Reserve a file under the workspace's .localci directory.

        Returns:
            (host path, path as seen by commands)
        """
        host_dir = self.host_workspace / ".localci"
        host_dir.mkdir(parents=True, exist_ok=True)
        return host_dir / name, posixpath.join(self.workspace, ".localci", name)

    def run_command(self, argv: List[str], cwd: Optional[str] = None) -> CommandResult:
        return self.runner.run(
            argv,
            cwd or self.working_directory,
            dict(self.env),
            self.cancellation,
        )

    def ensure_tool(self, tool: str) -> None:
        """
        Raises:
            ToolNotFoundError: If the tool cannot be found in this environment
        """
        if not self.runner.tool_exists(tool, self.env):
            raise ToolNotFoundError(tool, suggestions=tool_hints(tool))
