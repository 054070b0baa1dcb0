"""
Host backend: runs steps as processes directly on this machine.

Each job gets a fresh temporary workspace (populated by a checkout step) and
a snapshot of the host environment taken when the job starts. Steps never see
later changes to the host environment and never modify it.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..exec.cancellation import CancellationToken
from ..exec.process import CommandResult, ProcessRunner
from ..models import Job
from .base import ExecutionBackend, JobEnvironment


logger = logging.getLogger(__name__)


class HostCommandRunner:
    """Runs commands as host processes with a fixed base environment."""

    def __init__(self, base_env: Mapping[str, str], process_runner: Optional[ProcessRunner] = None):
        self.base_env = dict(base_env)
        self.process_runner = process_runner or ProcessRunner()

    def _environment(self, env: Dict[str, str]) -> Dict[str, str]:
        merged = dict(self.base_env)
        merged.update(env)
        return merged

    def run(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cancellation: CancellationToken,
    ) -> CommandResult:
        return self.process_runner.run(argv, cwd=cwd, env=self._environment(env), cancellation=cancellation)

    def tool_exists(self, tool: str, env: Dict[str, str]) -> bool:
        return self.process_runner.which(tool, self._environment(env)) is not None


class HostBackend(ExecutionBackend):
    """
    Runs jobs on the host.

    Args:
        isolate_workspace: Run each job in its own temporary directory
            (default). When False, steps run directly in the source workspace
            and nothing is deleted at cleanup.
        environ: Environment to snapshot (default: os.environ)
        process_runner: Process runner override
        **kwargs: Passed to ExecutionBackend
    """

    name = "host"

    SECURITY_WARNING = (
        "Host mode runs pipeline steps directly on this machine without container "
        "isolation. Only run pipelines you trust."
    )

    def __init__(
        self,
        isolate_workspace: bool = True,
        environ: Optional[Mapping[str, str]] = None,
        process_runner: Optional[ProcessRunner] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.isolate_workspace = isolate_workspace
        self.supports_parallel_jobs = isolate_workspace
        self._environ = environ
        self.process_runner = process_runner or ProcessRunner()

    def _runner_label(self, job: Job) -> str:
        return "host"

    def _acquire(self, job: Job, workspace: Path, cancellation: CancellationToken) -> JobEnvironment:
        logger.warning(self.SECURITY_WARNING)
        cancellation.raise_if_cancelled()

        if self.isolate_workspace:
            host_workspace = Path(tempfile.mkdtemp(prefix=f"localci-host-{_safe(job.id)}-"))
            logger.debug(f"Created host workspace {host_workspace} for job '{job.id}'")
        else:
            host_workspace = workspace.resolve()

        snapshot = dict(os.environ if self._environ is None else self._environ)
        snapshot.update({
            "WORKSPACE": str(host_workspace),
            "JOB_NAME": job.display_name,
            "RUNNER": "host",
            "LOCALCI_HOST_MODE": "true",
        })
        return JobEnvironment(
            runner=HostCommandRunner(snapshot, self.process_runner),
            workspace=str(host_workspace),
            host_workspace=host_workspace,
        )

    def _release(self, environment: JobEnvironment) -> None:
        if not self.isolate_workspace:
            return
        logger.debug(f"Removing host workspace {environment.host_workspace}")
        shutil.rmtree(environment.host_workspace)


def _safe(name: str) -> str:
    return "".join(c if c.isalnum() or c in "-_" else "-" for c in name)[:40]
