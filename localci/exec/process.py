"""
Subprocess execution with cancellation.

Commands run in argv mode (no shell=True); scripts are passed to an explicit
shell by the executors. The process is polled so a cancellation or deadline
can stop it: terminate first, kill after a grace period.
"""

import logging
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from ..exceptions import ExecutionEnvironmentError, OperationCancelledError, ToolNotFoundError
from .cancellation import CancellationToken


logger = logging.getLogger(__name__)

TOOL_HINTS = {
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "yarn": "Install yarn (e.g., npm install -g yarn).",
    "pnpm": "Install pnpm (e.g., npm install -g pnpm).",
    "pip": "Install Python 3 with pip or fix PATH.",
    "python3": "Install Python 3 or fix PATH (python3).",
    "dotnet": "Install the .NET SDK or fix PATH.",
    "mvn": "Install Apache Maven or fix PATH.",
    "gradle": "Install Gradle or use the project's gradlew wrapper.",
    "git": "Install git or fix PATH.",
    "docker": "Install Docker and ensure the daemon is running.",
    "bash": "Install bash or choose shell: sh.",
    "pwsh": "Install PowerShell 7 (pwsh) or choose another shell.",
}


@dataclass
class CommandResult:
    """Raw result of one process."""
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    duration_ms: int = 0


class ProcessRunner:
    """Runs host processes, honouring a cancellation token."""

    POLL_INTERVAL_SEC = 0.1
    TERMINATE_GRACE_SEC = 5.0

    def run(
        self,
        argv: List[str],
        cwd: Optional[Union[str, Path]] = None,
        env: Optional[Dict[str, str]] = None,
        cancellation: Optional[CancellationToken] = None,
        stdin: Optional[bytes] = None,
    ) -> CommandResult:
        """
        Run a command to completion.

        Args:
            argv: Command and arguments
            cwd: Working directory
            env: Complete environment for the child (None inherits)
            cancellation: Token checked while the process runs
            stdin: Optional bytes written to the child's stdin

        Returns:
            CommandResult with exit code and raw output

        Raises:
            ToolNotFoundError: If the executable does not exist
            ExecutionEnvironmentError: If the working directory does not exist
            OperationCancelledError: If cancelled (StepTimeoutError on deadline)
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        if cwd and not Path(cwd).is_dir():
            raise ExecutionEnvironmentError(f"Working directory does not exist: {cwd}", {"cwd": str(cwd)})

        logger.debug(f"Executing command: {argv}")
        start_time = time.time()

        try:
            process = subprocess.Popen(
                argv,
                cwd=str(cwd) if cwd else None,
                env=env,
                stdin=subprocess.PIPE if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            tool = argv[0] if argv else ""
            raise ToolNotFoundError(tool, suggestions=tool_hints(tool))

        pending_input = stdin
        while True:
            try:
                stdout, stderr = process.communicate(input=pending_input, timeout=self.POLL_INTERVAL_SEC)
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if cancellation is not None and cancellation.is_cancelled:
                    stdout, stderr = self._stop(process)
                    try:
                        cancellation.raise_if_cancelled()
                    except OperationCancelledError as e:
                        e.stdout = stdout or b""
                        e.stderr = stderr or b""
                        raise
                    raise OperationCancelledError()

        duration_ms = int((time.time() - start_time) * 1000)
        return CommandResult(
            exit_code=process.returncode,
            stdout=stdout or b"",
            stderr=stderr or b"",
            duration_ms=duration_ms,
        )

    def _stop(self, process: subprocess.Popen):
        # Signal the whole process group so grandchildren release the pipes
        logger.debug(f"Terminating process group {process.pid}")
        _signal_group(process, signal.SIGTERM)
        try:
            return process.communicate(timeout=self.TERMINATE_GRACE_SEC)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} did not exit after terminate, killing")
            _signal_group(process, signal.SIGKILL)
            return process.communicate()

    @staticmethod
    def which(tool: str, env: Optional[Dict[str, str]] = None) -> Optional[str]:
        path = env.get("PATH") if env else None
        return shutil.which(tool, path=path)


def _signal_group(process: subprocess.Popen, sig: int) -> None:
    try:
        os.killpg(process.pid, sig)
    except ProcessLookupError:
        pass


def tool_hints(tool: str) -> List[str]:
    hint = TOOL_HINTS.get(Path(tool).name)
    return [hint] if hint else []
