"""
Container backend: runs every step of a job inside one long-lived container.

The workspace is bind-mounted at /workspace, so files written by one step are
visible to the next. The container is created once per job and removed at
cleanup. Docker is driven through its CLI.
"""

import logging
import re
import shlex
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ..exceptions import (
    ContainerCreateError,
    ContainerExecError,
    ContainerRuntimeUnavailableError,
    ExecutionEnvironmentError,
    ImagePullError,
    OperationCancelledError,
    ToolNotFoundError,
)
from ..exec.cancellation import CancellationToken
from ..exec.output_capture import decode_output
from ..exec.process import CommandResult, ProcessRunner
from ..filtering.matching import find_similar
from ..models import Job
from .base import ExecutionBackend, JobEnvironment


logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"

# Docker CLI messages that mean the runtime failed, not the command
_RUNTIME_FAILURE_MARKERS = (
    "Error response from daemon",
    "No such container",
    "Cannot connect to the Docker daemon",
)


class ImageMapper:
    """Maps ``runs_on`` labels to container images."""

    DEFAULT_IMAGES = {
        "ubuntu-latest": "buildpack-deps:jammy",
        "ubuntu-22.04": "buildpack-deps:jammy",
        "ubuntu-20.04": "buildpack-deps:focal",
        "ubuntu-24.04": "buildpack-deps:noble",
        "windows-latest": "mcr.microsoft.com/windows/servercore:ltsc2022",
        "windows-2022": "mcr.microsoft.com/windows/servercore:ltsc2022",
        "windows-2019": "mcr.microsoft.com/windows/servercore:ltsc2019",
    }

    IMAGE_PATTERN = re.compile(
        r'^[a-z0-9]+(([._-][a-z0-9]+)|([./][a-z0-9]+([._-][a-z0-9]+)*))*'
        r'(:[a-zA-Z0-9_][a-zA-Z0-9._-]{0,127})?(@sha256:[a-f0-9]{64})?$',
        re.IGNORECASE,
    )

    def __init__(self, overrides: Optional[Mapping[str, str]] = None):
        self.images = {label.lower(): image for label, image in self.DEFAULT_IMAGES.items()}
        for label, image in (overrides or {}).items():
            self.images[label.lower()] = image

    def map(self, runs_on: str) -> str:
        """
        Resolve a runner label or image reference.

        Labels containing ':' or '/' are treated as image references.

        Raises:
            ContainerCreateError: If the label is unknown or the image invalid
        """
        label = (runs_on or "").strip()
        if not label:
            raise ContainerCreateError("Runner label must not be empty")

        if ':' in label or '/' in label:
            if not self.is_valid_image(label):
                raise ContainerCreateError(f"Image name '{label}' is not valid", {"image": label})
            return label

        image = self.images.get(label.lower())
        if image is None:
            message = f"Runner '{label}' is not recognized"
            similar = find_similar(label, list(self.images))
            if similar:
                message += f". Did you mean: {', '.join(similar)}?"
            message += " Use a known runner label or an image reference such as node:20."
            raise ContainerCreateError(message, {"runs_on": label})
        return image

    def is_valid_image(self, image: str) -> bool:
        image = (image or "").strip()
        if not image or len(image) > 255:
            return False
        return bool(self.IMAGE_PATTERN.match(image))


class DockerCli:
    """Thin wrapper over the docker command line."""

    def __init__(self, executable: str = "docker", process_runner: Optional[ProcessRunner] = None):
        self.executable = executable
        self.process_runner = process_runner or ProcessRunner()

    def _run(self, args: List[str], cancellation: Optional[CancellationToken] = None) -> CommandResult:
        try:
            return self.process_runner.run([self.executable] + args, cancellation=cancellation)
        except ToolNotFoundError:
            raise ContainerRuntimeUnavailableError(
                f"Container runtime '{self.executable}' is not installed or not on PATH. "
                "Install Docker and ensure the daemon is running, or use the host backend.",
                {"executable": self.executable},
            )

    def is_available(self) -> bool:
        """True if the CLI exists and the daemon answers."""
        try:
            result = self._run(["version", "--format", "{{.Server.Version}}"])
        except ContainerRuntimeUnavailableError:
            return False
        return result.exit_code == 0

    def image_exists(self, image: str) -> bool:
        return self._run(["image", "inspect", image]).exit_code == 0

    def pull(self, image: str, cancellation: Optional[CancellationToken] = None) -> None:
        logger.info(f"Pulling image {image}")
        result = self._run(["pull", image], cancellation)
        if result.exit_code != 0:
            raise ImagePullError(
                f"Failed to pull image '{image}': {decode_output(result.stderr).strip()}",
                {"image": image, "exit_code": result.exit_code},
            )

    def create(
        self,
        image: str,
        name: str,
        host_workspace: Path,
        cancellation: Optional[CancellationToken] = None,
    ) -> str:
        """Start a detached container that idles until removed; returns its id."""
        args = [
            "run", "-d",
            "--name", name,
            "-v", f"{host_workspace}:{CONTAINER_WORKSPACE}",
            "-w", CONTAINER_WORKSPACE,
            "--entrypoint", "sleep",
            image, "infinity",
        ]
        result = self._run(args, cancellation)
        container_id = decode_output(result.stdout).strip()
        if result.exit_code != 0 or not container_id:
            raise ContainerCreateError(
                f"Failed to create container from '{image}': {decode_output(result.stderr).strip()}",
                {"image": image, "name": name, "exit_code": result.exit_code},
            )
        return container_id

    def exec(
        self,
        container_id: str,
        argv: List[str],
        workdir: str,
        env: Dict[str, str],
        cancellation: Optional[CancellationToken] = None,
    ) -> CommandResult:
        """
        Run a command in the container.

        Stopping the ``docker exec`` client does not stop the command inside
        the container, so on cancellation or timeout every process in the
        container except its init process is killed before re-raising.

        Raises:
            ContainerExecError: If docker itself failed (as opposed to the command)
            OperationCancelledError: If cancelled (StepTimeoutError on deadline)
        """
        args = ["exec", "-w", workdir]
        for key, value in env.items():
            args += ["-e", f"{key}={value}"]
        args.append(container_id)
        try:
            result = self._run(args + argv, cancellation)
        except OperationCancelledError:
            self.stop_processes(container_id)
            raise
        if result.exit_code != 0:
            stderr = decode_output(result.stderr)
            if any(marker in stderr for marker in _RUNTIME_FAILURE_MARKERS):
                raise ContainerExecError(
                    f"Container exec failed: {stderr.strip()}",
                    {"container_id": container_id, "exit_code": result.exit_code},
                )
        return result

    def stop_processes(self, container_id: str) -> None:
        """Kill everything in the container but PID 1 (the idle ``sleep``)."""
        try:
            result = self._run(["exec", container_id, "sh", "-c", "kill -s KILL -1"])
        except ExecutionEnvironmentError as e:
            logger.warning(f"Could not stop processes in container {container_id[:12]}: {e}")
            return
        if result.exit_code != 0:
            logger.debug(
                f"kill in container {container_id[:12]} exited {result.exit_code}: "
                f"{decode_output(result.stderr).strip()}"
            )

    def remove(self, container_id: str) -> None:
        result = self._run(["rm", "-f", container_id])
        if result.exit_code != 0:
            raise ExecutionEnvironmentError(
                f"Failed to remove container {container_id}: {decode_output(result.stderr).strip()}",
                {"container_id": container_id},
            )


class ContainerCommandRunner:
    """Runs commands in one container via ``docker exec``."""

    def __init__(self, docker: DockerCli, container_id: str):
        self.docker = docker
        self.container_id = container_id

    def run(
        self,
        argv: List[str],
        cwd: str,
        env: Dict[str, str],
        cancellation: CancellationToken,
    ) -> CommandResult:
        return self.docker.exec(self.container_id, argv, cwd, env, cancellation)

    def tool_exists(self, tool: str, env: Dict[str, str]) -> bool:
        result = self.docker.exec(
            self.container_id,
            ["sh", "-c", f"command -v {shlex.quote(tool)}"],
            CONTAINER_WORKSPACE,
            env,
        )
        return result.exit_code == 0


class ContainerBackend(ExecutionBackend):
    """
    Runs jobs in containers.

    Args:
        docker: Docker CLI wrapper
        image_mapper: Runner label mapping
        pull_policy: "if-not-present" (default), "always" or "never"
        isolate_workspace: Mount a per-job copy of the workspace instead of
            the workspace itself, which allows jobs to run in parallel
        **kwargs: Passed to ExecutionBackend
    """

    name = "container"

    def __init__(
        self,
        docker: Optional[DockerCli] = None,
        image_mapper: Optional[ImageMapper] = None,
        pull_policy: str = "if-not-present",
        isolate_workspace: bool = False,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.isolate_workspace = isolate_workspace
        self.supports_parallel_jobs = isolate_workspace
        if pull_policy not in ("if-not-present", "always", "never"):
            raise ValueError(f"Invalid pull policy: {pull_policy}")
        self.docker = docker or DockerCli()
        self.image_mapper = image_mapper or ImageMapper()
        self.pull_policy = pull_policy

    def _acquire(self, job: Job, workspace: Path, cancellation: CancellationToken) -> JobEnvironment:
        if not self.docker.is_available():
            raise ContainerRuntimeUnavailableError(
                "Docker is not available. Install Docker and ensure the daemon is running, "
                "or use the host backend."
            )

        image = self.image_mapper.map(job.runs_on)
        if self.pull_policy == "always" or (
            self.pull_policy == "if-not-present" and not self.docker.image_exists(image)
        ):
            self.docker.pull(image, cancellation)
        cancellation.raise_if_cancelled()

        copy_dir = None
        host_workspace = workspace.resolve()
        if self.isolate_workspace:
            copy_dir = Path(tempfile.mkdtemp(prefix=f"localci-job-{_safe(job.id)}-"))
            shutil.copytree(host_workspace, copy_dir, dirs_exist_ok=True, symlinks=True)
            host_workspace = copy_dir

        name = f"localci-job-{_safe(job.id)}-{uuid.uuid4().hex[:8]}"
        try:
            container_id = self.docker.create(image, name, host_workspace, cancellation)
        except BaseException:
            # Nothing is handed to cleanup yet. The daemon may have created the
            # container even though the CLI was stopped, so remove it by name.
            self._discard(name)
            if copy_dir is not None:
                shutil.rmtree(copy_dir, ignore_errors=True)
            raise
        logger.info(f"Created container {container_id[:12]} ({image}) for job '{job.id}'")

        return JobEnvironment(
            runner=ContainerCommandRunner(self.docker, container_id),
            workspace=CONTAINER_WORKSPACE,
            host_workspace=host_workspace,
            container_id=container_id,
            handle=copy_dir,
        )

    def _discard(self, name: str) -> None:
        try:
            self.docker.remove(name)
        except ExecutionEnvironmentError as e:
            logger.debug(f"No container {name} to remove after failed create: {e}")

    def _release(self, environment: JobEnvironment) -> None:
        logger.debug(f"Removing container {environment.container_id}")
        try:
            self.docker.remove(environment.container_id)
        finally:
            if environment.handle is not None:
                shutil.rmtree(environment.handle)


def _safe(name: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "_.-" else "-" for c in name.lower())
    return cleaned.strip("-.") or "job"
