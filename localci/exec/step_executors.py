"""
Concrete step executors.

Each executor turns a step into one or more commands and runs them through
the ExecutionContext, so the same executor works on the host and inside a
container. Executors return the CommandResult of the step; a non-zero exit
is a step failure, while environment problems raise.
"""

import logging
import shlex
import shutil
import uuid
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import InvalidStepError
from ..models import Step, StepKind
from .context import ExecutionContext
from .process import CommandResult
from .registry import StepExecutorRegistry


logger = logging.getLogger(__name__)


class ScriptExecutor:
    """Runs ``step.run`` with the step's shell (sh by default)."""

    DEFAULT_SHELL = "sh"

    def execute(self, step: Step, context: ExecutionContext) -> CommandResult:
        script = step.run
        if not script or not script.strip():
            raise InvalidStepError(f"Step '{step.display_name}' has no script to run", step.display_name)

        shell = (step.shell or self.DEFAULT_SHELL).strip()
        context.ensure_tool(shlex.split(shell)[0])

        needs_file = "\n" in script.strip() or "{0}" in shell
        if not needs_file:
            return context.run_command(self._inline_argv(shell, script))

        host_file, command_file = context.scratch_file(f"step-{uuid.uuid4().hex[:8]}{self._suffix(shell)}")
        host_file.write_text(self._file_contents(shell, script), encoding="utf-8")
        try:
            return context.run_command(self._file_argv(shell, command_file))
        finally:
            host_file.unlink(missing_ok=True)

    @staticmethod
    def _inline_argv(shell: str, script: str) -> List[str]:
        # The shell may carry its own flags, e.g. "bash --noprofile --norc"
        base = shlex.split(shell)
        name = Path(base[0]).name
        if name in ("pwsh", "powershell"):
            return base + ["-NoProfile", "-NonInteractive", "-Command", script]
        if name in ("sh", "bash", "zsh", "dash"):
            return base + ["-e", "-c", script]
        return base + ["-c", script]

    @staticmethod
    def _file_argv(shell: str, path: str) -> List[str]:
        base = shlex.split(shell)
        if "{0}" in shell:
            return [part.replace("{0}", path) for part in base]
        if Path(base[0]).name in ("pwsh", "powershell"):
            return base + ["-NoProfile", "-NonInteractive", "-File", path]
        return base + [path]

    @staticmethod
    def _file_contents(shell: str, script: str) -> str:
        name = Path(shlex.split(shell)[0]).name
        if name in ("sh", "bash", "zsh", "dash"):
            return f"#!/usr/bin/env {name}\nset -e\n{script}\n"
        return script if script.endswith("\n") else script + "\n"

    @staticmethod
    def _suffix(shell: str) -> str:
        name = Path(shlex.split(shell)[0]).name
        return {"pwsh": ".ps1", "powershell": ".ps1", "python": ".py", "python3": ".py"}.get(name, ".sh")


class CheckoutExecutor:
    """
    Makes source code available in the workspace.

    ``repository: self`` (the default) means the pipeline's own workspace,
    which is already mounted into containers. Any other repository is cloned
    with git, or pulled if the target already holds a clone.
    """

    def execute(self, step: Step, context: ExecutionContext) -> CommandResult:
        repository = step.with_.get("repository", "self") or "self"
        if repository == "self":
            return self._checkout_self(step, context)
        return self._checkout_remote(step, context, repository)

    def _checkout_self(self, step: Step, context: ExecutionContext) -> CommandResult:
        message = f"Workspace available at {context.workspace}\n"
        return CommandResult(exit_code=0, stdout=message.encode("utf-8"))

    def _checkout_remote(self, step: Step, context: ExecutionContext, repository: str) -> CommandResult:
        context.ensure_tool("git")
        target = step.with_.get("path") or _repository_dir_name(repository)
        ref = step.with_.get("ref")
        target_path = context.resolve_path(target)

        if (context.host_path(target) / ".git").exists():
            result = context.run_command(["git", "-C", target_path, "pull"])
        else:
            argv = ["git", "clone"]
            depth = step.with_.get("fetch-depth")
            if depth and str(depth) != "0":
                argv += ["--depth", str(depth)]
            result = context.run_command(argv + [repository, target_path])
        if result.exit_code != 0 or not ref:
            return result

        checkout = context.run_command(["git", "-C", target_path, "checkout", ref])
        return CommandResult(
            exit_code=checkout.exit_code,
            stdout=result.stdout + checkout.stdout,
            stderr=result.stderr + checkout.stderr,
            duration_ms=result.duration_ms + checkout.duration_ms,
        )


class HostCheckoutExecutor(CheckoutExecutor):
    """Host checkout: copies the source workspace into the isolated one."""

    IGNORED = (".localci",)

    def _checkout_self(self, step: Step, context: ExecutionContext) -> CommandResult:
        source = context.source_workspace
        if source is None or Path(source).resolve() == context.host_workspace.resolve():
            return super()._checkout_self(step, context)

        logger.debug(f"Copying workspace {source} -> {context.host_workspace}")
        shutil.copytree(
            source,
            context.host_workspace,
            dirs_exist_ok=True,
            symlinks=True,
            ignore=shutil.ignore_patterns(*self.IGNORED),
        )
        message = f"Copied {source} to {context.host_workspace}\n"
        return CommandResult(exit_code=0, stdout=message.encode("utf-8"))


def _repository_dir_name(repository: str) -> str:
    name = repository.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
    return name[:-4] if name.endswith(".git") else name or "repository"


class PackageManagerExecutor:
    """
    Runs package manager commands (npm, yarn, pnpm, pip, dotnet, maven, gradle).

    Either ``with: {manager, command, arguments}`` or a full ``run`` line.
    """

    TOOLS = {
        "npm": "npm",
        "yarn": "yarn",
        "pnpm": "pnpm",
        "pip": "pip",
        "dotnet": "dotnet",
        "maven": "mvn",
        "mvn": "mvn",
        "gradle": "gradle",
    }

    # npm only runs lifecycle scripts like "build" through "npm run"
    NPM_BUILTIN = {"install", "ci", "test", "start", "publish", "pack", "audit", "run", "exec", "version"}

    def execute(self, step: Step, context: ExecutionContext) -> CommandResult:
        argv = self.build_argv(step)
        context.ensure_tool(argv[0])
        return context.run_command(argv)

    def build_argv(self, step: Step) -> List[str]:
        manager = step.with_.get("manager")
        command = step.with_.get("command")
        arguments = shlex.split(step.with_.get("arguments", "") or step.with_.get("args", "") or "")

        if not command and step.run:
            argv = shlex.split(step.run)
            if not argv:
                raise InvalidStepError(f"Step '{step.display_name}' has an empty command", step.display_name)
            argv[0] = self.TOOLS.get(argv[0], argv[0])
            return argv + arguments

        if not manager:
            raise InvalidStepError(
                f"Step '{step.display_name}' needs 'with.manager' or a 'run' command",
                step.display_name,
            )
        tool = self.TOOLS.get(manager.lower())
        if tool is None:
            raise InvalidStepError(
                f"Unsupported package manager '{manager}'. Supported: {sorted(self.TOOLS)}",
                step.display_name,
            )
        if not command:
            command = "install"

        command_parts = shlex.split(command)
        if tool == "npm" and command_parts[0] not in self.NPM_BUILTIN:
            command_parts = ["run"] + command_parts
        return [tool] + command_parts + arguments


class ContainerCommandExecutor:
    """Runs docker CLI commands (build, run, push, ...)."""

    def execute(self, step: Step, context: ExecutionContext) -> CommandResult:
        command = step.with_.get("command")
        if command:
            argv = ["docker"] + shlex.split(command) + shlex.split(step.with_.get("arguments", "") or "")
        elif step.run:
            argv = shlex.split(step.run)
            if argv and argv[0] != "docker":
                argv = ["docker"] + argv
        else:
            raise InvalidStepError(
                f"Step '{step.display_name}' needs 'with.command' or a 'run' command",
                step.display_name,
            )
        context.ensure_tool("docker")
        return context.run_command(argv)


class ArtifactExecutor:
    """
    Upload/download artifact steps.

    Storage is delegated to a handler with ``upload(step, context)`` and
    ``download(step, context)``; without one the step fails with a message.
    """

    def __init__(self, direction: str):
        self.direction = direction

    def execute(self, step: Step, context: ExecutionContext) -> CommandResult:
        handler = context.artifact_handler
        if handler is None:
            message = (
                f"Artifact {self.direction} for step '{step.display_name}' requires an artifact "
                f"handler, and none is configured\n"
            )
            return CommandResult(exit_code=1, stderr=message.encode("utf-8"))
        return getattr(handler, self.direction)(step, context)


def create_default_registry(overrides: Optional[Dict[StepKind, object]] = None) -> StepExecutorRegistry:
    """Registry with the built-in executors registered."""
    registry = StepExecutorRegistry()
    registry.register(StepKind.SCRIPT, ScriptExecutor())
    registry.register(StepKind.CHECKOUT, CheckoutExecutor())
    registry.register(StepKind.CHECKOUT, HostCheckoutExecutor(), backend="host")
    registry.register(StepKind.PACKAGE_MANAGER, PackageManagerExecutor())
    registry.register(StepKind.CONTAINER_COMMAND, ContainerCommandExecutor())
    registry.register(StepKind.UPLOAD_ARTIFACT, ArtifactExecutor("upload"))
    registry.register(StepKind.DOWNLOAD_ARTIFACT, ArtifactExecutor("download"))
    for kind, executor in (overrides or {}).items():
        registry.register(kind, executor)
    return registry
