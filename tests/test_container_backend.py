"""Tests for the container backend with a fake docker CLI."""

import tempfile
from pathlib import Path

import pytest

from localci.backends import CONTAINER_WORKSPACE, ContainerBackend, DockerCli, ImageMapper
from localci.exceptions import (
    ContainerCreateError,
    ContainerExecError,
    ContainerRuntimeUnavailableError,
    ExecutionEnvironmentError,
    OperationCancelledError,
    StepTimeoutError,
    ToolNotFoundError,
)
from localci.exec.process import CommandResult
from localci.models import Job, Step


class FakeDocker:
    """Records docker calls; exec results come from a script of exit codes."""

    def __init__(self, available=True, image_present=True, create_error=None, exec_results=None):
        self.available = available
        self.image_present = image_present
        self.create_error = create_error
        self.exec_results = list(exec_results or [])
        self.pulled = []
        self.created = []
        self.execs = []
        self.removed = []

    def is_available(self):
        return self.available

    def image_exists(self, image):
        return self.image_present

    def pull(self, image, cancellation=None):
        self.pulled.append(image)

    def create(self, image, name, host_workspace, cancellation=None):
        if self.create_error is not None:
            raise self.create_error
        self.created.append({"image": image, "name": name, "host_workspace": Path(host_workspace)})
        return "c0ffee1234567890"

    def exec(self, container_id, argv, workdir, env, cancellation=None):
        if argv[:2] == ["sh", "-c"] and argv[2].startswith("command -v"):
            return CommandResult(exit_code=0)
        self.execs.append({"argv": argv, "workdir": workdir, "env": dict(env)})
        if self.exec_results:
            outcome = self.exec_results.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return CommandResult(exit_code=0, stdout=b"ok\n")

    def remove(self, container_id):
        self.removed.append(container_id)


def make_job(*runs, runs_on="ubuntu-latest", **step_kwargs):
    steps = [Step(id=f"s{i}", name=f"Step {i}", run=run, **step_kwargs) for i, run in enumerate(runs, start=1)]
    return Job(id="build", name="Build", runs_on=runs_on, steps=steps)


class TestLifecycle:

    def test_one_container_per_job(self, tmp_path):
        docker = FakeDocker()
        backend = ContainerBackend(docker=docker)
        result = backend.run_job(make_job("make", "make test"), tmp_path)

        assert result.success
        assert len(docker.created) == 1
        assert docker.created[0]["image"] == "buildpack-deps:jammy"
        assert docker.created[0]["host_workspace"] == tmp_path.resolve()
        assert docker.removed == ["c0ffee1234567890"]
        assert [e["workdir"] for e in docker.execs] == [CONTAINER_WORKSPACE, CONTAINER_WORKSPACE]
        assert docker.execs[0]["argv"] == ["sh", "-e", "-c", "make"]

    def test_removed_once_after_step_failure(self, tmp_path):
        docker = FakeDocker(exec_results=[CommandResult(exit_code=2, stderr=b"boom")])
        result = ContainerBackend(docker=docker).run_job(make_job("make", "never"), tmp_path)

        assert not result.success
        assert len(result.step_results) == 1
        assert result.step_results[0].stderr == "boom"
        assert len(docker.removed) == 1

    def test_exec_failure_aborts_job(self, tmp_path):
        docker = FakeDocker(exec_results=[ContainerExecError("Container exec failed: No such container")])
        result = ContainerBackend(docker=docker).run_job(
            make_job("make", "never", continue_on_error=True), tmp_path
        )

        assert not result.success
        assert result.error["type"] == "container_exec_failed"
        assert len(result.step_results) == 1
        assert len(docker.removed) == 1

    def test_runtime_unavailable(self, tmp_path):
        docker = FakeDocker(available=False)
        result = ContainerBackend(docker=docker).run_job(make_job("make"), tmp_path)

        assert not result.success
        assert result.error["type"] == "container_runtime_unavailable"
        assert result.step_results == []
        assert docker.removed == []

    def test_create_failure_reported(self, tmp_path):
        docker = FakeDocker(create_error=ContainerCreateError("Failed to create container"))
        result = ContainerBackend(docker=docker).run_job(make_job("make"), tmp_path)
        assert result.error["type"] == "container_create_failed"
        assert len(docker.removed) == 1
        assert docker.removed[0].startswith("localci-job-build-")

    def test_cancelled_create_removes_container_by_name(self, tmp_path):
        docker = FakeDocker(create_error=OperationCancelledError())
        result = ContainerBackend(docker=docker).run_job(make_job("make"), tmp_path)

        assert not result.success
        assert result.error["type"] == "cancelled"
        assert result.step_results == []
        assert len(docker.removed) == 1
        assert docker.removed[0].startswith("localci-job-build-")

    def test_remove_after_failed_create_may_fail(self, tmp_path):
        docker = FakeDocker(create_error=OperationCancelledError())

        def failing_remove(name):
            raise ExecutionEnvironmentError(f"Failed to remove container {name}: No such container")

        docker.remove = failing_remove
        result = ContainerBackend(docker=docker).run_job(make_job("make"), tmp_path)
        assert result.error["type"] == "cancelled"

    def test_cancel_during_exec_removes_container_once(self, tmp_path):
        docker = FakeDocker(exec_results=[CommandResult(exit_code=0), OperationCancelledError()])
        result = ContainerBackend(docker=docker).run_job(
            make_job("make", "make test", "never", continue_on_error=True), tmp_path
        )

        assert not result.success
        assert result.error["type"] == "cancelled"
        assert [s.exit_code for s in result.step_results] == [0, 130]
        assert docker.removed == ["c0ffee1234567890"]
        assert len(docker.execs) == 2

    def test_unknown_runner_label(self, tmp_path):
        docker = FakeDocker()
        result = ContainerBackend(docker=docker).run_job(make_job("make", runs_on="ubuntu-lates"), tmp_path)
        assert "Did you mean: ubuntu-latest" in result.error["message"]
        assert docker.created == []

    def test_remove_failure_does_not_change_outcome(self, tmp_path):
        docker = FakeDocker()

        def failing_remove(container_id):
            raise ExecutionEnvironmentError("Failed to remove container")

        docker.remove = failing_remove
        result = ContainerBackend(docker=docker).run_job(make_job("true"), tmp_path)
        assert result.success


class TestPullPolicy:

    @pytest.mark.parametrize("policy, present, expected", [
        ("if-not-present", True, []),
        ("if-not-present", False, ["node:20"]),
        ("always", True, ["node:20"]),
        ("never", False, []),
    ])
    def test_policy(self, tmp_path, policy, present, expected):
        docker = FakeDocker(image_present=present)
        ContainerBackend(docker=docker, pull_policy=policy).run_job(make_job("true", runs_on="node:20"), tmp_path)
        assert docker.pulled == expected

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            ContainerBackend(docker=FakeDocker(), pull_policy="sometimes")


class TestIsolation:

    def test_isolated_copy_mounted_and_removed(self, tmp_path):
        (tmp_path / "app.py").write_text("print()")
        docker = FakeDocker()
        backend = ContainerBackend(docker=docker, isolate_workspace=True)
        assert backend.supports_parallel_jobs

        backend.run_job(make_job("true"), tmp_path)

        mounted = docker.created[0]["host_workspace"]
        assert mounted != tmp_path.resolve()
        assert not mounted.exists()
        assert (tmp_path / "app.py").exists()

    def test_copy_removed_when_create_fails(self, tmp_path, monkeypatch):
        created_dirs = []
        real_mkdtemp = tempfile.mkdtemp

        def recording_mkdtemp(*args, **kwargs):
            path = real_mkdtemp(*args, **kwargs)
            created_dirs.append(Path(path))
            return path

        monkeypatch.setattr("localci.backends.container.tempfile.mkdtemp", recording_mkdtemp)
        docker = FakeDocker(create_error=ContainerCreateError("nope"))
        ContainerBackend(docker=docker, isolate_workspace=True).run_job(make_job("true"), tmp_path)

        assert len(created_dirs) == 1
        assert not created_dirs[0].exists()

    def test_shared_mount_is_sequential(self):
        assert not ContainerBackend(docker=FakeDocker()).supports_parallel_jobs


class TestImageMapper:

    def test_defaults_and_overrides(self):
        mapper = ImageMapper({"ubuntu-latest": "ubuntu:24.04", "Custom": "registry.local/ci/base:1"})
        assert mapper.map("ubuntu-latest") == "ubuntu:24.04"
        assert mapper.map("UBUNTU-20.04") == "buildpack-deps:focal"
        assert mapper.map("custom") == "registry.local/ci/base:1"

    def test_image_reference_passthrough(self):
        assert ImageMapper().map("python:3.12-slim") == "python:3.12-slim"

    def test_invalid_image(self):
        with pytest.raises(ContainerCreateError):
            ImageMapper().map("Bad Image:tag")

    def test_empty_label(self):
        with pytest.raises(ContainerCreateError):
            ImageMapper().map("  ")

    def test_is_valid_image(self):
        mapper = ImageMapper()
        assert mapper.is_valid_image("alpine")
        assert mapper.is_valid_image("ghcr.io/org/tool:v1.2")
        assert not mapper.is_valid_image("")
        assert not mapper.is_valid_image("a" * 300)


class FakeProcessRunner:

    def __init__(self, result=None, missing=False):
        self.result = result or CommandResult(exit_code=0)
        self.missing = missing
        self.raise_on_first = None
        self.calls = []

    def run(self, argv, cwd=None, env=None, cancellation=None, stdin=None):
        self.calls.append(argv)
        if self.missing:
            raise ToolNotFoundError(argv[0])
        if self.raise_on_first is not None and len(self.calls) == 1:
            raise self.raise_on_first
        return self.result


class TestDockerCli:

    def test_missing_executable(self):
        docker = DockerCli(process_runner=FakeProcessRunner(missing=True))
        assert not docker.is_available()
        with pytest.raises(ContainerRuntimeUnavailableError):
            docker.pull("alpine")

    def test_exec_passes_env_and_workdir(self):
        runner = FakeProcessRunner()
        DockerCli(process_runner=runner).exec("abc", ["make"], "/workspace/src", {"A": "1"})
        assert runner.calls[0] == ["docker", "exec", "-w", "/workspace/src", "-e", "A=1", "abc", "make"]

    def test_command_failure_is_returned(self):
        runner = FakeProcessRunner(CommandResult(exit_code=1, stderr=b"tests failed"))
        result = DockerCli(process_runner=runner).exec("abc", ["make"], "/workspace", {})
        assert result.exit_code == 1

    def test_daemon_failure_raises(self):
        stderr = b"Error response from daemon: container abc is not running"
        runner = FakeProcessRunner(CommandResult(exit_code=1, stderr=stderr))
        with pytest.raises(ContainerExecError):
            DockerCli(process_runner=runner).exec("abc", ["make"], "/workspace", {})

    def test_timeout_stops_processes_in_container(self):
        runner = FakeProcessRunner()
        runner.raise_on_first = StepTimeoutError(5)
        with pytest.raises(StepTimeoutError):
            DockerCli(process_runner=runner).exec("abc", ["sleep", "60"], "/workspace", {})
        assert runner.calls[1] == ["docker", "exec", "abc", "sh", "-c", "kill -s KILL -1"]

    def test_stop_processes_failure_keeps_original_error(self):
        runner = FakeProcessRunner(CommandResult(exit_code=1, stderr=b"not running"))
        runner.raise_on_first = OperationCancelledError()
        with pytest.raises(OperationCancelledError):
            DockerCli(process_runner=runner).exec("abc", ["make"], "/workspace", {})
        assert len(runner.calls) == 2

    def test_create_uses_sleeping_container(self, tmp_path):
        runner = FakeProcessRunner(CommandResult(exit_code=0, stdout=b"abc123\n"))
        container_id = DockerCli(process_runner=runner).create("alpine", "job", tmp_path)

        assert container_id == "abc123"
        argv = runner.calls[0]
        assert argv[:3] == ["docker", "run", "-d"]
        assert f"{tmp_path}:{CONTAINER_WORKSPACE}" in argv
        assert argv[-2:] == ["alpine", "infinity"]

    def test_create_failure(self, tmp_path):
        runner = FakeProcessRunner(CommandResult(exit_code=125, stderr=b"no space"))
        with pytest.raises(ContainerCreateError):
            DockerCli(process_runner=runner).create("alpine", "job", tmp_path)
