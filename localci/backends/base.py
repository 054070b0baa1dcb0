"""
Job execution shared by all backends.

A backend runs one job at a time through this lifecycle:

    PREPARING -> RUNNING -> SUCCEEDED | FAILED -> CLEANUP -> DONE

Preparing acquires the job's execution resource (a container or a temporary
host workspace) exactly once; cleanup releases it exactly once on every exit
path. Subclasses only implement ``_acquire`` and ``_release``.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple, Union

from ..exceptions import (
    ExecutionEnvironmentError,
    OperationCancelledError,
    StepAuthoringError,
    VariableError,
)
from ..exec.cancellation import CancellationToken
from ..exec.conditions import ConditionEvaluator
from ..exec.context import CommandRunner, ExecutionContext
from ..exec.output_capture import OutputCapture
from ..exec.registry import StepExecutorRegistry
from ..exec.step_executors import create_default_registry
from ..filtering.step_filter import StepFilter
from ..models import Job, JobResult, SkipReason, Step, StepResult
from ..deps.scheduler import find_step_index
from ..security.secrets import SecretMasker
from ..variables.expansion import VariableExpander
from ..variables.store import ScopedVariables, VariableContext, VariableStore


logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class BackendState(str, Enum):
    PREPARING = "preparing"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CLEANUP = "cleanup"
    DONE = "done"


@dataclass
class JobEnvironment:
    """The execution resource acquired for one job."""
    runner: CommandRunner
    workspace: str
    host_workspace: Path
    container_id: Optional[str] = None
    handle: Any = None


StateListener = Callable[[str, BackendState, Optional[int]], None]


class ExecutionBackend:
    """
    Base class for backends.

    Args:
        registry: Step executors (default: the built-in set)
        masker: Masker for captured output and errors
        expander: Variable expander
        step_timeout_sec: Default per-step timeout (a step's own value wins)
        logs_dir: Where truncated output is spilled
        artifact_handler: Storage for artifact steps
        state_listener: Called with (job_id, state, step_index) on transitions
    """

    name = "base"
    supports_parallel_jobs = False

    def __init__(
        self,
        registry: Optional[StepExecutorRegistry] = None,
        masker: Optional[SecretMasker] = None,
        expander: Optional[VariableExpander] = None,
        step_timeout_sec: Optional[float] = None,
        logs_dir: Optional[Path] = None,
        artifact_handler: Any = None,
        state_listener: Optional[StateListener] = None,
    ):
        self.registry = registry or create_default_registry()
        self.masker = masker or SecretMasker()
        self.expander = expander or VariableExpander()
        self.conditions = ConditionEvaluator(self.expander)
        self.step_timeout_sec = step_timeout_sec
        self.output_capture = OutputCapture(self.masker, logs_dir)
        self.artifact_handler = artifact_handler
        self.state_listener = state_listener

    def _acquire(self, job: Job, workspace: Path, cancellation: CancellationToken) -> JobEnvironment:
        raise NotImplementedError

    def _release(self, environment: JobEnvironment) -> None:
        raise NotImplementedError

    def _runner_label(self, job: Job) -> str:
        return job.runs_on

    def _transition(self, job: Job, state: BackendState, step_index: Optional[int] = None) -> None:
        logger.debug(f"Job '{job.id}' -> {state.value}" + (f" (step {step_index})" if step_index else ""))
        if self.state_listener is not None:
            self.state_listener(job.id, state, step_index)

    @contextmanager
    def job_environment(self, job: Job, workspace: Path, cancellation: CancellationToken) -> Iterator[JobEnvironment]:
        """Acquire the job's resource and release it exactly once, whatever happens."""
        environment = self._acquire(job, workspace, cancellation)
        try:
            yield environment
        finally:
            self._transition(job, BackendState.CLEANUP)
            try:
                self._release(environment)
            except Exception as e:
                # Never replace the job's own outcome with a cleanup problem
                logger.warning(f"Cleanup failed for job '{job.id}': {self.masker.mask_text(str(e))}")

    def run_job(
        self,
        job: Job,
        workspace: Union[str, Path],
        step_filter: Optional[StepFilter] = None,
        variable_store: Optional[VariableStore] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> JobResult:
        """
        Run every selected step of a job.

        Never raises for step, authoring, environment or cancellation
        failures: each is reported in the returned JobResult.

        Args:
            job: The job
            workspace: Source workspace on the host
            step_filter: Step selection (default: everything)
            variable_store: Variables for expansion (default: built-ins only)
            cancellation: Run-wide cancellation token

        Returns:
            JobResult with the ordered step results
        """
        start_time = time.time()
        step_filter = step_filter or StepFilter.allow_all()
        variable_store = variable_store or VariableStore()
        job_token = (cancellation or CancellationToken()).child(job.timeout_sec)

        results: List[StepResult] = []
        failed = False
        error: Optional[Dict[str, Any]] = None

        logger.info(f"Starting job '{job.display_name}' on {self.name} backend")
        self._transition(job, BackendState.PREPARING)
        try:
            with self.job_environment(job, Path(workspace), job_token) as environment:
                self._transition(job, BackendState.RUNNING)
                failed, error = self._run_steps(job, Path(workspace), environment, step_filter,
                                                variable_store, job_token, results)
                self._transition(job, BackendState.FAILED if failed else BackendState.SUCCEEDED)
        except ExecutionEnvironmentError as e:
            failed = True
            error = self.masker.mask_value(e.to_error())
            logger.error(f"Job '{job.display_name}' could not run: {error['message']}")
            self._transition(job, BackendState.FAILED)
        except OperationCancelledError as e:
            failed = True
            error = {"type": e.error_type, "message": e.message, "context": {}}
            logger.warning(f"Job '{job.display_name}' cancelled while preparing: {e.message}")
            self._transition(job, BackendState.FAILED)

        self._transition(job, BackendState.DONE)
        duration_ms = int((time.time() - start_time) * 1000)
        outcome = "failed" if failed else "succeeded"
        logger.info(f"Job '{job.display_name}' {outcome} in {duration_ms} ms")
        return JobResult(
            job_id=job.id,
            name=job.display_name,
            success=not failed,
            step_results=results,
            duration_ms=duration_ms,
            error=error,
        )

    def _run_steps(
        self,
        job: Job,
        source_workspace: Path,
        environment: JobEnvironment,
        step_filter: StepFilter,
        store: VariableStore,
        job_token: CancellationToken,
        results: List[StepResult],
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Run steps in order; returns (job failed, job-level error)."""
        job_variables = store.scoped(VariableContext(
            workspace=environment.workspace,
            runner=self._runner_label(job),
            job_name=job.display_name,
        ))
        context = ExecutionContext(
            backend=self.name,
            runner=environment.runner,
            job=job,
            workspace=environment.workspace,
            host_workspace=environment.host_workspace,
            working_directory=environment.workspace,
            cancellation=job_token,
            source_workspace=source_workspace,
            container_id=environment.container_id,
            artifact_handler=self.artifact_handler,
        )

        any_failed = False
        for index, step in enumerate(job.steps, start=1):
            decision = step_filter.should_execute(step, index, job)
            if not decision.should_execute:
                logger.info(f"Skipping step {index} '{step.display_name}': {decision.reason}")
                results.append(StepResult.skipped(step, index, decision.skip_reason, decision.reason))
                continue

            failed_need = self._failed_need(job, step, results)
            if failed_need:
                reason = f"required step '{failed_need}' did not succeed"
                logger.info(f"Skipping step {index} '{step.display_name}': {reason}")
                results.append(StepResult.skipped(step, index, SkipReason.DEPENDENCY_FAILED, reason))
                continue

            step_variables = job_variables.for_step(step.display_name)
            step_token = job_token.child(step.timeout_sec or self.step_timeout_sec)
            self._transition(job, BackendState.RUNNING, index)

            try:
                step_token.raise_if_cancelled()
                if not self.conditions.evaluate(step.condition, step_variables, previous_failed=any_failed):
                    results.append(StepResult.skipped(
                        step, index, SkipReason.CONDITIONAL_SKIP, f"condition not met: {step.condition}"
                    ))
                    continue
                result = self._execute_step(job, step, index, context, step_variables, step_token)
            except (VariableError, StepAuthoringError) as e:
                results.append(self._error_result(step, index, e.to_error()))
                logger.error(f"Step '{step.display_name}' is invalid: {self.masker.mask_text(e.message)}")
                return True, self.masker.mask_value(e.to_error())
            except ExecutionEnvironmentError as e:
                results.append(self._error_result(step, index, e.to_error()))
                logger.error(f"Step '{step.display_name}' could not run: {self.masker.mask_text(e.message)}")
                return True, self.masker.mask_value(e.to_error())
            except OperationCancelledError as e:
                timed_out = step_token.expired and not job_token.is_cancelled
                result = self._cancelled_result(step, index, e, timed_out)
                if not timed_out:
                    results.append(result)
                    logger.warning(f"Job '{job.display_name}' cancelled during step '{step.display_name}'")
                    return True, dict(result.error)
                logger.warning(f"Step '{step.display_name}' timed out after {step_token.timeout_sec} seconds")

            results.append(result)
            if result.status == "failed":
                any_failed = True
                if step.continue_on_error:
                    logger.warning(f"Step '{step.display_name}' failed (exit {result.exit_code}), continuing")
                    continue
                logger.warning(f"Step '{step.display_name}' failed (exit {result.exit_code}), stopping job")
                return True, None

        return any_failed, None

    def _execute_step(
        self,
        job: Job,
        step: Step,
        index: int,
        context: ExecutionContext,
        variables: ScopedVariables,
        token: CancellationToken,
    ) -> StepResult:
        expanded = self.expand_step(step, variables)
        env = self._step_environment(job, expanded, variables)
        step_context = context.for_step(expanded, env, expanded.working_directory, token)
        executor = self.registry.get(step.kind, backend=self.name, step_name=step.display_name)

        logger.info(f"Running step {index} '{step.display_name}' ({step.kind.value})")
        start_time = time.time()
        command_result = executor.execute(expanded, step_context)
        duration_ms = int((time.time() - start_time) * 1000)

        captured = self.output_capture.capture(
            command_result.stdout, command_result.stderr, f"{job.id}.{step.id}"
        )
        status = "succeeded" if command_result.exit_code == 0 else "failed"
        logger.debug(f"Step '{step.display_name}' exited {command_result.exit_code} in {duration_ms} ms")
        return StepResult(
            step_id=step.id,
            name=step.display_name,
            index=index,
            status=status,
            exit_code=command_result.exit_code,
            stdout=captured.stdout,
            stderr=captured.stderr,
            duration_ms=duration_ms,
            truncated=captured.truncated,
        )

    def expand_step(self, step: Step, variables: Any) -> Step:
        """Expand a step's command, parameters, environment and working directory."""
        return replace(
            step,
            run=self.expander.expand(step.run, variables),
            with_=self.expander.expand_dictionary(step.with_, variables),
            env=self.expander.expand_dictionary(step.env, variables),
            working_directory=self.expander.expand(step.working_directory, variables),
        )

    def _step_environment(self, job: Job, step: Step, variables: ScopedVariables) -> Dict[str, str]:
        env = {
            name: value
            for name, value in variables.all_variables().items()
            if name.startswith("LOCALCI_")
        }
        env["CI"] = "true"
        env.update(self.expander.expand_dictionary(job.env, variables))
        env.update(step.env)
        return env

    @staticmethod
    def _failed_need(job: Job, step: Step, results: List[StepResult]) -> Optional[str]:
        by_index = {result.index: result for result in results}
        for need in step.needs:
            target = find_step_index(job, need)
            if target is None:
                continue
            result = by_index.get(target + 1)
            if result is not None and result.status == "failed":
                return job.steps[target].display_name
            if result is not None and result.skip_reason == SkipReason.DEPENDENCY_FAILED:
                return job.steps[target].display_name
        return None

    def _error_result(self, step: Step, index: int, error: Dict[str, Any]) -> StepResult:
        return StepResult(
            step_id=step.id,
            name=step.display_name,
            index=index,
            status="failed",
            exit_code=2 if error["type"] in AUTHORING_ERROR_TYPES else 1,
            stderr=self.masker.mask_text(error["message"]),
            error=self.masker.mask_value(error),
        )

    def _cancelled_result(self, step: Step, index: int, error: OperationCancelledError, timed_out: bool) -> StepResult:
        captured = self.output_capture.capture(error.stdout, error.stderr, f"{step.id}.cancelled")
        if timed_out:
            exit_code = TIMEOUT_EXIT_CODE
            details = {
                "type": "timeout",
                "message": f"Step timed out after {getattr(error, 'timeout_sec', None)} seconds",
                "context": {"timeout_sec": getattr(error, "timeout_sec", None)},
            }
        else:
            exit_code = TIMEOUT_EXIT_CODE if error.error_type == "timeout" else 130
            details = {"type": error.error_type, "message": error.message, "context": {}}
        return StepResult(
            step_id=step.id,
            name=step.display_name,
            index=index,
            status="failed",
            exit_code=exit_code,
            stdout=captured.stdout,
            stderr=captured.stderr or error.message,
            truncated=captured.truncated,
            error=details,
        )


AUTHORING_ERROR_TYPES = {
    "required_variable",
    "circular_reference",
    "recursion_limit",
    "variable_error",
    "invalid_step",
    "unsupported_step",
}
