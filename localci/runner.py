"""
Pipeline runner.

Orders the jobs of a pipeline with the DependencyScheduler and runs each one on
an execution backend. Job-level policies live here:

- a job outside the ``--job`` allow-list is skipped without acquiring anything
- a job whose dependency failed is skipped (unless its condition is always())
- a job whose condition is false is skipped
- with on_error="stop" no new job starts after a failure
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from .backends.base import ExecutionBackend
from .deps.scheduler import DependencyScheduler
from .exceptions import PipelineValidationError, ValidationError, VariableError
from .exec.cancellation import CancellationToken
from .exec.conditions import ConditionEvaluator
from .filtering.options import FilterOptions
from .filtering.step_filter import FilterPreview, StepFilter, StepFilterBuilder, build_preview
from .models import Job, JobResult, Pipeline, PipelineResult, SkipReason
from .variables.store import VariableContext, VariableStore


logger = logging.getLogger(__name__)

ConfirmCallback = Callable[[FilterPreview], bool]

ON_ERROR_MODES = ("stop", "continue")


class PipelineRunner:
    """
    Runs a pipeline job by job on one backend.

    Args:
        backend: Execution backend used for every job
        variable_store: Variables for expansion and conditions
        on_error: "stop" (default) starts no new job after a failure;
            "continue" keeps running jobs that do not depend on the failure
        max_parallel_jobs: Run independent jobs of one dependency level
            concurrently. Only honoured by backends that isolate workspaces.
        confirm: Called with the filter preview when confirmation is
            requested; returning False cancels the run before anything starts
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        variable_store: Optional[VariableStore] = None,
        on_error: str = "stop",
        max_parallel_jobs: int = 1,
        confirm: Optional[ConfirmCallback] = None,
    ):
        if on_error not in ON_ERROR_MODES:
            raise ValueError(f"on_error must be one of {ON_ERROR_MODES}, got '{on_error}'")
        if max_parallel_jobs < 1:
            raise ValueError("max_parallel_jobs must be at least 1")
        self.backend = backend
        self.variable_store = variable_store or VariableStore()
        self.on_error = on_error
        self.max_parallel_jobs = max_parallel_jobs
        self.confirm = confirm
        self.scheduler = DependencyScheduler()
        self.conditions = ConditionEvaluator(backend.expander)

    def validate(self, pipeline: Pipeline, filter_options: Optional[FilterOptions] = None) -> List[str]:
        """
        Check the pipeline and the filter options.

        Returns:
            Warnings worth showing to the user

        Raises:
            PipelineValidationError: With every problem found
        """
        errors = self.scheduler.validate(pipeline)
        warnings: List[str] = []
        if filter_options is not None and filter_options.has_filters:
            checked = StepFilterBuilder.validate(filter_options, pipeline)
            errors.extend(ValidationError(message=message, path="filters") for message in checked.errors)
            warnings.extend(checked.warnings)
        if errors:
            raise PipelineValidationError(errors)
        return warnings

    def preview(self, pipeline: Pipeline, filter_options: Optional[FilterOptions] = None) -> FilterPreview:
        """Show which steps a run would execute, without running anything."""
        self.validate(pipeline, filter_options)
        return build_preview(pipeline, StepFilterBuilder.build(filter_options, pipeline))

    def run(
        self,
        pipeline: Pipeline,
        workspace: Union[str, Path],
        filter_options: Optional[FilterOptions] = None,
        step_filter: Optional[StepFilter] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> PipelineResult:
        """
        Run a pipeline.

        Args:
            pipeline: The pipeline
            workspace: Source workspace on the host
            filter_options: Step selection from the user (built and validated here)
            step_filter: A prebuilt filter; takes precedence over filter_options
            cancellation: Run-wide cancellation token

        Returns:
            PipelineResult with one JobResult per job that was considered

        Raises:
            PipelineValidationError: If the pipeline or the filter options are invalid
        """
        start_time = time.time()
        cancellation = cancellation or CancellationToken()
        workspace = Path(workspace)

        for warning in self.validate(pipeline, filter_options if step_filter is None else None):
            logger.warning(warning)
        if step_filter is None:
            step_filter = StepFilterBuilder.build(filter_options, pipeline)

        options = filter_options or FilterOptions()
        if options.preview_only or options.confirm:
            preview = build_preview(pipeline, step_filter)
            if options.preview_only:
                logger.info(f"Preview only: {preview.selected_count} of {preview.total_count} steps selected")
                return PipelineResult(pipeline=pipeline.name, executed=False, preview=preview)
            if self.confirm is not None and not self.confirm(preview):
                logger.info("Run cancelled at confirmation")
                return PipelineResult(pipeline=pipeline.name, executed=False, preview=preview)

        levels = self.scheduler.levels(pipeline)
        parallel = self.max_parallel_jobs > 1 and self.backend.supports_parallel_jobs
        if self.max_parallel_jobs > 1 and not parallel:
            logger.info(f"The {self.backend.name} backend shares one workspace; running jobs sequentially")

        logger.info(f"Running pipeline '{pipeline.name}' ({len(pipeline.jobs)} jobs)")
        results: Dict[str, JobResult] = {}
        stopped = False
        for level in levels:
            if stopped or cancellation.is_cancelled:
                break
            jobs = [pipeline.jobs[job_id] for job_id in level]
            if parallel and len(jobs) > 1:
                self._run_level_parallel(jobs, workspace, step_filter, cancellation, results)
            else:
                for job in jobs:
                    if cancellation.is_cancelled:
                        break
                    results[job.id] = self._run_one(job, workspace, step_filter, cancellation, results)
                    if self.on_error == "stop" and not results[job.id].success:
                        stopped = True
                        break
            if self.on_error == "stop" and any(not results[job.id].success for job in jobs if job.id in results):
                stopped = True

        if stopped:
            not_started = [job_id for job_id in pipeline.jobs if job_id not in results]
            if not_started:
                logger.warning(f"Stopping after a failed job; not started: {', '.join(not_started)}")
        if cancellation.is_cancelled:
            logger.warning("Pipeline run cancelled")

        ordered = [results[job_id] for level in levels for job_id in level if job_id in results]
        result = PipelineResult(
            pipeline=pipeline.name,
            job_results=ordered,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        logger.info(f"Pipeline '{pipeline.name}' {'succeeded' if result.success else 'failed'} "
                    f"in {result.duration_ms} ms")
        return result

    def _run_level_parallel(
        self,
        jobs: List[Job],
        workspace: Path,
        step_filter: StepFilter,
        cancellation: CancellationToken,
        results: Dict[str, JobResult],
    ) -> None:
        # Dependencies live in earlier levels, so ``results`` is read-only here
        with ThreadPoolExecutor(max_workers=self.max_parallel_jobs) as pool:
            futures = {
                job.id: pool.submit(self._run_one, job, workspace, step_filter, cancellation, dict(results))
                for job in jobs
            }
            for job_id, future in futures.items():
                results[job_id] = future.result()

    def _run_one(
        self,
        job: Job,
        workspace: Path,
        step_filter: StepFilter,
        cancellation: CancellationToken,
        finished: Dict[str, JobResult],
    ) -> JobResult:
        if not step_filter.is_job_selected(job):
            logger.info(f"Skipping job '{job.display_name}': not selected")
            return _skipped(job, SkipReason.JOB_NOT_SELECTED, f"job '{job.display_name}' not selected")

        failed_deps = [
            dep for dep in job.depends_on
            if dep in finished and (
                not finished[dep].success or finished[dep].skip_reason == SkipReason.DEPENDENCY_FAILED
            )
        ]

        variables = self.variable_store.scoped(VariableContext(
            workspace=str(workspace),
            runner=job.runs_on,
            job_name=job.display_name,
        ))
        # A job without a condition behaves like success()
        condition = job.condition if job.condition is not None else "success()"
        try:
            should_run = self.conditions.evaluate(condition, variables, previous_failed=bool(failed_deps))
        except VariableError as e:
            logger.error(f"Job '{job.display_name}' has an invalid condition: {e.message}")
            return JobResult(
                job_id=job.id,
                name=job.display_name,
                success=False,
                error=self.backend.masker.mask_value(e.to_error()),
            )

        if not should_run:
            if failed_deps:
                reason = f"dependency did not succeed: {', '.join(failed_deps)}"
                logger.info(f"Skipping job '{job.display_name}': {reason}")
                return _skipped(job, SkipReason.DEPENDENCY_FAILED, reason)
            reason = f"condition not met: {job.condition}"
            logger.info(f"Skipping job '{job.display_name}': {reason}")
            return _skipped(job, SkipReason.CONDITIONAL_SKIP, reason)

        return self.backend.run_job(
            job,
            workspace,
            step_filter=step_filter,
            variable_store=self.variable_store,
            cancellation=cancellation,
        )


def _skipped(job: Job, skip_reason: SkipReason, reason: str) -> JobResult:
    return JobResult(
        job_id=job.id,
        name=job.display_name,
        success=True,
        skip_reason=skip_reason,
        reason=reason,
    )
