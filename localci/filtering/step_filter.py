"""
Step selection.

A StepFilter decides, per step, whether it runs. Rules apply in a fixed order
and the first match wins:

1. Skip list (name or index)       -> EXPLICITLY_SKIPPED
2. Job allow-list                  -> JOB_NOT_SELECTED
3. Inclusion filters not matched   -> FILTERED_OUT
4. Otherwise                       -> execute

A skip therefore always beats an include for the same step. Conditional and
dependency-failure skips are decided by the runner, not here.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from ..deps.scheduler import StepDependencyGraph
from ..models import Job, Pipeline, SkipReason, Step
from .matching import find_similar
from .options import FilterOptions, FilterResult, StepRange


logger = logging.getLogger(__name__)


class StepFilter:
    """
    Immutable step selection built by ``StepFilterBuilder``.

    Indices passed to ``should_execute`` are 1-based positions within the job.
    """

    def __init__(
        self,
        step_names: Optional[List[str]] = None,
        step_indices: Optional[List[int]] = None,
        step_ranges: Optional[List[StepRange]] = None,
        skip_steps: Optional[List[str]] = None,
        skip_indices: Optional[List[int]] = None,
        jobs: Optional[List[str]] = None,
        dependency_includes: Optional[Dict[str, Set[int]]] = None,
    ):
        self._include_names: FrozenSet[str] = frozenset(n.lower() for n in step_names or [])
        self._include_indices: FrozenSet[int] = frozenset(step_indices or [])
        self._ranges: Tuple[StepRange, ...] = tuple(step_ranges or [])
        self._skip_names: FrozenSet[str] = frozenset(n.lower() for n in skip_steps or [])
        self._skip_indices: FrozenSet[int] = frozenset(skip_indices or [])
        self._jobs: FrozenSet[str] = frozenset(j.lower() for j in jobs or [])
        self._dependency_includes: Dict[str, FrozenSet[int]] = {
            job_id: frozenset(indices) for job_id, indices in (dependency_includes or {}).items()
        }

    @classmethod
    def allow_all(cls) -> "StepFilter":
        return cls()

    @property
    def has_inclusion_filters(self) -> bool:
        return bool(self._include_names or self._include_indices or self._ranges)

    @property
    def has_filters(self) -> bool:
        return bool(self.has_inclusion_filters or self._skip_names or self._skip_indices or self._jobs)

    def is_job_selected(self, job: Job) -> bool:
        if not self._jobs:
            return True
        return job.id.lower() in self._jobs or job.display_name.lower() in self._jobs

    def should_execute(self, step: Step, index: int, job: Job) -> FilterResult:
        """
        Decide whether a step runs.

        Args:
            step: The step
            index: 1-based position of the step in its job
            job: The job the step belongs to
        """
        if self._matches_name(step, self._skip_names):
            return FilterResult.skip(SkipReason.EXPLICITLY_SKIPPED, f"explicitly skipped: {step.display_name}")
        if index in self._skip_indices:
            return FilterResult.skip(SkipReason.EXPLICITLY_SKIPPED, f"explicitly skipped: index {index}")

        if not self.is_job_selected(job):
            return FilterResult.skip(SkipReason.JOB_NOT_SELECTED, f"job '{job.display_name}' not selected")

        if self.has_inclusion_filters:
            reason = self._inclusion_reason(step, index, job)
            if reason is None:
                return FilterResult.skip(SkipReason.FILTERED_OUT, "not matched by include filters")
            return FilterResult.execute(reason)

        return FilterResult.execute("no filter applied")

    def _inclusion_reason(self, step: Step, index: int, job: Job) -> Optional[str]:
        if self._matches_name(step, self._include_names):
            return f"matches include filter: name '{step.display_name}'"
        if index in self._include_indices:
            return f"matches include filter: index {index}"
        for step_range in self._ranges:
            if index in step_range.resolve(job):
                return f"matches include filter: range {step_range.start}-{step_range.end}"
        if index in self._dependency_includes.get(job.id, frozenset()):
            return "matches include filter: required by a selected step"
        return None

    @staticmethod
    def _matches_name(step: Step, names: FrozenSet[str]) -> bool:
        if not names:
            return False
        return step.display_name.lower() in names or step.id.lower() in names


@dataclass
class FilterValidationResult:
    """Problems found in filter options, with suggestions."""
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class StepPreview:
    index: int
    step_id: str
    name: str
    result: FilterResult


@dataclass
class JobPreview:
    job_id: str
    name: str
    steps: List[StepPreview] = field(default_factory=list)

    @property
    def selected_count(self) -> int:
        return sum(1 for step in self.steps if step.result.should_execute)


@dataclass
class FilterPreview:
    """What a run would execute under a filter, without executing it."""
    jobs: List[JobPreview] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def selected_count(self) -> int:
        return sum(job.selected_count for job in self.jobs)

    @property
    def total_count(self) -> int:
        return sum(len(job.steps) for job in self.jobs)

    def format_lines(self) -> List[str]:
        lines = []
        for job in self.jobs:
            lines.append(f"Job: {job.name} ({job.selected_count}/{len(job.steps)} steps selected)")
            for step in job.steps:
                marker = "+" if step.result.should_execute else "-"
                lines.append(f"  {marker} {step.index}. {step.name} ({step.result.reason})")
        for warning in self.warnings:
            lines.append(f"Warning: {warning}")
        lines.append(f"{self.selected_count} of {self.total_count} steps will run")
        return lines

    def to_dict(self) -> Dict:
        return {
            "selected": self.selected_count,
            "total": self.total_count,
            "warnings": list(self.warnings),
            "jobs": [
                {
                    "job_id": job.job_id,
                    "name": job.name,
                    "steps": [
                        {
                            "index": step.index,
                            "name": step.name,
                            "execute": step.result.should_execute,
                            "skip_reason": step.result.skip_reason.value,
                            "reason": step.result.reason,
                        }
                        for step in job.steps
                    ],
                }
                for job in self.jobs
            ],
        }


class StepFilterBuilder:
    """Builds StepFilters from options and checks options against a pipeline."""

    @staticmethod
    def build(options: Optional[FilterOptions], pipeline: Pipeline) -> StepFilter:
        """
        Build a filter. Depends only on its arguments.

        With ``include_dependencies`` the inclusion set is widened by every
        step the selected steps transitively depend on (the preceding steps
        and explicit ``needs``).

        Raises:
            ValueError: If a step range is malformed
        """
        if options is None:
            return StepFilter.allow_all()

        ranges = [StepRange.parse(spec) for spec in options.step_ranges]
        base = StepFilter(
            step_names=options.step_names,
            step_indices=options.step_indices,
            step_ranges=ranges,
            skip_steps=options.skip_steps,
            skip_indices=options.skip_indices,
            jobs=options.jobs,
        )

        if not (options.include_dependencies and base.has_inclusion_filters):
            return base

        dependency_includes: Dict[str, Set[int]] = {}
        for job in pipeline.job_list():
            selected = _included_indices(base, job)
            if not selected:
                continue
            graph = StepDependencyGraph(job)
            extra: Set[int] = set()
            for index in selected:
                extra |= {dep + 1 for dep in graph.transitive_dependencies(index - 1)}
            extra -= selected
            if extra:
                dependency_includes[job.id] = extra
                logger.debug(f"Including dependency steps {sorted(extra)} in job '{job.id}'")

        return StepFilter(
            step_names=options.step_names,
            step_indices=options.step_indices,
            step_ranges=ranges,
            skip_steps=options.skip_steps,
            skip_indices=options.skip_indices,
            jobs=options.jobs,
            dependency_includes=dependency_includes,
        )

    @staticmethod
    def validate(options: FilterOptions, pipeline: Pipeline) -> FilterValidationResult:
        """
        Check that the options refer to jobs and steps that exist.

        Unknown include names and jobs are errors; unknown skip names are
        warnings since skipping a missing step is harmless.
        """
        result = FilterValidationResult()
        jobs = pipeline.job_list()
        job_names = [job.id for job in jobs] + [job.display_name for job in jobs]
        step_names = [step.display_name for job in jobs for step in job.steps]
        step_ids = [step.id for job in jobs for step in job.steps]
        lowered_steps = {name.lower() for name in step_names + step_ids}
        max_steps = max((len(job.steps) for job in jobs), default=0)

        for job_name in options.jobs:
            if job_name.lower() not in {name.lower() for name in job_names}:
                result.errors.append(_with_suggestions(f"Job '{job_name}' not found", job_name, job_names))

        for name in options.step_names:
            if name.lower() not in lowered_steps:
                result.errors.append(_with_suggestions(f"Step '{name}' not found", name, step_names))

        for name in options.skip_steps:
            if name.lower() not in lowered_steps:
                result.warnings.append(
                    _with_suggestions(f"Skipped step '{name}' not found (possible typo)", name, step_names)
                )

        for index in list(options.step_indices) + list(options.skip_indices):
            if index < 1 or index > max_steps:
                result.errors.append(f"Step index {index} is out of range (1-{max_steps})")

        for spec in options.step_ranges:
            try:
                step_range = StepRange.parse(spec)
            except ValueError as e:
                result.errors.append(str(e))
                continue
            if not any(step_range.resolve(job) for job in jobs):
                result.errors.append(f"Step range '{spec}' does not match any steps")

        if result.is_valid and options.has_filters:
            try:
                step_filter = StepFilterBuilder.build(options, pipeline)
            except ValueError as e:
                result.errors.append(str(e))
                return result
            preview = build_preview(pipeline, step_filter)
            if preview.selected_count == 0:
                result.errors.append("No steps match the filter")
            result.warnings.extend(preview.warnings)

        return result


def _included_indices(step_filter: StepFilter, job: Job) -> Set[int]:
    return {
        index
        for index, step in enumerate(job.steps, start=1)
        if step_filter.should_execute(step, index, job).should_execute
    }


def _with_suggestions(message: str, target: str, candidates: List[str]) -> str:
    similar = find_similar(target, candidates)
    if similar:
        return f"{message}. Did you mean: {', '.join(similar)}?"
    return message


def dependency_warnings(pipeline: Pipeline, step_filter: StepFilter) -> List[str]:
    """Warn when a selected step needs a step that will not run."""
    warnings = []
    for job in pipeline.job_list():
        if not step_filter.is_job_selected(job):
            continue
        graph = StepDependencyGraph(job)
        selected = _included_indices(step_filter, job)
        for index in sorted(selected):
            for dep in sorted(graph.explicit_needs(index - 1)):
                if dep + 1 not in selected:
                    step = job.steps[index - 1]
                    needed = job.steps[dep]
                    warnings.append(
                        f"Step '{step.display_name}' in job '{job.display_name}' needs "
                        f"'{needed.display_name}', which will not run"
                    )
    return warnings


def build_preview(pipeline: Pipeline, step_filter: StepFilter) -> FilterPreview:
    """Evaluate a filter against every step without executing anything."""
    preview = FilterPreview()
    for job in pipeline.job_list():
        job_preview = JobPreview(job_id=job.id, name=job.display_name)
        for index, step in enumerate(job.steps, start=1):
            job_preview.steps.append(StepPreview(
                index=index,
                step_id=step.id,
                name=step.display_name,
                result=step_filter.should_execute(step, index, job),
            ))
        preview.jobs.append(job_preview)
    preview.warnings = dependency_warnings(pipeline, step_filter)
    return preview
