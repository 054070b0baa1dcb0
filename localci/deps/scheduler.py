"""Job dependency ordering and cycle detection."""

import logging
from typing import Dict, List, Optional, Set

from ..exceptions import CycleDetectedError, PipelineValidationError, ValidationError
from ..models import Job, Pipeline


logger = logging.getLogger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyScheduler:
    """
    Orders jobs by their ``depends_on`` edges.

    The graph is an adjacency list over job ids; jobs hold no references to
    each other. Pure: nothing here executes anything.
    """

    def build_graph(self, pipeline: Pipeline) -> Dict[str, List[str]]:
        """
        Build the job -> dependencies adjacency list.

        Raises:
            PipelineValidationError: If a dependency names an unknown job
        """
        errors = self._missing_dependency_errors(pipeline)
        if errors:
            raise PipelineValidationError(errors)
        return {job_id: list(job.depends_on) for job_id, job in pipeline.jobs.items()}

    def order(self, pipeline: Pipeline) -> Dict[str, int]:
        """
        Compute the execution rank of every job.

        A job with no dependencies has rank 0; otherwise its rank is one more
        than the highest rank among its dependencies. Executing jobs in
        ascending rank order always respects dependencies.

        Returns:
            Mapping of job id to rank

        Raises:
            CycleDetectedError: If the dependencies contain a cycle
            PipelineValidationError: If a dependency names an unknown job
        """
        graph = self.build_graph(pipeline)
        cycle = self._find_cycle(graph)
        if cycle:
            raise CycleDetectedError(cycle, self_reference=len(cycle) == 2 and cycle[0] == cycle[1])

        ranks: Dict[str, int] = {}
        for job_id in self._postorder(graph):
            deps = graph[job_id]
            ranks[job_id] = 1 + max(ranks[dep] for dep in deps) if deps else 0
        return {job_id: ranks[job_id] for job_id in pipeline.jobs}

    def execution_order(self, pipeline: Pipeline) -> List[str]:
        """Job ids sorted by rank, ties broken by declaration order."""
        ranks = self.order(pipeline)
        declared = list(pipeline.jobs)
        return sorted(declared, key=lambda job_id: (ranks[job_id], declared.index(job_id)))

    def levels(self, pipeline: Pipeline) -> List[List[str]]:
        """Group job ids by rank; jobs in one level do not depend on each other."""
        ranks = self.order(pipeline)
        grouped: List[List[str]] = [[] for _ in range(max(ranks.values()) + 1)] if ranks else []
        for job_id in pipeline.jobs:
            grouped[ranks[job_id]].append(job_id)
        return grouped

    def validate(self, pipeline: Pipeline) -> List[ValidationError]:
        """
        Collect every dependency problem in the pipeline without raising.

        Covers unknown job dependencies, cycles (including self-dependencies)
        and step ``needs`` that reference unknown or self steps.
        """
        errors = self._missing_dependency_errors(pipeline)

        known = set(pipeline.jobs)
        graph = {
            job_id: [dep for dep in job.depends_on if dep in known]
            for job_id, job in pipeline.jobs.items()
        }
        for job_id, deps in graph.items():
            if job_id in deps:
                path = f"jobs.{job_id}.depends_on"
                errors.append(ValidationError(message=f"Job '{job_id}' cannot depend on itself", path=path))
                errors.append(ValidationError(
                    message=f"Circular dependency detected: {job_id} -> {job_id}",
                    path=path,
                ))
        # Self-edges are reported above; search the rest for longer cycles
        graph = {job_id: [dep for dep in deps if dep != job_id] for job_id, deps in graph.items()}
        cycle = self._find_cycle(graph)
        if cycle:
            errors.append(ValidationError(
                message=f"Circular dependency detected: {' -> '.join(cycle)}",
                path=f"jobs.{cycle[0]}.depends_on",
            ))

        for job in pipeline.jobs.values():
            errors.extend(self.validate_step_needs(job))
        return errors

    def validate_step_needs(self, job: Job) -> List[ValidationError]:
        """
        Check step ``needs`` within one job.

        Reports needs on unknown steps, self-references and cycles among the
        explicit ``needs`` edges. Steps still run in declaration order; this
        is diagnostic only.
        """
        errors: List[ValidationError] = []
        graph: Dict[str, List[str]] = {step.id: [] for step in job.steps}
        for index, step in enumerate(job.steps):
            for need in step.needs:
                target = find_step_index(job, need)
                if target is None:
                    errors.append(ValidationError(
                        message=f"Step '{step.display_name}' in job '{job.id}' needs unknown step '{need}'",
                        path=f"jobs.{job.id}.steps[{index}].needs",
                    ))
                elif target == index:
                    errors.append(ValidationError(
                        message=f"Step '{step.display_name}' in job '{job.id}' cannot need itself",
                        path=f"jobs.{job.id}.steps[{index}].needs",
                    ))
                else:
                    graph.setdefault(step.id, []).append(job.steps[target].id)

        cycle = self._find_cycle(graph)
        if cycle:
            errors.append(ValidationError(
                message=f"Circular dependency detected in steps of job '{job.id}': {' -> '.join(cycle)}",
                path=f"jobs.{job.id}.steps",
            ))
        return errors

    def _missing_dependency_errors(self, pipeline: Pipeline) -> List[ValidationError]:
        errors = []
        for job_id, job in pipeline.jobs.items():
            for dep in job.depends_on:
                if dep not in pipeline.jobs:
                    errors.append(ValidationError(
                        message=f"Job '{job_id}' depends on unknown job '{dep}'. Known jobs: {sorted(pipeline.jobs)}",
                        path=f"jobs.{job_id}.depends_on",
                    ))
        return errors

    @staticmethod
    def _find_cycle(graph: Dict[str, List[str]]) -> Optional[List[str]]:
        """
        Iterative three-color DFS.

        Returns:
            The cycle as a closed chain (first id repeated at the end), or None
        """
        color = {node: _WHITE for node in graph}

        for root in graph:
            if color[root] != _WHITE:
                continue
            path: List[str] = [root]
            iterators = [iter(graph[root])]
            color[root] = _GRAY

            while iterators:
                child = next(iterators[-1], None)
                if child is None:
                    color[path.pop()] = _BLACK
                    iterators.pop()
                    continue
                if color[child] == _GRAY:
                    start = path.index(child)
                    return path[start:] + [child]
                if color[child] == _WHITE:
                    color[child] = _GRAY
                    path.append(child)
                    iterators.append(iter(graph[child]))
        return None

    @staticmethod
    def _postorder(graph: Dict[str, List[str]]) -> List[str]:
        """Dependencies-first order of an acyclic graph."""
        visited: Set[str] = set()
        order: List[str] = []
        for root in graph:
            if root in visited:
                continue
            visited.add(root)
            stack = [(root, iter(graph[root]))]
            while stack:
                node, children = stack[-1]
                child = next(children, None)
                if child is None:
                    order.append(node)
                    stack.pop()
                elif child not in visited:
                    visited.add(child)
                    stack.append((child, iter(graph[child])))
        return order


def find_step_index(job: Job, reference: str) -> Optional[int]:
    """Find a step by id, falling back to a case-insensitive name match."""
    for index, step in enumerate(job.steps):
        if step.id == reference:
            return index
    lowered = reference.lower()
    for index, step in enumerate(job.steps):
        if step.display_name.lower() == lowered or step.id.lower() == lowered:
            return index
    return None


class StepDependencyGraph:
    """
    Step-level dependencies within one job.

    Each step depends on the step before it plus any explicit ``needs``.
    Used to pull dependencies into a filtered selection.
    """

    def __init__(self, job: Job):
        self.job = job
        self._deps: Dict[int, Set[int]] = {}
        for index, step in enumerate(job.steps):
            deps: Set[int] = set()
            if index > 0:
                deps.add(index - 1)
            for need in step.needs:
                target = find_step_index(job, need)
                if target is not None and target != index:
                    deps.add(target)
            self._deps[index] = deps

    def direct_dependencies(self, index: int) -> Set[int]:
        return set(self._deps.get(index, set()))

    def transitive_dependencies(self, index: int) -> Set[int]:
        """All steps (0-based) that must run before ``index``."""
        seen: Set[int] = set()
        stack = list(self._deps.get(index, set()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._deps.get(current, set()))
        return seen

    def explicit_needs(self, index: int) -> Set[int]:
        step = self.job.steps[index]
        result = set()
        for need in step.needs:
            target = find_step_index(self.job, need)
            if target is not None and target != index:
                result.add(target)
        return result
