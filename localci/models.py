"""Common pipeline model and execution results.

The pipeline model is provider-neutral: provider parsers (or the YAML loader
in ``localci.loader``) produce these objects and the engine never mutates them.
"""

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union


StepStatus = Literal["succeeded", "failed", "skipped"]


class StepKind(str, Enum):
    """Closed set of step kinds the executor registry dispatches on."""
    CHECKOUT = "checkout"
    SCRIPT = "script"
    PACKAGE_MANAGER = "package-manager"
    CONTAINER_COMMAND = "container"
    UPLOAD_ARTIFACT = "upload-artifact"
    DOWNLOAD_ARTIFACT = "download-artifact"
    UNKNOWN = "unknown"


class SkipReason(str, Enum):
    """Why a step or job did not run."""
    NONE = "none"
    FILTERED_OUT = "filtered_out"
    EXPLICITLY_SKIPPED = "explicitly_skipped"
    JOB_NOT_SELECTED = "job_not_selected"
    CONDITIONAL_SKIP = "conditional_skip"
    DEPENDENCY_FAILED = "dependency_failed"


@dataclass(frozen=True)
class Step:
    """A single unit of work inside a job."""
    id: str
    name: str
    kind: StepKind = StepKind.SCRIPT
    run: Optional[str] = None
    with_: Dict[str, str] = field(default_factory=dict)
    needs: List[str] = field(default_factory=list)
    continue_on_error: bool = False
    env: Dict[str, str] = field(default_factory=dict)
    condition: Optional[Union[bool, str]] = None
    shell: Optional[str] = None
    working_directory: Optional[str] = None
    timeout_sec: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Job:
    """A group of steps that runs in one execution context."""
    id: str
    name: str
    runs_on: str = "ubuntu-latest"
    steps: List[Step] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    condition: Optional[Union[bool, str]] = None
    env: Dict[str, str] = field(default_factory=dict)
    timeout_sec: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id


@dataclass(frozen=True)
class Pipeline:
    """A named set of jobs keyed by id, in declaration order."""
    name: str
    jobs: Dict[str, Job] = field(default_factory=dict)

    def job_list(self) -> List[Job]:
        return list(self.jobs.values())


@dataclass
class StepResult:
    """Outcome of a single step."""
    step_id: str
    name: str
    index: int
    status: StepStatus
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    truncated: bool = False
    skip_reason: SkipReason = SkipReason.NONE
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status != "failed"

    @classmethod
    def skipped(cls, step: Step, index: int, skip_reason: SkipReason, reason: str) -> "StepResult":
        return cls(
            step_id=step.id,
            name=step.display_name,
            index=index,
            status="skipped",
            skip_reason=skip_reason,
            reason=reason,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict, omitting None values."""
        result: Dict[str, Any] = {}
        for k, v in asdict(self).items():
            if v is not None:
                result[k] = v
        result["skip_reason"] = self.skip_reason.value
        result["success"] = self.success
        return result


@dataclass
class JobResult:
    """Outcome of a job and its ordered step results."""
    job_id: str
    name: str
    success: bool
    step_results: List[StepResult] = field(default_factory=list)
    duration_ms: int = 0
    skip_reason: SkipReason = SkipReason.NONE
    reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None

    @property
    def skipped(self) -> bool:
        return self.skip_reason != SkipReason.NONE

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "job_id": self.job_id,
            "name": self.name,
            "success": self.success,
            "duration_ms": self.duration_ms,
            "skip_reason": self.skip_reason.value,
            "steps": [step.to_dict() for step in self.step_results],
        }
        if self.reason:
            result["reason"] = self.reason
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class PipelineResult:
    """Outcome of a whole pipeline run."""
    pipeline: str
    job_results: List[JobResult] = field(default_factory=list)
    duration_ms: int = 0
    executed: bool = True
    preview: Optional[Any] = None

    @property
    def success(self) -> bool:
        return all(job.success for job in self.job_results)

    def get(self, job_id: str) -> Optional[JobResult]:
        for job in self.job_results:
            if job.job_id == job_id:
                return job
        return None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "pipeline": self.pipeline,
            "success": self.success,
            "executed": self.executed,
            "duration_ms": self.duration_ms,
            "jobs": [job.to_dict() for job in self.job_results],
        }
        if self.preview is not None:
            result["preview"] = self.preview.to_dict()
        return result
