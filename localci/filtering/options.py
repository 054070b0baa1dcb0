"""Filter options, results and range parsing."""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Set

from ..models import Job, SkipReason


@dataclass
class FilterOptions:
    """User-supplied step selection."""
    step_names: List[str] = field(default_factory=list)
    step_indices: List[int] = field(default_factory=list)
    step_ranges: List[str] = field(default_factory=list)
    skip_steps: List[str] = field(default_factory=list)
    skip_indices: List[int] = field(default_factory=list)
    jobs: List[str] = field(default_factory=list)
    include_dependencies: bool = False
    preview_only: bool = False
    confirm: bool = False
    preset_name: Optional[str] = None

    @property
    def has_inclusion_filters(self) -> bool:
        return bool(self.step_names or self.step_indices or self.step_ranges)

    @property
    def has_filters(self) -> bool:
        return bool(
            self.has_inclusion_filters
            or self.skip_steps
            or self.skip_indices
            or self.jobs
        )

    def merged_with(self, other: "FilterOptions") -> "FilterOptions":
        """Combine two option sets (e.g. a preset and CLI flags)."""
        return FilterOptions(
            step_names=self.step_names + other.step_names,
            step_indices=self.step_indices + other.step_indices,
            step_ranges=self.step_ranges + other.step_ranges,
            skip_steps=self.skip_steps + other.skip_steps,
            skip_indices=self.skip_indices + other.skip_indices,
            jobs=self.jobs + other.jobs,
            include_dependencies=self.include_dependencies or other.include_dependencies,
            preview_only=self.preview_only or other.preview_only,
            confirm=self.confirm or other.confirm,
            preset_name=other.preset_name or self.preset_name,
        )


@dataclass(frozen=True)
class FilterResult:
    """Decision for one step."""
    should_execute: bool
    skip_reason: SkipReason = SkipReason.NONE
    reason: str = ""

    @classmethod
    def execute(cls, reason: str) -> "FilterResult":
        return cls(True, SkipReason.NONE, reason)

    @classmethod
    def skip(cls, skip_reason: SkipReason, reason: str) -> "FilterResult":
        return cls(False, skip_reason, reason)


class IndexParser:
    """Parses index specs such as "1,3,5-7" into 1-based indices."""

    _TOKEN = re.compile(r'^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$')

    @classmethod
    def parse(cls, spec: str, max_index: Optional[int] = None) -> List[int]:
        """
        Parse an index spec.

        Raises:
            ValueError: On malformed tokens, zero, reversed ranges or
                indices above max_index
        """
        indices: List[int] = []
        if not spec or not spec.strip():
            return indices
        for token in spec.split(','):
            match = cls._TOKEN.match(token)
            if not match:
                raise ValueError(f"Invalid step index '{token.strip()}': expected N or N-M")
            start = int(match.group(1))
            end = int(match.group(2)) if match.group(2) else start
            if start < 1:
                raise ValueError(f"Step indices are 1-based, got {start}")
            if end < start:
                raise ValueError(f"Invalid range {start}-{end}: start is greater than end")
            if max_index is not None and end > max_index:
                raise ValueError(f"Step index {end} is out of range (1-{max_index})")
            for index in range(start, end + 1):
                if index not in indices:
                    indices.append(index)
        return indices


@dataclass(frozen=True)
class StepRange:
    """
    Inclusive range of steps, numeric ("2-4") or named ("Build-Test").

    Named bounds match step names case-insensitively. A range whose bounds
    are missing from a job simply selects nothing in that job.
    """
    start: str
    end: str

    @classmethod
    def parse(cls, spec: str) -> "StepRange":
        text = spec.strip()
        numeric = re.match(r'^(\d+)\s*-\s*(\d+)$', text)
        if numeric:
            return cls(numeric.group(1), numeric.group(2))
        if '-' not in text:
            raise ValueError(f"Invalid step range '{spec}': expected START-END")
        # Names may contain dashes; resolve() retries the other split points
        start, end = text.rsplit('-', 1)
        if not start.strip() or not end.strip():
            raise ValueError(f"Invalid step range '{spec}': expected START-END")
        return cls(start.strip(), end.strip())

    @property
    def is_numeric(self) -> bool:
        return self.start.isdigit() and self.end.isdigit()

    def resolve(self, job: Job) -> Set[int]:
        """Return the 1-based indices this range covers in a job."""
        if self.is_numeric:
            start, end = int(self.start), int(self.end)
            if start < 1 or end < start:
                return set()
            return set(range(start, min(end, len(job.steps)) + 1))

        start_index = self._find(job, self.start)
        end_index = self._find(job, self.end)
        if start_index is None or end_index is None:
            return self._resolve_dashed_names(job)
        if end_index < start_index:
            start_index, end_index = end_index, start_index
        return set(range(start_index, end_index + 1))

    def _resolve_dashed_names(self, job: Job) -> Set[int]:
        text = f"{self.start}-{self.end}"
        for position in [i for i, c in enumerate(text) if c == '-']:
            start_index = self._find(job, text[:position].strip())
            end_index = self._find(job, text[position + 1:].strip())
            if start_index is not None and end_index is not None:
                low, high = sorted((start_index, end_index))
                return set(range(low, high + 1))
        return set()

    @staticmethod
    def _find(job: Job, name: str) -> Optional[int]:
        lowered = name.lower()
        for index, step in enumerate(job.steps, start=1):
            if step.display_name.lower() == lowered or step.id.lower() == lowered:
                return index
        return None
