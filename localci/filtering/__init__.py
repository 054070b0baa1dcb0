"""Step selection filters."""

from ..models import SkipReason
from .options import FilterOptions, FilterResult, IndexParser, StepRange
from .step_filter import (
    StepFilter,
    StepFilterBuilder,
    FilterValidationResult,
    FilterPreview,
    build_preview,
    dependency_warnings,
)

__all__ = [
    'SkipReason',
    'FilterOptions',
    'FilterResult',
    'IndexParser',
    'StepRange',
    'StepFilter',
    'StepFilterBuilder',
    'FilterValidationResult',
    'FilterPreview',
    'build_preview',
    'dependency_warnings',
]
