"""Dependency ordering module."""

from .scheduler import DependencyScheduler, StepDependencyGraph, find_step_index

__all__ = [
    "DependencyScheduler",
    "StepDependencyGraph",
    "find_step_index",
]
