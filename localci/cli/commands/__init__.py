"""CLI command handlers."""

from .run import run_pipeline
from .validate import validate_pipeline

__all__ = ['run_pipeline', 'validate_pipeline']
