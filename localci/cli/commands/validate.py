"""Validate command implementation."""

import json
import logging
from argparse import Namespace
from typing import List

from localci.backends import ImageMapper
from localci.deps.scheduler import DependencyScheduler
from localci.exceptions import ContainerCreateError, PipelineValidationError, ValidationError
from localci.exec.step_executors import create_default_registry
from localci.filtering.step_filter import StepFilterBuilder
from localci.loader import LocalCIConfig, PipelineLoader
from localci.models import Pipeline

from .common import configure_logging, filter_options_from_args, load_config, resolve_paths


logger = logging.getLogger(__name__)


def check_pipeline(pipeline: Pipeline, config: LocalCIConfig, backend: str) -> List[ValidationError]:
    """Everything that can be known to fail before a run starts."""
    errors = DependencyScheduler().validate(pipeline)

    registry = create_default_registry()
    for job in pipeline.job_list():
        for index, step in enumerate(job.steps):
            if not registry.exists(step.kind, backend):
                errors.append(ValidationError(
                    message=f"Step '{step.display_name}' in job '{job.id}' has unsupported kind '{step.kind.value}'",
                    path=f"jobs.{job.id}.steps[{index}].kind",
                ))

    if backend == 'container':
        mapper = ImageMapper(config.runner.images)
        for job in pipeline.job_list():
            try:
                mapper.map(job.runs_on)
            except ContainerCreateError as e:
                errors.append(ValidationError(message=f"Job '{job.id}': {e.message}", path=f"jobs.{job.id}.runs-on"))
    return errors


def validate_pipeline(args: Namespace) -> int:
    """
    Validate a pipeline and optional filters without executing anything.

    Exit codes: 0 valid, 1 file not found, 2 invalid.
    """
    configure_logging(args)

    try:
        workspace, pipeline_path = resolve_paths(args)
        config = load_config(args, workspace)
        pipeline = PipelineLoader().load(pipeline_path)
        backend = args.backend or config.runner.backend
        backend = 'container' if backend == 'docker' else backend

        errors = check_pipeline(pipeline, config, backend)
        warnings: List[str] = []
        options = filter_options_from_args(args, config)
        if options.has_filters:
            checked = StepFilterBuilder.validate(options, pipeline)
            errors.extend(ValidationError(message=message, path="filters") for message in checked.errors)
            warnings.extend(checked.warnings)
        if errors:
            raise PipelineValidationError(errors)
    except PipelineValidationError as e:
        for error in e.errors:
            logger.error(f"Validation error: {error.message}")
        if args.json:
            print(json.dumps({"valid": False, "errors": [
                {"message": error.message, "path": error.path} for error in e.errors
            ]}, indent=2))
        return e.exit_code
    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except KeyError as e:
        logger.error(e.args[0] if e.args else str(e))
        return 2
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        return 2

    for warning in warnings:
        logger.warning(warning)

    levels = DependencyScheduler().levels(pipeline)
    step_count = sum(len(job.steps) for job in pipeline.job_list())
    if args.json:
        print(json.dumps({
            "valid": True,
            "pipeline": pipeline.name,
            "jobs": len(pipeline.jobs),
            "steps": step_count,
            "levels": levels,
            "warnings": warnings,
        }, indent=2))
    elif not args.quiet:
        print(f"Pipeline '{pipeline.name}' is valid: {len(pipeline.jobs)} jobs, {step_count} steps")
        for number, level in enumerate(levels, start=1):
            print(f"  Stage {number}: {', '.join(level)}")
    return 0
