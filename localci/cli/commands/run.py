"""Run command implementation."""

import json
import logging
import os
import signal
import sys
import threading
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict

from localci.backends import AUTHORING_ERROR_TYPES, ContainerBackend, HostBackend, ImageMapper
from localci.backends.base import ExecutionBackend
from localci.exceptions import PipelineValidationError
from localci.exec.cancellation import CancellationToken
from localci.filtering.step_filter import FilterPreview
from localci.loader import LocalCIConfig, PipelineLoader
from localci.models import PipelineResult
from localci.runner import PipelineRunner
from localci.security.secrets import SecretMasker
from localci.variables.expansion import VariableExpander
from localci.variables.store import VariableContext, VariableSource, VariableStore

from .common import (
    configure_logging,
    filter_options_from_args,
    load_config,
    masked_logging,
    parse_assignments,
    resolve_paths,
)


logger = logging.getLogger(__name__)


def build_variable_store(
    args: Namespace,
    config: LocalCIConfig,
    workspace: Path,
    masker: SecretMasker,
    environ: Dict[str, str],
) -> VariableStore:
    """Fill the variable tiers: configuration, environment, then command line."""
    store = VariableStore(VariableContext(workspace=str(workspace)))
    store.load_from_mapping(config.variables, VariableSource.CONFIGURATION)
    store.load_from_environment(environ, masker)

    store.load_from_mapping(parse_assignments(args.var, '--var'), VariableSource.CLI_ARGUMENT)
    for name, value in parse_assignments(args.secret, '--secret').items():
        masker.register_secret(value)
        store.set_variable(name, value, VariableSource.CLI_ARGUMENT)

    # Variables that look like credentials are masked even if not declared secret
    for name, value in store.all_variables().items():
        if store.get_source(name) == VariableSource.BUILT_IN:
            continue
        if masker.is_potential_secret(name):
            masker.register_secret(value)
    return store


def build_backend(args: Namespace, config: LocalCIConfig, workspace: Path, masker: SecretMasker) -> ExecutionBackend:
    """Create the backend chosen by --backend or the configuration."""
    name = args.backend or config.runner.backend
    settings = config.runner
    common: Dict[str, Any] = dict(
        masker=masker,
        expander=VariableExpander(config.variables_max_depth),
        step_timeout_sec=args.step_timeout or settings.step_timeout_sec,
        logs_dir=workspace / '.localci' / 'logs',
    )
    if name == 'host':
        isolate = True if settings.isolate_workspace is None else settings.isolate_workspace
        return HostBackend(isolate_workspace=isolate, **common)
    return ContainerBackend(
        image_mapper=ImageMapper(settings.images),
        pull_policy=settings.pull_policy,
        isolate_workspace=bool(settings.isolate_workspace),
        **common,
    )


def prompt_confirmation(preview: FilterPreview) -> bool:
    """Show the selection and ask the user to go ahead."""
    for line in preview.format_lines():
        print(line)
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


def print_summary(result: PipelineResult) -> None:
    if result.preview is not None and not result.executed:
        for line in result.preview.format_lines():
            print(line)
        return

    for job in result.job_results:
        if job.skipped:
            print(f"- {job.name}: skipped ({job.reason})")
            continue
        print(f"{'✓' if job.success else '✗'} {job.name} ({job.duration_ms} ms)")
        for step in job.step_results:
            if step.status == "skipped":
                print(f"    - {step.index}. {step.name}: skipped ({step.reason})")
            else:
                mark = '✓' if step.status == "succeeded" else '✗'
                print(f"    {mark} {step.index}. {step.name}: exit {step.exit_code} ({step.duration_ms} ms)")
        if job.error:
            print(f"    error: {job.error['message']}")
    print(f"Pipeline '{result.pipeline}' {'succeeded' if result.success else 'failed'} "
          f"in {result.duration_ms} ms")


def exit_code_for(result: PipelineResult) -> int:
    """0 on success, 2 if a job failed on an authoring error, 1 otherwise."""
    if result.success:
        return 0
    for job in result.job_results:
        if job.error and job.error.get('type') in AUTHORING_ERROR_TYPES:
            return 2
    return 1


def run_pipeline(args: Namespace) -> int:
    """
    Run a pipeline.

    Exit codes: 0 success, 1 pipeline failure, 2 validation or authoring error.
    """
    configure_logging(args)
    masker = SecretMasker()

    with masked_logging(masker):
        try:
            workspace, pipeline_path = resolve_paths(args)
            config = load_config(args, workspace)

            logger.info(f"Loading pipeline: {pipeline_path}")
            pipeline = PipelineLoader().load(pipeline_path)

            store = build_variable_store(args, config, workspace, masker, dict(os.environ))
            options = filter_options_from_args(args, config)
            backend = build_backend(args, config, workspace, masker)
            runner = PipelineRunner(
                backend,
                variable_store=store,
                on_error=args.on_error,
                max_parallel_jobs=args.max_parallel or config.runner.max_parallel_jobs,
                confirm=prompt_confirmation,
            )

            cancellation = CancellationToken()
            result = _run_cancellable(runner, pipeline, workspace, options, cancellation)
        except PipelineValidationError as e:
            for error in e.errors:
                logger.error(f"Validation error: {error.message}")
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
        except Exception as e:
            logger.error(f"Unexpected error: {masker.mask_text(str(e))}", exc_info=True)
            return 1

        if args.json:
            print(json.dumps(masker.mask_value(result.to_dict()), indent=2))
        elif not args.quiet:
            print_summary(result)
        return exit_code_for(result)


def _run_cancellable(runner, pipeline, workspace, options, cancellation: CancellationToken) -> PipelineResult:
    """Run with Ctrl-C mapped to cancellation so cleanup still happens."""
    if threading.current_thread() is not threading.main_thread():
        return runner.run(pipeline, workspace, filter_options=options, cancellation=cancellation)

    def _on_interrupt(signum, frame):
        print("Cancelling... (cleanup in progress)", file=sys.stderr)
        cancellation.cancel()

    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        return runner.run(pipeline, workspace, filter_options=options, cancellation=cancellation)
    finally:
        signal.signal(signal.SIGINT, previous)
