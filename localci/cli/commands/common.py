"""Helpers shared by the CLI commands."""

import logging
from argparse import Namespace
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from localci.filtering.options import FilterOptions, IndexParser
from localci.loader import ConfigLoader, LocalCIConfig, find_pipeline_file
from localci.security.secrets import SecretMasker, SecretsMaskingFilter


def configure_logging(args: Namespace) -> None:
    """Set up root logging from --log-level/--debug/--quiet/--verbose."""
    log_level = getattr(logging, args.log_level.upper())
    if args.debug:
        log_level = logging.DEBUG
    elif args.quiet:
        log_level = logging.ERROR
    elif args.verbose:
        log_level = logging.DEBUG

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger().setLevel(log_level)


@contextmanager
def masked_logging(masker: SecretMasker) -> Iterator[None]:
    """Mask secrets in every record that reaches the root handlers."""
    log_filter = SecretsMaskingFilter(masker)
    handlers = list(logging.getLogger().handlers)
    for handler in handlers:
        handler.addFilter(log_filter)
    try:
        yield
    finally:
        for handler in handlers:
            handler.removeFilter(log_filter)


def parse_assignments(items: Optional[List[str]], flag: str) -> Dict[str, str]:
    """Parse KEY=VALUE pairs from repeated command line options."""
    values = {}
    for item in items or []:
        if '=' not in item:
            raise ValueError(f"Invalid {flag} format: {item}. Expected KEY=VALUE")
        key, value = item.split('=', 1)
        if not key.strip():
            raise ValueError(f"Invalid {flag} format: {item}. KEY must not be empty")
        values[key.strip()] = value
    return values


def resolve_paths(args: Namespace) -> Tuple[Path, Path]:
    """
    Work out the workspace and the pipeline file.

    Raises:
        FileNotFoundError: If the pipeline file does not exist
    """
    workspace = Path(args.workspace).resolve() if args.workspace else Path.cwd().resolve()
    if args.pipeline:
        pipeline_path = Path(args.pipeline).resolve()
        if not pipeline_path.exists():
            raise FileNotFoundError(f"Pipeline file not found: {pipeline_path}")
    else:
        found = find_pipeline_file(workspace)
        if found is None:
            raise FileNotFoundError(f"No pipeline file given and no localci.yml found in {workspace}")
        pipeline_path = found
    return workspace, pipeline_path


def load_config(args: Namespace, workspace: Path) -> LocalCIConfig:
    """
    Load --config, else .localci.yml in the workspace, else defaults.

    Raises:
        FileNotFoundError: If --config names a missing file
        PipelineValidationError: If the configuration is invalid
    """
    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config_path = ConfigLoader.find(workspace)
        if config_path is None:
            return LocalCIConfig()
    logging.getLogger(__name__).info(f"Loading configuration: {config_path}")
    return ConfigLoader().load(config_path)


def filter_options_from_args(args: Namespace, config: LocalCIConfig) -> FilterOptions:
    """
    Combine the --preset (if any) with the filter flags.

    Raises:
        KeyError: If the preset does not exist
        ValueError: If an index spec is malformed
    """
    options = FilterOptions(
        step_names=list(args.step or []),
        step_indices=_indices(args.step_index),
        step_ranges=list(args.step_range or []),
        skip_steps=list(args.skip_step or []),
        skip_indices=_indices(args.skip_index),
        jobs=list(args.job or []),
        include_dependencies=args.include_deps,
        preview_only=getattr(args, 'preview', False),
        confirm=getattr(args, 'confirm', False),
    )
    if args.preset:
        options = config.preset(args.preset).merged_with(options)
    return options


def _indices(specs: Optional[List[str]]) -> List[int]:
    indices: List[int] = []
    for spec in specs or []:
        for index in IndexParser.parse(spec):
            if index not in indices:
                indices.append(index)
    return indices
