"""Main CLI entry point for localci."""

import argparse
import sys
from typing import Optional

from .commands import run_pipeline, validate_pipeline


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        'pipeline',
        type=str,
        nargs='?',
        help='Path to pipeline YAML file (default: localci.yml in the workspace)'
    )
    parser.add_argument(
        '--workspace',
        type=str,
        help='Source workspace (default: current directory)'
    )
    parser.add_argument(
        '--config',
        type=str,
        help='Path to configuration file (default: .localci.yml in the workspace)'
    )
    parser.add_argument(
        '--backend',
        choices=['host', 'container', 'docker'],
        help='Execution backend (default: from configuration, else container)'
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Print the result as JSON'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Enable debug logging'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Suppress non-error output'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='info',
        help='Set log level'
    )


def _add_filter_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--step',
        action='append',
        metavar='NAME',
        help='Run only this step (by name or id; can be specified multiple times)'
    )
    parser.add_argument(
        '--step-index',
        action='append',
        metavar='SPEC',
        help='Run only these 1-based step indices, e.g. "1,3-5"'
    )
    parser.add_argument(
        '--step-range',
        action='append',
        metavar='RANGE',
        help='Run an inclusive range of steps, e.g. "2-4" or "Build-Test"'
    )
    parser.add_argument(
        '--skip-step',
        action='append',
        metavar='NAME',
        help='Skip this step (by name or id; can be specified multiple times)'
    )
    parser.add_argument(
        '--skip-index',
        action='append',
        metavar='SPEC',
        help='Skip these 1-based step indices'
    )
    parser.add_argument(
        '--job',
        action='append',
        metavar='JOB',
        help='Run only this job (can be specified multiple times)'
    )
    parser.add_argument(
        '--include-deps',
        action='store_true',
        help='Also run the steps that selected steps depend on'
    )
    parser.add_argument(
        '--preset',
        type=str,
        help='Filter preset from the configuration file'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the localci CLI."""
    parser = argparse.ArgumentParser(
        prog='localci',
        description='Run CI/CD pipelines locally'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Run command
    run_parser = subparsers.add_parser('run', help='Run a pipeline')
    _add_common_arguments(run_parser)
    _add_filter_arguments(run_parser)
    run_parser.add_argument(
        '--var',
        action='append',
        metavar='KEY=VALUE',
        help='Set a variable (can be specified multiple times)'
    )
    run_parser.add_argument(
        '--secret',
        action='append',
        metavar='KEY=VALUE',
        help='Set a variable whose value is masked in all output'
    )
    run_parser.add_argument(
        '--preview',
        action='store_true',
        help='Show which steps would run, without running them'
    )
    run_parser.add_argument(
        '--confirm',
        action='store_true',
        help='Show the step selection and ask before running'
    )
    run_parser.add_argument(
        '--on-error',
        choices=['stop', 'continue'],
        default='stop',
        help='Error handling strategy for jobs'
    )
    run_parser.add_argument(
        '--step-timeout',
        type=float,
        metavar='SECONDS',
        help='Default timeout for each step'
    )
    run_parser.add_argument(
        '--max-parallel',
        type=int,
        metavar='N',
        help='Run up to N independent jobs at once (backends with isolated workspaces)'
    )

    # Validate command
    validate_parser = subparsers.add_parser('validate', help='Validate a pipeline without running it')
    _add_common_arguments(validate_parser)
    _add_filter_arguments(validate_parser)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'run':
        return run_pipeline(parsed_args)
    elif parsed_args.command == 'validate':
        return validate_pipeline(parsed_args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
