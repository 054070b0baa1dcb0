"""Pipeline and configuration loading with strict validation."""

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import yaml

from .exceptions import PipelineValidationError, ValidationError
from .filtering.options import FilterOptions, IndexParser
from .models import Job, Pipeline, Step, StepKind
from .variables.expansion import DEFAULT_MAX_RECURSION_DEPTH, VariableExpander


logger = logging.getLogger(__name__)

DEFAULT_PIPELINE_FILES = ("localci.yml", "localci.yaml")
DEFAULT_CONFIG_FILES = (".localci.yml", ".localci.yaml")


class PreservingLoader(yaml.SafeLoader):
    """YAML loader that keeps keys like 'on' and 'off' as strings instead of booleans."""
    pass


# Drop the bool resolvers for words starting with 'o'/'O' so 'on' and 'off' stay strings
PreservingLoader.yaml_implicit_resolvers = dict(PreservingLoader.yaml_implicit_resolvers)
for _first in ('o', 'O'):
    if _first in PreservingLoader.yaml_implicit_resolvers:
        PreservingLoader.yaml_implicit_resolvers[_first] = [
            (tag, regexp) for tag, regexp in PreservingLoader.yaml_implicit_resolvers[_first]
            if tag != 'tag:yaml.org,2002:bool'
        ]


def load_yaml(path: Path) -> Any:
    """Read a YAML document with the preserving loader."""
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.load(f, Loader=PreservingLoader)


class _CollectingLoader:
    """Shared error collection for the loaders below."""

    def __init__(self):
        self.errors: List[ValidationError] = []
        self.warnings: List[str] = []

    def _add_error(self, message: str, path: str = "", exit_code: int = 2):
        """Add validation error."""
        self.errors.append(ValidationError(message, path, exit_code))

    def _raise_validation_errors(self):
        """Raise PipelineValidationError with accumulated errors."""
        raise PipelineValidationError(self.errors)

    def _read(self, path: Path, what: str) -> Dict[str, Any]:
        try:
            document = load_yaml(path)
        except (OSError, yaml.YAMLError) as e:
            self._add_error(f"Failed to load {what}: {e}")
            self._raise_validation_errors()

        if document is None or not isinstance(document, dict):
            self._add_error(f"{what.capitalize()} must be a YAML object/dictionary")
            self._raise_validation_errors()
        return document

    def _string_map(self, value: Any, path: str) -> Dict[str, str]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            self._add_error(f"'{path}' must be a dictionary", path)
            return {}
        result = {}
        for key, item in value.items():
            if isinstance(item, (dict, list)):
                self._add_error(f"'{path}.{key}' must be a scalar value", f"{path}.{key}")
                continue
            result[str(key)] = _scalar_to_str(item)
        return result

    def _string_list(self, value: Any, path: str) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            self._add_error(f"'{path}' must be a string or a list of strings", path)
            return []
        return list(value)

    def _positive_number(self, value: Any, path: str) -> Optional[float]:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            self._add_error(f"'{path}' must be a positive number", path)
            return None
        return float(value)


class PipelineLoader(_CollectingLoader):
    """
    Loads pipeline YAML into the common model.

    Unknown fields are rejected and every problem is collected before
    raising, so one run of ``localci validate`` reports all of them.
    """

    PIPELINE_FIELDS = {'name', 'jobs'}
    JOB_FIELDS = {
        'name', 'runs-on', 'needs', 'depends-on', 'if', 'env',
        'timeout-sec', 'timeout-minutes', 'steps',
    }
    STEP_FIELDS = {
        'id', 'name', 'kind', 'uses', 'run', 'with', 'needs', 'continue-on-error',
        'env', 'if', 'shell', 'working-directory', 'timeout-sec', 'timeout-minutes',
    }

    # Shell and tool names accepted as kinds
    KIND_ALIASES = {
        'bash': StepKind.SCRIPT,
        'sh': StepKind.SCRIPT,
        'pwsh': StepKind.SCRIPT,
        'powershell': StepKind.SCRIPT,
        'python': StepKind.SCRIPT,
        'docker': StepKind.CONTAINER_COMMAND,
        'npm': StepKind.PACKAGE_MANAGER,
        'yarn': StepKind.PACKAGE_MANAGER,
        'pnpm': StepKind.PACKAGE_MANAGER,
        'pip': StepKind.PACKAGE_MANAGER,
        'dotnet': StepKind.PACKAGE_MANAGER,
        'maven': StepKind.PACKAGE_MANAGER,
        'gradle': StepKind.PACKAGE_MANAGER,
    }
    SHELL_KINDS = {'bash', 'sh', 'pwsh', 'powershell', 'python'}
    MANAGER_KINDS = {'npm', 'yarn', 'pnpm', 'pip', 'dotnet', 'maven', 'gradle'}

    ACTIONS = {
        'actions/checkout': StepKind.CHECKOUT,
        'actions/upload-artifact': StepKind.UPLOAD_ARTIFACT,
        'actions/download-artifact': StepKind.DOWNLOAD_ARTIFACT,
    }
    ACTION_PATTERN = re.compile(r'^(?P<action>[^/@\s]+/[^@\s]+)@(?P<version>\S+)$')

    ID_PATTERN = re.compile(r'^[A-Za-z_][A-Za-z0-9_.-]*$')

    def load(self, pipeline_path: Path) -> Pipeline:
        """
        Load and validate a pipeline file.

        Raises:
            PipelineValidationError: With every problem found
        """
        document = self._read(Path(pipeline_path), "pipeline")
        pipeline = self.parse(document, default_name=Path(pipeline_path).stem)
        for warning in self.warnings:
            logger.warning(warning)
        return pipeline

    def parse(self, document: Dict[str, Any], default_name: str = "pipeline") -> Pipeline:
        """Build a Pipeline from an already-parsed YAML mapping."""
        for key in document:
            if key not in self.PIPELINE_FIELDS:
                self._add_error(f"Unknown field '{key}'", str(key))

        name = document.get('name', default_name)
        if not isinstance(name, str) or not name.strip():
            self._add_error("'name' must be a non-empty string", "name")
            name = default_name

        raw_jobs = document.get('jobs')
        jobs: Dict[str, Job] = {}
        if not raw_jobs:
            self._add_error("'jobs' field is required and must not be empty", "jobs")
        elif not isinstance(raw_jobs, dict):
            self._add_error("'jobs' must be a dictionary of job id to job", "jobs")
        else:
            for job_id, raw_job in raw_jobs.items():
                job = self._parse_job(str(job_id), raw_job)
                if job is not None:
                    jobs[job.id] = job

        if self.errors:
            self._raise_validation_errors()
        return Pipeline(name=name, jobs=jobs)

    def _parse_job(self, job_id: str, raw: Any) -> Optional[Job]:
        path = f"jobs.{job_id}"
        if not self.ID_PATTERN.match(job_id):
            self._add_error(f"Job id '{job_id}' may only contain letters, digits, '_', '.' and '-'", path)
        if not isinstance(raw, dict):
            self._add_error(f"Job '{job_id}' must be a dictionary", path)
            return None

        for key in raw:
            if key not in self.JOB_FIELDS:
                self._add_error(f"Job '{job_id}': unknown field '{key}'", f"{path}.{key}")
        if 'needs' in raw and 'depends-on' in raw:
            self._add_error(f"Job '{job_id}': use either 'needs' or 'depends-on', not both", path)

        depends_on = self._string_list(raw.get('needs', raw.get('depends-on')), f"{path}.needs")
        runs_on = raw.get('runs-on', 'ubuntu-latest')
        if not isinstance(runs_on, str) or not runs_on.strip():
            self._add_error(f"Job '{job_id}': 'runs-on' must be a non-empty string", f"{path}.runs-on")
            runs_on = 'ubuntu-latest'

        env = self._string_map(raw.get('env'), f"{path}.env")
        self._check_variable_syntax(env, f"{path}.env")

        raw_steps = raw.get('steps')
        steps: List[Step] = []
        if not raw_steps:
            self._add_error(f"Job '{job_id}': 'steps' is required and must not be empty", f"{path}.steps")
        elif not isinstance(raw_steps, list):
            self._add_error(f"Job '{job_id}': 'steps' must be a list", f"{path}.steps")
        else:
            seen_ids = set()
            for index, raw_step in enumerate(raw_steps):
                step = self._parse_step(job_id, index, raw_step)
                if step is None:
                    continue
                if step.id in seen_ids and 'id' not in raw_step:
                    step = replace(step, id=f"{step.id}-{index + 1}")
                if step.id in seen_ids:
                    self._add_error(f"Job '{job_id}': duplicate step id '{step.id}'", f"{path}.steps[{index}].id")
                seen_ids.add(step.id)
                steps.append(step)

        return Job(
            id=job_id,
            name=_optional_str(raw.get('name')) or job_id,
            runs_on=runs_on.strip(),
            steps=steps,
            depends_on=depends_on,
            condition=self._condition(raw.get('if'), f"{path}.if"),
            env=env,
            timeout_sec=self._timeout(raw, path),
        )

    def _parse_step(self, job_id: str, index: int, raw: Any) -> Optional[Step]:
        path = f"jobs.{job_id}.steps[{index}]"
        if not isinstance(raw, dict):
            self._add_error(f"Job '{job_id}': step {index + 1} must be a dictionary", path)
            return None

        label = _optional_str(raw.get('name')) or _optional_str(raw.get('id')) or f"step {index + 1}"
        for key in raw:
            if key not in self.STEP_FIELDS:
                self._add_error(f"Step '{label}': unknown field '{key}'", f"{path}.{key}")

        run = raw.get('run')
        if run is not None and not isinstance(run, str):
            self._add_error(f"Step '{label}': 'run' must be a string", f"{path}.run")
            run = None
        if run is not None and 'uses' in raw:
            self._add_error(f"Step '{label}': 'run' and 'uses' are mutually exclusive", path)

        with_ = self._string_map(raw.get('with'), f"{path}.with")
        shell = _optional_str(raw.get('shell'))
        kind = self._step_kind(raw, label, path, with_)
        if kind == StepKind.SCRIPT and shell is None:
            raw_kind = str(raw.get('kind', '')).lower()
            if raw_kind in self.SHELL_KINDS:
                shell = raw_kind
        if kind == StepKind.SCRIPT and not run:
            self._add_error(f"Step '{label}': script steps require 'run'", f"{path}.run")

        step_id = raw.get('id')
        if step_id is None:
            step_id = _slug(_optional_str(raw.get('name')) or "") or f"step-{index + 1}"
        elif not isinstance(step_id, str) or not self.ID_PATTERN.match(step_id):
            self._add_error(f"Step '{label}': invalid id '{step_id}'", f"{path}.id")
            step_id = f"step-{index + 1}"

        env = self._string_map(raw.get('env'), f"{path}.env")
        working_directory = _optional_str(raw.get('working-directory'))
        self._check_variable_syntax(env, f"{path}.env")
        self._check_variable_syntax(with_, f"{path}.with")
        self._check_variable_syntax({'working-directory': working_directory}, path)
        for message in VariableExpander.find_syntax_errors(run):
            # Shell syntax such as ${#array[@]} is left alone at expansion time
            self.warnings.append(f"Step '{label}' run: {message}")

        continue_on_error = raw.get('continue-on-error', False)
        if not isinstance(continue_on_error, bool):
            self._add_error(f"Step '{label}': 'continue-on-error' must be a boolean", f"{path}.continue-on-error")
            continue_on_error = False

        return Step(
            id=step_id,
            name=_optional_str(raw.get('name')) or _default_step_name(run, raw.get('uses'), index),
            kind=kind,
            run=run,
            with_=with_,
            needs=self._string_list(raw.get('needs'), f"{path}.needs"),
            continue_on_error=continue_on_error,
            env=env,
            condition=self._condition(raw.get('if'), f"{path}.if"),
            shell=shell,
            working_directory=working_directory,
            timeout_sec=self._timeout(raw, path),
        )

    def _step_kind(self, raw: Dict[str, Any], label: str, path: str, with_: Dict[str, str]) -> StepKind:
        if 'kind' in raw:
            name = str(raw['kind']).strip().lower()
            if name in self.MANAGER_KINDS:
                with_.setdefault('manager', name)
            if name in self.KIND_ALIASES:
                return self.KIND_ALIASES[name]
            try:
                kind = StepKind(name)
            except ValueError:
                kind = StepKind.UNKNOWN
            if kind == StepKind.UNKNOWN:
                valid = sorted(k.value for k in StepKind if k != StepKind.UNKNOWN)
                self._add_error(f"Step '{label}': unknown kind '{raw['kind']}'. Valid kinds: {valid}", f"{path}.kind")
            return kind

        uses = raw.get('uses')
        if uses is not None:
            match = self.ACTION_PATTERN.match(str(uses).strip())
            if not match:
                self._add_error(f"Step '{label}': invalid action reference '{uses}'", f"{path}.uses")
                return StepKind.UNKNOWN
            kind = self.ACTIONS.get(match.group('action').lower(), StepKind.UNKNOWN)
            if kind == StepKind.UNKNOWN:
                self.warnings.append(f"Step '{label}': action '{uses}' is not supported and will fail if run")
            with_.setdefault('_action', str(uses))
            return kind

        return StepKind.SCRIPT

    def _condition(self, value: Any, path: str) -> Optional[Union[bool, str]]:
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        if not isinstance(value, str):
            self._add_error(f"'{path}' must be a string or boolean", path)
            return None
        return value

    def _timeout(self, raw: Dict[str, Any], path: str) -> Optional[float]:
        if 'timeout-sec' in raw and 'timeout-minutes' in raw:
            self._add_error(f"'{path}': use either 'timeout-sec' or 'timeout-minutes'", path)
        if 'timeout-minutes' in raw:
            minutes = self._positive_number(raw['timeout-minutes'], f"{path}.timeout-minutes")
            return minutes * 60 if minutes is not None else None
        return self._positive_number(raw.get('timeout-sec'), f"{path}.timeout-sec")

    def _check_variable_syntax(self, values: Dict[str, Optional[str]], path: str):
        for key, value in values.items():
            for message in VariableExpander.find_syntax_errors(value):
                self._add_error(f"{path}.{key}: {message}", f"{path}.{key}")


@dataclass
class RunnerSettings:
    """The ``runner`` section of the configuration file."""
    backend: str = "container"
    step_timeout_sec: Optional[float] = None
    max_parallel_jobs: int = 1
    images: Dict[str, str] = field(default_factory=dict)
    pull_policy: str = "if-not-present"
    isolate_workspace: Optional[bool] = None


@dataclass
class LocalCIConfig:
    """Settings from ``.localci.yml``."""
    variables: Dict[str, str] = field(default_factory=dict)
    presets: Dict[str, FilterOptions] = field(default_factory=dict)
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    variables_max_depth: int = DEFAULT_MAX_RECURSION_DEPTH
    path: Optional[Path] = None

    def preset(self, name: str) -> FilterOptions:
        """
        Look up a filter preset.

        Raises:
            KeyError: If no preset has that name
        """
        if name not in self.presets:
            available = ", ".join(sorted(self.presets)) or "none"
            raise KeyError(f"Filter preset '{name}' not found. Available presets: {available}")
        return self.presets[name]


class ConfigLoader(_CollectingLoader):
    """Loads and validates ``.localci.yml``."""

    TOP_LEVEL_FIELDS = {'variables', 'filters', 'runner', 'variables_max_depth'}
    RUNNER_FIELDS = {'backend', 'step_timeout_sec', 'max_parallel_jobs', 'images', 'pull_policy', 'isolate_workspace'}
    PRESET_FIELDS = {'steps', 'skip', 'indices', 'skip_indices', 'ranges', 'jobs', 'include_dependencies'}

    @staticmethod
    def find(directory: Path) -> Optional[Path]:
        """Return the configuration file in a directory, if there is one."""
        for name in DEFAULT_CONFIG_FILES:
            candidate = Path(directory) / name
            if candidate.is_file():
                return candidate
        return None

    def load(self, config_path: Path) -> LocalCIConfig:
        """
        Load and validate a configuration file.

        Raises:
            PipelineValidationError: With every problem found
        """
        document = self._read(Path(config_path), "configuration")
        config = self.parse(document)
        config.path = Path(config_path)
        return config

    def parse(self, document: Dict[str, Any]) -> LocalCIConfig:
        for key in document:
            if key not in self.TOP_LEVEL_FIELDS:
                self._add_error(f"Unknown configuration field '{key}'", str(key))

        config = LocalCIConfig(variables=self._string_map(document.get('variables'), 'variables'))

        depth = document.get('variables_max_depth', DEFAULT_MAX_RECURSION_DEPTH)
        if isinstance(depth, bool) or not isinstance(depth, int) or depth < 1:
            self._add_error("'variables_max_depth' must be a positive integer", 'variables_max_depth')
        else:
            config.variables_max_depth = depth

        filters = document.get('filters') or {}
        if not isinstance(filters, dict):
            self._add_error("'filters' must be a dictionary", 'filters')
        else:
            for key in filters:
                if key != 'presets':
                    self._add_error(f"Unknown field 'filters.{key}'", f"filters.{key}")
            presets = filters.get('presets') or {}
            if not isinstance(presets, dict):
                self._add_error("'filters.presets' must be a dictionary", 'filters.presets')
            else:
                for name, raw in presets.items():
                    preset = self._parse_preset(str(name), raw)
                    if preset is not None:
                        config.presets[str(name)] = preset

        config.runner = self._parse_runner(document.get('runner') or {})

        if self.errors:
            self._raise_validation_errors()
        return config

    def _parse_preset(self, name: str, raw: Any) -> Optional[FilterOptions]:
        path = f"filters.presets.{name}"
        if not isinstance(raw, dict):
            self._add_error(f"Preset '{name}' must be a dictionary", path)
            return None
        for key in raw:
            if key not in self.PRESET_FIELDS:
                self._add_error(f"Preset '{name}': unknown field '{key}'", f"{path}.{key}")

        include_dependencies = raw.get('include_dependencies', False)
        if not isinstance(include_dependencies, bool):
            self._add_error(f"Preset '{name}': 'include_dependencies' must be a boolean", path)
            include_dependencies = False

        return FilterOptions(
            step_names=self._string_list(raw.get('steps'), f"{path}.steps"),
            step_indices=self._indices(raw.get('indices'), f"{path}.indices"),
            step_ranges=self._string_list(raw.get('ranges'), f"{path}.ranges"),
            skip_steps=self._string_list(raw.get('skip'), f"{path}.skip"),
            skip_indices=self._indices(raw.get('skip_indices'), f"{path}.skip_indices"),
            jobs=self._string_list(raw.get('jobs'), f"{path}.jobs"),
            include_dependencies=include_dependencies,
            preset_name=name,
        )

    def _indices(self, value: Any, path: str) -> List[int]:
        if value is None:
            return []
        if isinstance(value, int) and not isinstance(value, bool):
            value = [value]
        if isinstance(value, list):
            if all(isinstance(item, int) and not isinstance(item, bool) and item >= 1 for item in value):
                return list(value)
            self._add_error(f"'{path}' must contain 1-based integers", path)
            return []
        try:
            return IndexParser.parse(str(value))
        except ValueError as e:
            self._add_error(f"'{path}': {e}", path)
            return []

    def _parse_runner(self, raw: Any) -> RunnerSettings:
        settings = RunnerSettings()
        if not isinstance(raw, dict):
            self._add_error("'runner' must be a dictionary", 'runner')
            return settings
        for key in raw:
            if key not in self.RUNNER_FIELDS:
                self._add_error(f"Unknown field 'runner.{key}'", f"runner.{key}")

        backend = raw.get('backend', settings.backend)
        if backend not in ('host', 'container', 'docker'):
            self._add_error("'runner.backend' must be 'host' or 'container'", 'runner.backend')
        else:
            settings.backend = 'container' if backend == 'docker' else backend

        settings.step_timeout_sec = self._positive_number(raw.get('step_timeout_sec'), 'runner.step_timeout_sec')

        max_parallel = raw.get('max_parallel_jobs', 1)
        if isinstance(max_parallel, bool) or not isinstance(max_parallel, int) or max_parallel < 1:
            self._add_error("'runner.max_parallel_jobs' must be a positive integer", 'runner.max_parallel_jobs')
        else:
            settings.max_parallel_jobs = max_parallel

        settings.images = self._string_map(raw.get('images'), 'runner.images')

        pull_policy = raw.get('pull_policy', settings.pull_policy)
        if pull_policy not in ('if-not-present', 'always', 'never'):
            self._add_error("'runner.pull_policy' must be 'if-not-present', 'always' or 'never'", 'runner.pull_policy')
        else:
            settings.pull_policy = pull_policy

        isolate = raw.get('isolate_workspace')
        if isolate is not None and not isinstance(isolate, bool):
            self._add_error("'runner.isolate_workspace' must be a boolean", 'runner.isolate_workspace')
        else:
            settings.isolate_workspace = isolate
        return settings


def find_pipeline_file(directory: Path) -> Optional[Path]:
    """Return the default pipeline file in a directory, if there is one."""
    for name in DEFAULT_PIPELINE_FILES:
        candidate = Path(directory) / name
        if candidate.is_file():
            return candidate
    return None


def _scalar_to_str(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _slug(name: str) -> str:
    slug = re.sub(r'[^A-Za-z0-9_.-]+', '-', name.strip().lower()).strip('-.')
    if slug and not slug[0].isalpha() and slug[0] != '_':
        slug = f"step-{slug}"
    return slug


def _default_step_name(run: Optional[str], uses: Any, index: int) -> str:
    if run:
        first_line = run.strip().splitlines()[0] if run.strip() else ""
        if first_line:
            return f"Run {first_line[:40]}"
    if uses:
        return str(uses).split('@', 1)[0]
    return f"Step {index + 1}"
