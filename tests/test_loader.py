"""Tests for pipeline and configuration loading."""

import textwrap

import pytest

from localci.exceptions import PipelineValidationError
from localci.loader import ConfigLoader, PipelineLoader, find_pipeline_file
from localci.models import StepKind


def write(path, content):
    path.write_text(textwrap.dedent(content))
    return path


def load_pipeline(tmp_path, content):
    return PipelineLoader().load(write(tmp_path / "localci.yml", content))


def errors_of(exc_info):
    return [error.message for error in exc_info.value.errors]


class TestPipelineLoader:

    def test_full_pipeline(self, tmp_path):
        pipeline = load_pipeline(tmp_path, """
            name: app
            jobs:
              build:
                runs-on: node:20
                env:
                  NODE_ENV: production
                  DEBUG: false
                timeout-minutes: 2
                steps:
                  - uses: actions/checkout@v4
                  - name: Install
                    kind: npm
                    with:
                      command: ci
                  - name: Compile
                    run: npm run build
                    timeout-sec: 30
                    continue-on-error: true
              deploy:
                needs: build
                if: ${BRANCH} == main
                steps:
                  - run: ./deploy.sh
                    shell: bash
                    working-directory: scripts
        """)

        assert pipeline.name == "app"
        assert list(pipeline.jobs) == ["build", "deploy"]

        build = pipeline.jobs["build"]
        assert build.runs_on == "node:20"
        assert build.env == {"NODE_ENV": "production", "DEBUG": "false"}
        assert build.timeout_sec == 120
        checkout, install, compile_step = build.steps
        assert checkout.kind == StepKind.CHECKOUT
        assert checkout.name == "actions/checkout"
        assert checkout.with_["_action"] == "actions/checkout@v4"
        assert install.kind == StepKind.PACKAGE_MANAGER
        assert install.with_ == {"command": "ci", "manager": "npm"}
        assert install.id == "install"
        assert compile_step.timeout_sec == 30
        assert compile_step.continue_on_error

        deploy = pipeline.jobs["deploy"]
        assert deploy.depends_on == ["build"]
        assert deploy.condition == "${BRANCH} == main"
        assert deploy.runs_on == "ubuntu-latest"
        assert deploy.steps[0].name == "Run ./deploy.sh"
        assert deploy.steps[0].shell == "bash"
        assert deploy.steps[0].working_directory == "scripts"

    def test_name_defaults_to_file_stem(self, tmp_path):
        pipeline = PipelineLoader().load(write(tmp_path / "release.yaml", """
            jobs:
              only:
                steps:
                  - run: echo hi
        """))
        assert pipeline.name == "release"

    def test_shell_kind_sets_shell(self, tmp_path):
        pipeline = load_pipeline(tmp_path, """
            jobs:
              build:
                steps:
                  - name: Script
                    kind: pwsh
                    run: Write-Host hi
        """)
        step = pipeline.jobs["build"].steps[0]
        assert step.kind == StepKind.SCRIPT
        assert step.shell == "pwsh"

    def test_on_key_is_not_a_boolean(self, tmp_path):
        pipeline = load_pipeline(tmp_path, """
            jobs:
              build:
                env:
                  FEATURE: on
                steps:
                  - run: echo ${FEATURE}
        """)
        assert pipeline.jobs["build"].env["FEATURE"] == "on"

    def test_duplicate_generated_ids_are_suffixed(self, tmp_path):
        pipeline = load_pipeline(tmp_path, """
            jobs:
              build:
                steps:
                  - name: Test
                    run: make test
                  - name: Test
                    run: make test-integration
        """)
        assert [s.id for s in pipeline.jobs["build"].steps] == ["test", "test-2"]

    def test_unknown_action_is_a_warning(self, tmp_path):
        loader = PipelineLoader()
        pipeline = loader.load(write(tmp_path / "localci.yml", """
            jobs:
              build:
                steps:
                  - uses: actions/setup-node@v4
        """))
        assert pipeline.jobs["build"].steps[0].kind == StepKind.UNKNOWN
        assert any("not supported" in w for w in loader.warnings)

    def test_collects_every_error(self, tmp_path):
        with pytest.raises(PipelineValidationError) as exc_info:
            load_pipeline(tmp_path, """
                name: broken
                triggers: push
                jobs:
                  build:
                    needs: a
                    depends-on: b
                    steps:
                      - name: Empty script
                      - id: fine
                        run: echo ${1BAD}
                        env:
                          URL: ${HOST
                      - id: fine
                        run: echo again
                      - run: echo x
                        retries: 3
                  bad job:
                    steps: []
            """)

        messages = errors_of(exc_info)
        assert "Unknown field 'triggers'" in messages
        assert any("use either 'needs' or 'depends-on'" in m for m in messages)
        assert any("script steps require 'run'" in m for m in messages)
        assert any("duplicate step id 'fine'" in m for m in messages)
        assert any("unknown field 'retries'" in m for m in messages)
        assert any(".env.URL" in m for m in messages)
        assert any("Job id 'bad job'" in m for m in messages)
        assert any("'steps' is required" in m for m in messages)
        assert exc_info.value.exit_code == 2

    def test_unknown_kind_lists_valid_kinds(self, tmp_path):
        with pytest.raises(PipelineValidationError) as exc_info:
            load_pipeline(tmp_path, """
                jobs:
                  build:
                    steps:
                      - kind: terraform
                        run: apply
            """)
        assert "Valid kinds" in errors_of(exc_info)[0]

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(PipelineValidationError) as exc_info:
            load_pipeline(tmp_path, "jobs: [unclosed\n")
        assert "Failed to load pipeline" in errors_of(exc_info)[0]

    def test_empty_document(self, tmp_path):
        with pytest.raises(PipelineValidationError):
            load_pipeline(tmp_path, "")

    def test_bad_timeout(self, tmp_path):
        with pytest.raises(PipelineValidationError) as exc_info:
            load_pipeline(tmp_path, """
                jobs:
                  build:
                    steps:
                      - run: make
                        timeout-sec: -5
            """)
        assert any("must be a positive number" in m for m in errors_of(exc_info))

    def test_find_pipeline_file(self, tmp_path):
        assert find_pipeline_file(tmp_path) is None
        (tmp_path / "localci.yaml").write_text("jobs: {}")
        assert find_pipeline_file(tmp_path) == tmp_path / "localci.yaml"


class TestConfigLoader:

    def test_full_config(self, tmp_path):
        path = write(tmp_path / ".localci.yml", """
            variables:
              REGISTRY: registry.local
              RETRIES: 3
            variables_max_depth: 5
            filters:
              presets:
                quick:
                  skip: [Deploy, Publish]
                  indices: "1-3"
                focus:
                  steps: Test
                  include_dependencies: true
                  skip_indices: [4]
            runner:
              backend: docker
              step_timeout_sec: 600
              max_parallel_jobs: 2
              pull_policy: never
              isolate_workspace: true
              images:
                ubuntu-latest: ubuntu:24.04
        """)
        assert ConfigLoader.find(tmp_path) == path
        config = ConfigLoader().load(path)

        assert config.variables == {"REGISTRY": "registry.local", "RETRIES": "3"}
        assert config.variables_max_depth == 5
        quick = config.preset("quick")
        assert quick.skip_steps == ["Deploy", "Publish"]
        assert quick.step_indices == [1, 2, 3]
        focus = config.preset("focus")
        assert focus.step_names == ["Test"]
        assert focus.include_dependencies
        assert focus.skip_indices == [4]
        assert focus.preset_name == "focus"
        assert config.runner.backend == "container"
        assert config.runner.step_timeout_sec == 600
        assert config.runner.max_parallel_jobs == 2
        assert config.runner.pull_policy == "never"
        assert config.runner.isolate_workspace is True
        assert config.runner.images == {"ubuntu-latest": "ubuntu:24.04"}
        assert config.path == path

    def test_defaults(self):
        config = ConfigLoader().parse({})
        assert config.runner.backend == "container"
        assert config.runner.isolate_workspace is None
        assert config.presets == {}

    def test_missing_preset_lists_available(self):
        config = ConfigLoader().parse({"filters": {"presets": {"quick": {"skip": ["Deploy"]}}}})
        with pytest.raises(KeyError) as exc_info:
            config.preset("full")
        assert "Available presets: quick" in exc_info.value.args[0]

    def test_invalid_values_collected(self):
        with pytest.raises(PipelineValidationError) as exc_info:
            ConfigLoader().parse({
                "variabels": {},
                "variables_max_depth": 0,
                "filters": {"presets": {"bad": {"indices": "3-1", "only": ["x"]}}},
                "runner": {"backend": "vm", "max_parallel_jobs": 0, "pull_policy": "sometimes"},
            })

        messages = errors_of(exc_info)
        assert "Unknown configuration field 'variabels'" in messages
        assert any("variables_max_depth" in m for m in messages)
        assert any("filters.presets.bad.indices" in m for m in messages)
        assert any("unknown field 'only'" in m for m in messages)
        assert any("runner.backend" in m for m in messages)
        assert any("runner.max_parallel_jobs" in m for m in messages)
        assert any("runner.pull_policy" in m for m in messages)
