"""Tests for the tiered variable store and built-in variables."""

import threading

import pytest

from localci import __version__
from localci.security.secrets import SecretMasker
from localci.variables.store import (
    BuiltInVariables,
    VariableContext,
    VariableSource,
    VariableStore,
)


class TestPrecedence:
    """Resolution walks tiers from CLI down to built-in."""

    def test_higher_tier_wins(self):
        store = VariableStore()
        store.set_variable("NAME", "config", VariableSource.CONFIGURATION)
        store.set_variable("NAME", "env", VariableSource.ENVIRONMENT)
        store.set_variable("NAME", "cli", VariableSource.CLI_ARGUMENT)

        assert store.resolve("NAME") == "cli"
        assert store.get_source("NAME") == VariableSource.CLI_ARGUMENT

    def test_lower_tier_is_fallback_after_clear(self):
        store = VariableStore()
        store.set_variable("NAME", "config", VariableSource.CONFIGURATION)
        store.set_variable("NAME", "cli", VariableSource.CLI_ARGUMENT)

        store.clear_source(VariableSource.CLI_ARGUMENT)

        assert store.resolve("NAME") == "config"
        assert store.get_source("NAME") == VariableSource.CONFIGURATION

    def test_setting_lower_tier_does_not_override_higher(self):
        store = VariableStore()
        store.set_variable("NAME", "cli", VariableSource.CLI_ARGUMENT)
        store.set_variable("NAME", "config", VariableSource.CONFIGURATION)

        assert store.resolve("NAME") == "cli"

    def test_same_tier_replaces(self):
        store = VariableStore()
        store.set_variable("NAME", "first", VariableSource.CONFIGURATION)
        store.set_variable("NAME", "second", VariableSource.CONFIGURATION)

        assert store.resolve("NAME") == "second"

    def test_configuration_can_shadow_built_in(self):
        store = VariableStore()
        store.set_variable("HOME", "/custom/home", VariableSource.CONFIGURATION)

        assert store.resolve("HOME") == "/custom/home"

    def test_undefined_is_none(self):
        store = VariableStore()
        assert store.resolve("NOT_DEFINED_ANYWHERE") is None
        assert not store.contains("NOT_DEFINED_ANYWHERE")

    def test_built_in_tier_cannot_be_set(self):
        store = VariableStore()
        with pytest.raises(ValueError):
            store.set_variable("LOCALCI_JOB", "x", VariableSource.BUILT_IN)

    def test_empty_name_rejected(self):
        store = VariableStore()
        with pytest.raises(ValueError):
            store.set_variable("", "x", VariableSource.CLI_ARGUMENT)

    def test_all_variables_merges_tiers(self):
        store = VariableStore()
        store.load_from_mapping({"A": "1", "B": "2"}, VariableSource.CONFIGURATION)
        store.load_from_mapping({"B": "3"}, VariableSource.CLI_ARGUMENT)

        merged = store.all_variables()
        assert merged["A"] == "1"
        assert merged["B"] == "3"
        assert merged["LOCALCI_VERSION"] == __version__


class TestBuiltIns:
    """Built-in values come from the VariableContext."""

    def test_context_values(self):
        context = VariableContext(workspace="/work", runner="host", job_name="Build", step_name="Compile")
        values = BuiltInVariables.compute(context)

        assert values["LOCALCI_WORKSPACE"] == "/work"
        assert values["LOCALCI_RUNNER"] == "host"
        assert values["LOCALCI_JOB"] == "Build"
        assert values["LOCALCI_STEP"] == "Compile"
        assert values["PWD"] == "/work"
        assert values["TIMESTAMP_UNIX"].isdigit()
        assert values["TIMESTAMP"].endswith("Z")

    def test_update_context_recomputes(self):
        store = VariableStore(VariableContext(job_name="first"))
        store.update_context(VariableContext(job_name="second"))

        assert store.resolve("LOCALCI_JOB") == "second"

    def test_scoped_view_has_own_built_ins(self):
        store = VariableStore(VariableContext(job_name="global"))
        store.set_variable("SHARED", "value", VariableSource.CONFIGURATION)

        build = store.scoped(VariableContext(job_name="build"))
        test = store.scoped(VariableContext(job_name="test"))

        assert build.resolve("LOCALCI_JOB") == "build"
        assert test.resolve("LOCALCI_JOB") == "test"
        assert store.resolve("LOCALCI_JOB") == "global"
        assert build.resolve("SHARED") == "value"

    def test_scoped_view_lets_user_tiers_override_built_ins(self):
        store = VariableStore()
        store.set_variable("LOCALCI_RUNNER", "forced", VariableSource.CLI_ARGUMENT)

        scoped = store.scoped(VariableContext(runner="host"))

        assert scoped.resolve("LOCALCI_RUNNER") == "forced"
        assert scoped.all_variables()["LOCALCI_RUNNER"] == "forced"

    def test_for_step(self):
        store = VariableStore()
        job = store.scoped(VariableContext(job_name="Build"))
        step = job.for_step("Compile")

        assert step.resolve("LOCALCI_JOB") == "Build"
        assert step.resolve("LOCALCI_STEP") == "Compile"


class TestEnvironmentLoading:
    """Prefixed process environment variables."""

    def test_prefixes(self):
        store = VariableStore()
        masker = SecretMasker()
        loaded = store.load_from_environment({
            "LOCALCI_VAR_TARGET": "release",
            "LOCALCI_SECRET_TOKEN": "s3cr3t-value",
            "UNRELATED": "ignored",
            "LOCALCI_VAR_": "no name",
        }, masker)

        assert loaded == 2
        assert store.resolve("TARGET") == "release"
        assert store.resolve("TOKEN") == "s3cr3t-value"
        assert store.resolve("UNRELATED") is None
        assert store.get_source("TARGET") == VariableSource.ENVIRONMENT
        assert masker.mask_text("token is s3cr3t-value") == "token is ***"

    def test_cli_beats_environment(self):
        store = VariableStore()
        store.load_from_environment({"LOCALCI_VAR_TARGET": "env"})
        store.set_variable("TARGET", "cli", VariableSource.CLI_ARGUMENT)

        assert store.resolve("TARGET") == "cli"


class TestConcurrency:
    """Writes are lock-guarded."""

    def test_concurrent_writes_and_reads(self):
        store = VariableStore()
        errors = []

        def writer(prefix):
            try:
                for i in range(200):
                    store.set_variable(f"{prefix}_{i}", str(i), VariableSource.CONFIGURATION)
                    store.resolve(f"{prefix}_{i}")
                    store.all_variables()
            except Exception as e:  # pragma: no cover - reported below
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(f"T{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        for n in range(4):
            assert store.resolve(f"T{n}_199") == "199"
