"""Tests for step selection: precedence, ranges, dependencies, validation and preview."""

import pytest

from localci.filtering import (
    FilterOptions,
    IndexParser,
    StepFilter,
    StepFilterBuilder,
    StepRange,
    build_preview,
)
from localci.filtering.matching import find_similar, is_fuzzy_match, levenshtein
from localci.models import Job, Pipeline, SkipReason, Step


STEP_NAMES = ["Checkout", "Setup", "Build", "Test", "Deploy"]


def make_job(job_id="build", names=STEP_NAMES, needs=None):
    needs = needs or {}
    steps = [
        Step(id=name.lower(), name=name, run=f"echo {name}", needs=needs.get(name, []))
        for name in names
    ]
    return Job(id=job_id, name=job_id.title(), steps=steps)


def make_pipeline(*jobs):
    jobs = jobs or (make_job(),)
    return Pipeline(name="test", jobs={job.id: job for job in jobs})


def decisions(step_filter, job):
    return [step_filter.should_execute(step, i, job) for i, step in enumerate(job.steps, start=1)]


class TestPrecedence:

    def test_no_filter_runs_everything(self):
        job = make_job()
        results = decisions(StepFilter.allow_all(), job)
        assert all(r.should_execute for r in results)
        assert results[0].reason == "no filter applied"

    def test_skip_deploy(self):
        job = make_job()
        step_filter = StepFilterBuilder.build(FilterOptions(skip_steps=["Deploy"]), make_pipeline(job))
        results = decisions(step_filter, job)

        assert [r.should_execute for r in results] == [True, True, True, True, False]
        assert results[4].skip_reason == SkipReason.EXPLICITLY_SKIPPED
        assert results[4].reason == "explicitly skipped: Deploy"

    def test_skip_dominates_include(self):
        job = make_job()
        options = FilterOptions(step_names=["Build", "Test"], skip_steps=["Test"])
        results = decisions(StepFilterBuilder.build(options, make_pipeline(job)), job)

        assert results[2].should_execute
        assert not results[3].should_execute
        assert results[3].skip_reason == SkipReason.EXPLICITLY_SKIPPED
        assert results[0].skip_reason == SkipReason.FILTERED_OUT

    def test_names_are_case_insensitive(self):
        job = make_job()
        step_filter = StepFilter(step_names=["build"], skip_steps=["DEPLOY"])
        results = decisions(step_filter, job)
        assert results[2].should_execute
        assert results[4].skip_reason == SkipReason.EXPLICITLY_SKIPPED

    def test_skip_by_index_beats_include_by_index(self):
        job = make_job()
        step_filter = StepFilter(step_indices=[2, 3], skip_indices=[3])
        results = decisions(step_filter, job)
        assert [r.should_execute for r in results] == [False, True, False, False, False]
        assert results[2].reason == "explicitly skipped: index 3"

    def test_include_by_index_reason(self):
        job = make_job()
        result = StepFilter(step_indices=[1]).should_execute(job.steps[0], 1, job)
        assert result.reason == "matches include filter: index 1"

    def test_job_allow_list(self):
        build = make_job("build")
        docs = make_job("docs")
        step_filter = StepFilter(jobs=["build"])

        assert all(r.should_execute for r in decisions(step_filter, build))
        skipped = decisions(step_filter, docs)
        assert all(r.skip_reason == SkipReason.JOB_NOT_SELECTED for r in skipped)
        assert step_filter.is_job_selected(build)
        assert not step_filter.is_job_selected(docs)

    def test_skip_beats_job_allow_list(self):
        docs = make_job("docs")
        step_filter = StepFilter(jobs=["build"], skip_steps=["Setup"])
        assert step_filter.should_execute(docs.steps[1], 2, docs).skip_reason == SkipReason.EXPLICITLY_SKIPPED

    def test_filter_flags(self):
        assert not StepFilter.allow_all().has_filters
        assert StepFilter(skip_steps=["x"]).has_filters
        assert not StepFilter(skip_steps=["x"]).has_inclusion_filters
        assert StepFilter(step_ranges=[StepRange("1", "2")]).has_inclusion_filters


class TestRanges:

    def test_numeric_range(self):
        job = make_job()
        step_filter = StepFilterBuilder.build(FilterOptions(step_ranges=["2-4"]), make_pipeline(job))
        assert [r.should_execute for r in decisions(step_filter, job)] == [False, True, True, True, False]

    def test_named_range(self):
        job = make_job()
        assert StepRange.parse("Setup-Test").resolve(job) == {2, 3, 4}

    def test_named_range_with_dashed_names(self):
        job = make_job(names=["Check-out", "Set-up", "Build"])
        assert StepRange.parse("Check-out-Set-up").resolve(job) == {1, 2}

    def test_numeric_range_clamped_to_job(self):
        job = make_job()
        assert StepRange.parse("4-9").resolve(job) == {4, 5}

    def test_unknown_bounds_select_nothing(self):
        assert StepRange.parse("Foo-Bar").resolve(make_job()) == set()

    def test_malformed_range(self):
        with pytest.raises(ValueError):
            StepRange.parse("Build")
        with pytest.raises(ValueError):
            StepRange.parse("-Build")


class TestIndexParser:

    def test_parse_list_and_ranges(self):
        assert IndexParser.parse("1,3-5") == [1, 3, 4, 5]

    def test_duplicates_removed(self):
        assert IndexParser.parse("2,1-3") == [2, 1, 3]

    def test_empty(self):
        assert IndexParser.parse("") == []

    @pytest.mark.parametrize("spec", ["0", "a", "3-1", "1,,2"])
    def test_invalid(self, spec):
        with pytest.raises(ValueError):
            IndexParser.parse(spec)

    def test_max_index(self):
        with pytest.raises(ValueError):
            IndexParser.parse("1-6", max_index=5)


class TestIncludeDependencies:

    def test_includes_preceding_steps(self):
        job = make_job()
        options = FilterOptions(step_names=["Build"], include_dependencies=True)
        results = decisions(StepFilterBuilder.build(options, make_pipeline(job)), job)

        assert [r.should_execute for r in results] == [True, True, True, False, False]
        assert results[0].reason == "matches include filter: required by a selected step"

    def test_skip_still_wins_over_dependency(self):
        job = make_job()
        options = FilterOptions(step_names=["Build"], skip_steps=["Setup"], include_dependencies=True)
        results = decisions(StepFilterBuilder.build(options, make_pipeline(job)), job)
        assert [r.should_execute for r in results] == [True, False, True, False, False]

    def test_without_flag_nothing_added(self):
        job = make_job()
        options = FilterOptions(step_names=["Build"])
        results = decisions(StepFilterBuilder.build(options, make_pipeline(job)), job)
        assert [r.should_execute for r in results] == [False, False, True, False, False]

    def test_build_is_pure(self):
        pipeline = make_pipeline()
        options = FilterOptions(step_names=["Test"], include_dependencies=True)
        job = pipeline.jobs["build"]

        first = decisions(StepFilterBuilder.build(options, pipeline), job)
        second = decisions(StepFilterBuilder.build(options, pipeline), job)
        assert first == second
        assert StepFilterBuilder.build(None, pipeline).has_filters is False


class TestValidation:

    def test_unknown_step_suggests(self):
        result = StepFilterBuilder.validate(FilterOptions(step_names=["Biuld"]), make_pipeline())
        assert not result.is_valid
        assert "Step 'Biuld' not found" in result.errors[0]
        assert "Did you mean: Build" in result.errors[0]

    def test_unknown_job(self):
        result = StepFilterBuilder.validate(FilterOptions(jobs=["deploy"]), make_pipeline())
        assert any("Job 'deploy' not found" in e for e in result.errors)

    def test_unknown_skip_is_warning(self):
        result = StepFilterBuilder.validate(FilterOptions(skip_steps=["Lint"]), make_pipeline())
        assert result.is_valid
        assert any("Skipped step 'Lint' not found" in w for w in result.warnings)

    def test_index_out_of_range(self):
        result = StepFilterBuilder.validate(FilterOptions(step_indices=[7]), make_pipeline())
        assert "Step index 7 is out of range (1-5)" in result.errors

    def test_range_matching_nothing(self):
        result = StepFilterBuilder.validate(FilterOptions(step_ranges=["Foo-Bar"]), make_pipeline())
        assert any("does not match any steps" in e for e in result.errors)

    def test_nothing_selected(self):
        options = FilterOptions(step_names=["Build"], skip_steps=["Build"])
        result = StepFilterBuilder.validate(options, make_pipeline())
        assert "No steps match the filter" in result.errors

    def test_dependency_warning(self):
        job = make_job(needs={"Test": ["build"]})
        result = StepFilterBuilder.validate(FilterOptions(step_names=["Test"]), make_pipeline(job))
        assert result.is_valid
        assert any("needs 'Build', which will not run" in w for w in result.warnings)


class TestPreview:

    def test_counts_and_lines(self):
        pipeline = make_pipeline()
        preview = build_preview(pipeline, StepFilter(skip_steps=["Deploy"]))

        assert preview.selected_count == 4
        assert preview.total_count == 5
        lines = preview.format_lines()
        assert lines[0] == "Job: Build (4/5 steps selected)"
        assert "  - 5. Deploy (explicitly skipped: Deploy)" in lines
        assert lines[-1] == "4 of 5 steps will run"

    def test_to_dict(self):
        preview = build_preview(make_pipeline(), StepFilter(step_indices=[1]))
        data = preview.to_dict()
        assert data["selected"] == 1
        assert data["jobs"][0]["steps"][1]["skip_reason"] == "filtered_out"


class TestFuzzyMatching:

    def test_levenshtein(self):
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("Build", "build") == 0
        assert levenshtein("", "abc") == 3

    def test_is_fuzzy_match(self):
        assert is_fuzzy_match("Biuld", "Build")
        assert not is_fuzzy_match("Deploy", "Build")

    def test_find_similar_orders_by_distance(self):
        assert find_similar("Tset", ["Test", "Setup", "Deploy"])[0] == "Test"
        assert len(find_similar("x", ["a", "b", "c", "d", "e"])) == 3
