"""
Tests for stages.py - Stage Metadata and Report Blueprints
"""
import pytest

from app.models.research_job import ResearchJob
from app.services.errors import JobValidationError
from app.services.stages import (
    FOUNDATION,
    REPORT_TYPES,
    STAGE_DEPENDENCIES,
    STAGE_ORDER,
    STAGE_OUTPUT_FIELDS,
    STAGES,
    get_report_blueprint,
    get_stage,
    list_report_blueprints,
    order_stages,
    resolve_job_stages,
)


class TestStageMetadata:
    """Tests for the static stage table."""

    def test_foundation_runs_first_with_no_dependencies(self):
        assert STAGE_ORDER[0] == FOUNDATION
        assert STAGE_DEPENDENCIES[FOUNDATION] == ()

    def test_every_other_stage_depends_on_foundation(self):
        for stage in STAGES[1:]:
            assert FOUNDATION in stage.dependencies, stage.id

    def test_dependencies_are_declared_earlier(self):
        position = {stage: i for i, stage in enumerate(STAGE_ORDER)}
        for stage, deps in STAGE_DEPENDENCIES.items():
            for dep in deps:
                assert position[dep] < position[stage], f"{dep} must precede {stage}"

    def test_every_output_field_is_a_job_column(self):
        columns = set(ResearchJob.__table__.columns.keys())
        for stage, field in STAGE_OUTPUT_FIELDS.items():
            assert field in columns, f"{stage} writes to missing column {field}"

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            STAGE_DEPENDENCIES["foundation"] = ("exec_summary",)

    def test_known_dependencies(self):
        assert set(STAGE_DEPENDENCIES["exec_summary"]) == {FOUNDATION, "financial_snapshot", "company_overview"}
        assert set(STAGE_DEPENDENCIES["conversation_starters"]) == {FOUNDATION, "exec_summary"}
        assert set(STAGE_DEPENDENCIES["portfolio_maturity"]) == {FOUNDATION, "portfolio_snapshot"}

    def test_unknown_stage_raises(self):
        with pytest.raises(JobValidationError):
            get_stage("market_sizing")


class TestReportBlueprints:
    """Tests for per-report-type section lists."""

    def test_every_report_type_has_a_blueprint(self):
        assert [b.report_type for b in list_report_blueprints()] == list(REPORT_TYPES)

    def test_blueprint_sections_are_known_stages(self):
        for blueprint in list_report_blueprints():
            for section in blueprint.sections:
                assert section.id in STAGE_OUTPUT_FIELDS
                assert section.id != FOUNDATION

    def test_unknown_report_type_raises(self):
        with pytest.raises(JobValidationError, match="Unknown report type"):
            get_report_blueprint("BIOTECH")


class TestResolveJobStages:
    """Tests for picking a new job's stages."""

    def test_defaults_follow_blueprint_in_execution_order(self):
        stages = resolve_job_stages("GENERIC")

        assert stages == [
            "foundation",
            "financial_snapshot",
            "company_overview",
            "key_execs_and_board",
            "recent_news",
            "exec_summary",
            "conversation_starters",
        ]

    def test_optional_sections_only_when_selected(self):
        assert "appendix" not in resolve_job_stages("GENERIC")
        assert "appendix" in resolve_job_stages("GENERIC", ["appendix"])

    def test_selection_always_includes_foundation(self):
        assert resolve_job_stages("PE", ["deal_activity"]) == ["foundation", "deal_activity"]

    def test_selection_is_reordered_and_deduplicated(self):
        stages = resolve_job_stages("GENERIC", ["exec_summary", "financial_snapshot", "exec_summary"])
        assert stages == ["foundation", "financial_snapshot", "exec_summary"]

    def test_off_blueprint_section_raises(self):
        with pytest.raises(JobValidationError, match="deal_team"):
            resolve_job_stages("GENERIC", ["exec_summary", "deal_team"])

    def test_order_stages_drops_unknown_ids(self):
        assert order_stages(["trends", "foundation", "nope"]) == ["foundation", "trends"]
