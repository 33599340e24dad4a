"""
Static stage metadata and report blueprints.

``STAGES`` is declared in execution order: every stage appears after all of its
dependencies, and the orchestrator walks a job's sub-jobs in this order. The
blueprints describe, per report type, which sections a user can select and
the order they are displayed in.
"""
from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

from .dependencies import validate_graph
from .errors import JobValidationError

FOUNDATION = "foundation"
REPORT_TYPES = ("GENERIC", "INDUSTRIALS", "PE", "FS", "INSURANCE")
BLUEPRINT_VERSION = "2025-01"


@dataclass(frozen=True)
class StageDefinition:
    id: str
    title: str
    output_field: str
    dependencies: tuple[str, ...]
    focus: str


@dataclass(frozen=True)
class BlueprintSection:
    id: str
    title: str
    default_selected: bool = True


@dataclass(frozen=True)
class ReportBlueprint:
    version: str
    report_type: str
    title: str
    purpose: str
    sections: tuple[BlueprintSection, ...]


def _stage(id: str, title: str, field: str, deps: Iterable[str], focus: str) -> StageDefinition:
    return StageDefinition(id=id, title=title, output_field=field, dependencies=tuple(deps), focus=focus)


_F = (FOUNDATION,)

STAGES: tuple[StageDefinition, ...] = (
    _stage(FOUNDATION, "Foundation", "foundation", (),
           "Company basics, geography specifics and a source catalog shared by every other section."),
    _stage("financial_snapshot", "Financial Snapshot", "financial_snapshot", _F,
           "Headline financial metrics, margins and trends with period labels."),
    _stage("company_overview", "Company Overview", "company_overview", _F,
           "Business model, products and services, footprint and history."),
    _stage("key_execs_and_board", "Key Executives and Board", "key_execs_and_board", _F,
           "Current leadership team and board members with tenure and background."),
    _stage("segment_analysis", "Segment Analysis", "segment_analysis", _F,
           "Performance and positioning by business segment."),
    _stage("investment_strategy", "Investment Strategy", "investment_strategy", _F,
           "Firm strategy, target sectors, check sizes and value-creation themes."),
    _stage("portfolio_snapshot", "Portfolio Snapshot", "portfolio_snapshot", _F,
           "Current portfolio composition by sector, geography and vintage."),
    _stage("deal_activity", "Deal Activity", "deal_activity", _F,
           "Recent acquisitions, exits and add-ons with dates and values."),
    _stage("deal_team", "Deal Team and Key Stakeholders", "deal_team", _F,
           "Deal partners, operating partners and other key stakeholders."),
    _stage("portfolio_maturity", "Portfolio Maturity", "portfolio_maturity", (FOUNDATION, "portfolio_snapshot"),
           "Holding periods and likely exit windows across the portfolio."),
    _stage("leadership_and_governance", "Leadership and Governance", "leadership_and_governance", _F,
           "Governance structure, committees and leadership changes."),
    _stage("strategic_priorities", "Strategic Priorities", "strategic_priorities", _F,
           "Stated priorities from earnings materials and leadership commentary."),
    _stage("operating_capabilities", "Operating Capabilities", "operating_capabilities", _F,
           "Operating model, technology platforms and efficiency programmes."),
    _stage("distribution_analysis", "Distribution Analysis", "distribution_analysis", _F,
           "Distribution channel mix: agents, brokers, direct and partnerships."),
    _stage("trends", "Industry Trends", "trends", _F,
           "Market and industry trends relevant to the company in its geography."),
    _stage("peer_benchmarking", "Peer Benchmarking", "peer_benchmarking", (FOUNDATION, "financial_snapshot"),
           "Comparison against the closest peers on key metrics."),
    _stage("sku_opportunities", "SKU Opportunities", "sku_opportunities", (FOUNDATION, "company_overview", "trends"),
           "Product and service opportunities grounded in the company's needs."),
    _stage("recent_news", "Recent News", "recent_news", _F,
           "Material news from the last twelve months with dates and sources."),
    _stage("exec_summary", "Executive Summary", "exec_summary",
           (FOUNDATION, "financial_snapshot", "company_overview"),
           "High-signal synthesis of the report for a leadership meeting."),
    _stage("conversation_starters", "Conversation Starters", "conversation_starters", (FOUNDATION, "exec_summary"),
           "Hypothesis-driven questions to open a conversation with leadership."),
    _stage("appendix", "Appendix", "appendix", _F,
           "Source list and methodology notes."),
)

STAGES_BY_ID: Mapping[str, StageDefinition] = MappingProxyType({s.id: s for s in STAGES})
STAGE_ORDER: tuple[str, ...] = tuple(s.id for s in STAGES)
STAGE_DEPENDENCIES: Mapping[str, tuple[str, ...]] = MappingProxyType({s.id: s.dependencies for s in STAGES})
STAGE_OUTPUT_FIELDS: Mapping[str, str] = MappingProxyType({s.id: s.output_field for s in STAGES})

validate_graph(STAGE_DEPENDENCIES, STAGE_ORDER)


def _sections(*ids: str, optional: Iterable[str] = ()) -> tuple[BlueprintSection, ...]:
    optional_ids = set(optional)
    return tuple(
        BlueprintSection(id=i, title=STAGES_BY_ID[i].title, default_selected=i not in optional_ids)
        for i in ids
    )


_BLUEPRINTS: Mapping[str, ReportBlueprint] = MappingProxyType({
    "GENERIC": ReportBlueprint(
        version=BLUEPRINT_VERSION,
        report_type="GENERIC",
        title="General Company Brief",
        purpose="Concise pre-meeting brief focused on the most relevant context.",
        sections=_sections(
            "exec_summary", "financial_snapshot", "company_overview", "key_execs_and_board",
            "recent_news", "conversation_starters", "appendix",
            optional=("appendix",),
        ),
    ),
    "INDUSTRIALS": ReportBlueprint(
        version=BLUEPRINT_VERSION,
        report_type="INDUSTRIALS",
        title="Industrials Account Research",
        purpose="Full industrial account brief covering operations, markets and opportunities.",
        sections=_sections(
            "exec_summary", "financial_snapshot", "company_overview", "key_execs_and_board",
            "segment_analysis", "trends", "peer_benchmarking", "sku_opportunities",
            "recent_news", "conversation_starters", "appendix",
        ),
    ),
    "PE": ReportBlueprint(
        version=BLUEPRINT_VERSION,
        report_type="PE",
        title="Private Equity Firm Profile",
        purpose="Firm strategy, portfolio and deal patterns for a sponsor meeting.",
        sections=_sections(
            "exec_summary", "investment_strategy", "portfolio_snapshot", "deal_activity",
            "deal_team", "portfolio_maturity", "leadership_and_governance", "strategic_priorities",
            "recent_news", "conversation_starters", "appendix",
            optional=("leadership_and_governance", "appendix"),
        ),
    ),
    "FS": ReportBlueprint(
        version=BLUEPRINT_VERSION,
        report_type="FS",
        title="Financial Services Institution Brief",
        purpose="Business line mix, performance pressure and transformation priorities.",
        sections=_sections(
            "exec_summary", "financial_snapshot", "company_overview", "segment_analysis",
            "leadership_and_governance", "strategic_priorities", "operating_capabilities",
            "peer_benchmarking", "recent_news", "conversation_starters", "appendix",
            optional=("peer_benchmarking", "appendix"),
        ),
    ),
    "INSURANCE": ReportBlueprint(
        version=BLUEPRINT_VERSION,
        report_type="INSURANCE",
        title="Insurance Carrier Brief",
        purpose="Lines of business, underwriting, distribution and capital position.",
        sections=_sections(
            "exec_summary", "financial_snapshot", "company_overview", "segment_analysis",
            "distribution_analysis", "key_execs_and_board", "peer_benchmarking",
            "recent_news", "conversation_starters", "appendix",
            optional=("appendix",),
        ),
    ),
})


def get_stage(stage_id: str) -> StageDefinition:
    try:
        return STAGES_BY_ID[stage_id]
    except KeyError:
        raise JobValidationError(f"Unknown stage: {stage_id}") from None


def get_report_blueprint(report_type: str) -> ReportBlueprint:
    try:
        return _BLUEPRINTS[report_type]
    except KeyError:
        raise JobValidationError(
            f"Unknown report type: {report_type}. Expected one of {', '.join(REPORT_TYPES)}"
        ) from None


def list_report_blueprints() -> list[ReportBlueprint]:
    return [_BLUEPRINTS[t] for t in REPORT_TYPES]


def order_stages(stages: Iterable[str]) -> list[str]:
    """Sort stage ids into execution (declaration) order, dropping duplicates."""
    wanted = set(stages)
    return [s for s in STAGE_ORDER if s in wanted]


def resolve_job_stages(report_type: str, selected_sections: Iterable[str] | None = None) -> list[str]:
    """
    Stages a new job runs: foundation plus the selected sections, or the
    blueprint's default sections when nothing is selected.
    """
    blueprint = get_report_blueprint(report_type)
    allowed = {section.id for section in blueprint.sections}

    selected = [s.strip() for s in (selected_sections or []) if s and s.strip()]
    if selected:
        unknown = [s for s in selected if s not in allowed and s != FOUNDATION]
        if unknown:
            raise JobValidationError(
                f"Sections not available for {report_type} reports: {', '.join(unknown)}"
            )
    else:
        selected = [section.id for section in blueprint.sections if section.default_selected]

    return order_stages([FOUNDATION, *selected])
