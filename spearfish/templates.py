"""Research query template registry.

Templates are static, versioned data: a system prompt, a query body with
``{variable}`` slots, and metadata the orchestrator and synthesizer use
(category, priority, cost estimate). Research-type keywords resolve to an
ordered list of template ids.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from spearfish.errors import ValidationError

# ---------------------------------------------------------------------------
# Template definitions
# ---------------------------------------------------------------------------

CATEGORIES = ("technical", "business", "team", "competitive", "market", "funding")


@dataclass(frozen=True)
class QueryTemplate:
    id: str
    name: str
    description: str
    category: str
    system_prompt: str
    query_template: str
    focus_areas: tuple[str, ...] = ()
    expected_outputs: tuple[str, ...] = ()
    search_domains: tuple[str, ...] = ()
    recency_filter: str = "month"
    priority: str = "medium"
    cost_estimate_usd: float = 0.01


@dataclass(frozen=True)
class RenderedQuery:
    template_id: str
    system_prompt: str
    query: str
    search_domains: tuple[str, ...] = ()
    recency_filter: str = "month"
    cost_estimate_usd: float = 0.01


@dataclass
class QueryVariables:
    """Values substituted into template slots. Only ``company_name`` is required."""
    company_name: str
    company_domain: str | None = None
    industry: str | None = None
    batch: str | None = None
    founded_year: int | None = None
    description: str | None = None
    github_repos: list[str] = field(default_factory=list)
    focus_areas: list[str] = field(default_factory=list)
    competitors: list[str] = field(default_factory=list)
    technologies: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> QueryVariables:
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        if not values.get("company_name"):
            raise ValidationError("company_name is required")
        for key in ("github_repos", "focus_areas", "competitors", "technologies"):
            raw = values.get(key)
            if isinstance(raw, str):
                values[key] = [p.strip() for p in raw.split(",") if p.strip()]
            elif raw is None:
                values.pop(key, None)
        return cls(**values)

    def as_slots(self) -> dict[str, str]:
        slots = {}
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if value is None or value == []:
                continue
            slots[_camel(name)] = ", ".join(value) if isinstance(value, list) else str(value)
        return slots


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


_TECH_DOMAINS = ("github.com", "stackoverflow.com", "dev.to", "medium.com", "news.ycombinator.com")
_BUSINESS_DOMAINS = ("techcrunch.com", "crunchbase.com", "ycombinator.com", "linkedin.com")

TEMPLATES: dict[str, QueryTemplate] = {t.id: t for t in (
    QueryTemplate(
        id="technical-challenges",
        name="Technical Challenges Analysis",
        description="Technical problems and engineering challenges the company is facing.",
        category="technical",
        system_prompt=(
            "You are a senior technical analyst. Identify specific, concrete technical "
            "challenges a startup is facing, citing engineering blogs, repositories and job posts."
        ),
        query_template=(
            "What are the main technical challenges {companyName} is facing? Focus on "
            "scaling, infrastructure, architecture and engineering bottlenecks mentioned in "
            "their engineering blog, GitHub repositories ({githubRepos}) or job postings."
        ),
        focus_areas=("scalability", "architecture", "performance", "infrastructure"),
        expected_outputs=("specific technical problems", "technology bottlenecks"),
        search_domains=_TECH_DOMAINS,
        recency_filter="month",
        priority="high",
        cost_estimate_usd=0.015,
    ),
    QueryTemplate(
        id="tech-stack-analysis",
        name="Technology Stack Analysis",
        description="Technologies, frameworks and tools the company uses.",
        category="technical",
        system_prompt=(
            "You are a technology analyst. Describe a company's technology stack and "
            "recent technical decisions using public evidence."
        ),
        query_template=(
            "What technology stack does {companyName} use? List languages, frameworks, "
            "databases, cloud providers and developer tools, and any recent migrations."
        ),
        focus_areas=("programming languages", "frameworks", "databases", "cloud"),
        expected_outputs=("technology list", "architecture decisions"),
        search_domains=_TECH_DOMAINS,
        recency_filter="year",
        priority="medium",
        cost_estimate_usd=0.01,
    ),
    QueryTemplate(
        id="business-challenges",
        name="Business Challenges Analysis",
        description="Business obstacles, market pressure and operational problems.",
        category="business",
        system_prompt=(
            "You are a business analyst. Identify concrete business challenges such as "
            "customer acquisition, monetisation and operational scaling."
        ),
        query_template=(
            "What business challenges is {companyName} ({industry}) currently facing? "
            "Cover growth, customer acquisition, competition and operations."
        ),
        focus_areas=("growth", "customer acquisition", "monetization", "operations"),
        expected_outputs=("business problems", "strategic risks"),
        search_domains=_BUSINESS_DOMAINS,
        recency_filter="month",
        priority="high",
        cost_estimate_usd=0.015,
    ),
    QueryTemplate(
        id="recent-activities",
        name="Recent Activities & News",
        description="Product launches, announcements and news from the last months.",
        category="business",
        system_prompt=(
            "You are a news researcher. Summarise the latest verifiable activities of a "
            "company with dates and sources."
        ),
        query_template=(
            "What has {companyName} announced or launched recently? Include product "
            "releases, partnerships, funding news and notable hires."
        ),
        focus_areas=("product launches", "partnerships", "announcements"),
        expected_outputs=("dated events", "announcements"),
        search_domains=_BUSINESS_DOMAINS,
        recency_filter="week",
        priority="medium",
        cost_estimate_usd=0.01,
    ),
    QueryTemplate(
        id="key-decision-makers",
        name="Key Decision Makers",
        description="Founders, executives and technical leaders involved in hiring.",
        category="team",
        system_prompt=(
            "You are a talent researcher. Identify founders and technical leaders and "
            "what they publicly care about."
        ),
        query_template=(
            "Who are the founders and key technical decision makers at {companyName}? "
            "Include their backgrounds and recent public posts or talks."
        ),
        focus_areas=("founders", "engineering leadership", "backgrounds"),
        expected_outputs=("names and roles", "public interests"),
        search_domains=("linkedin.com", "twitter.com", "github.com", "ycombinator.com"),
        recency_filter="year",
        priority="high",
        cost_estimate_usd=0.012,
    ),
    QueryTemplate(
        id="hiring-patterns",
        name="Hiring Patterns",
        description="Open roles, hiring velocity and team growth signals.",
        category="team",
        system_prompt=(
            "You are a recruiting analyst. Describe a company's hiring activity and the "
            "skills it is looking for."
        ),
        query_template=(
            "What roles is {companyName} hiring for and what skills do they emphasise? "
            "Describe team growth over the last year."
        ),
        focus_areas=("open roles", "required skills", "team growth"),
        expected_outputs=("role list", "skill requirements"),
        search_domains=("workatastartup.com", "linkedin.com", "wellfound.com"),
        recency_filter="month",
        priority="medium",
        cost_estimate_usd=0.01,
    ),
    QueryTemplate(
        id="competitive-landscape",
        name="Competitive Landscape",
        description="Direct competitors and differentiation.",
        category="competitive",
        system_prompt=(
            "You are a market strategist. Map the competitive landscape of a startup and "
            "its differentiation."
        ),
        query_template=(
            "Who are the main competitors of {companyName} and how does it differentiate? "
            "Known competitors: {competitors}."
        ),
        focus_areas=("competitors", "differentiation", "positioning"),
        expected_outputs=("competitor list", "differentiators"),
        search_domains=_BUSINESS_DOMAINS,
        recency_filter="year",
        priority="medium",
        cost_estimate_usd=0.012,
    ),
    QueryTemplate(
        id="market-opportunities",
        name="Market Opportunities",
        description="Expansion opportunities and market trends relevant to the company.",
        category="market",
        system_prompt=(
            "You are a market analyst. Identify market opportunities and trends a startup "
            "can act on."
        ),
        query_template=(
            "What market opportunities and trends could {companyName} in {industry} "
            "capitalise on over the next year?"
        ),
        focus_areas=("market trends", "expansion", "new segments"),
        expected_outputs=("opportunities", "trend analysis"),
        search_domains=_BUSINESS_DOMAINS,
        recency_filter="month",
        priority="medium",
        cost_estimate_usd=0.012,
    ),
    QueryTemplate(
        id="funding-analysis",
        name="Funding Analysis",
        description="Funding history, investors and financial runway.",
        category="funding",
        system_prompt=(
            "You are a venture analyst. Summarise a company's funding history and investors."
        ),
        query_template=(
            "What is the funding history of {companyName}? List rounds, amounts, investors "
            "and any signals about runway."
        ),
        focus_areas=("funding rounds", "investors", "valuation"),
        expected_outputs=("round history", "investor list"),
        search_domains=("crunchbase.com", "techcrunch.com", "pitchbook.com"),
        recency_filter="year",
        priority="low",
        cost_estimate_usd=0.008,
    ),
)}

RESEARCH_TYPES: dict[str, tuple[str, ...]] = {
    "technical-challenges": ("technical-challenges", "tech-stack-analysis"),
    "business-intelligence": ("business-challenges", "market-opportunities", "funding-analysis"),
    "team-dynamics": ("key-decision-makers", "hiring-patterns"),
    "recent-activities": ("recent-activities",),
    "comprehensive": (
        "technical-challenges", "business-challenges", "key-decision-makers",
        "recent-activities", "market-opportunities",
    ),
}
DEFAULT_RESEARCH_TYPE = "comprehensive"


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------


def get_template(template_id: str) -> QueryTemplate:
    try:
        return TEMPLATES[template_id]
    except KeyError:
        raise ValidationError(f"Unknown research template {template_id!r}") from None


def list_templates(category: str | None = None) -> list[QueryTemplate]:
    return [t for t in TEMPLATES.values() if category is None or t.category == category]


def resolve_template_ids(research_type: str | None) -> list[str]:
    """Template ids for a research-type keyword; unknown keywords get the default set."""
    key = (research_type or "").strip().lower()
    return list(RESEARCH_TYPES.get(key, RESEARCH_TYPES[DEFAULT_RESEARCH_TYPE]))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

_SLOT_RE = re.compile(r"\{(\w+)\}")


def validate_variables(variables: QueryVariables) -> list[str]:
    """Return human-readable problems; empty when the variables are usable."""
    errors = []
    if not (variables.company_name or "").strip():
        errors.append("company_name is required")
    if variables.founded_year is not None:
        current_year = datetime.now(UTC).year
        if not 1800 <= variables.founded_year <= current_year:
            errors.append(f"founded_year must be between 1800 and {current_year}")
    for repo in variables.github_repos:
        if "github.com" not in repo:
            errors.append(f"Invalid GitHub repository URL: {repo}")
    return errors


def render(template: QueryTemplate, variables: QueryVariables) -> RenderedQuery:
    """Fill template slots. Unfilled optional slots collapse to ``"unknown"``."""
    errors = validate_variables(variables)
    if errors:
        raise ValidationError("; ".join(errors))
    slots = variables.as_slots()
    query = _SLOT_RE.sub(lambda m: slots.get(m.group(1), "unknown"), template.query_template)

    context = []
    if variables.description:
        context.append(f"Company description: {variables.description}")
    focus = list(dict.fromkeys([*template.focus_areas, *variables.focus_areas]))
    if focus:
        context.append(f"Focus areas: {', '.join(focus)}")
    if variables.competitors and "{competitors}" not in template.query_template:
        context.append(f"Known competitors: {', '.join(variables.competitors)}")
    if variables.technologies:
        context.append(f"Technologies of interest: {', '.join(variables.technologies)}")
    if context:
        query = query + "\n\n" + "\n".join(context)

    return RenderedQuery(
        template_id=template.id,
        system_prompt=template.system_prompt,
        query=query,
        search_domains=template.search_domains,
        recency_filter=template.recency_filter,
        cost_estimate_usd=template.cost_estimate_usd,
    )
