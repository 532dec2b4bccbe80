"""Finding synthesis: turn raw query outputs into ranked, deduplicated findings.

Everything in this module is pure: given the same outputs, session id and
``now`` it returns the same findings (ids are derived, not random).
"""
from __future__ import annotations

import re
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import urlparse

from rapidfuzz import fuzz

from spearfish.schemas import ActionableOpportunity, ResearchFinding, ResearchSummary, SourceInfo
from spearfish.utils import as_utc, utcnow


@dataclass(frozen=True)
class QueryOutput:
    """Raw result of one executed research template."""
    template_id: str
    template_name: str
    category: str
    priority: str
    content: str
    citations: tuple[str, ...] = ()
    related_questions: tuple[str, ...] = ()
    cost_usd: float = 0.0
    tokens_used: int = 0
    model: str = ""
    completed_at: datetime = field(default_factory=utcnow)


FINDING_TYPES = {
    "technical": "problem_identified",
    "business": "market_opportunity",
    "team": "team_insight",
    "competitive": "competitive_insight",
    "market": "market_opportunity",
    "funding": "funding_status",
}
DEFAULT_FINDING_TYPE = "problem_identified"

SIMILARITY_THRESHOLD = 85.0
MAX_TITLE = 80
MAX_TAGS = 10

_HIGH_PRIORITY = ("urgent", "critical", "major", "significant", "severe")
_MEDIUM_PRIORITY = ("important", "notable", "relevant", "moderate")

_TECH_TAG_RE = re.compile(
    r"\b(Python|JavaScript|TypeScript|React|Node\.js|Go|Rust|AWS|GCP|Azure|Docker|Kubernetes|"
    r"API|ML|AI|LLM|database|SQL|NoSQL|Redis|MongoDB|PostgreSQL|MySQL|GraphQL|REST|"
    r"microservices|serverless|DevOps|CI/CD|GitHub|Terraform|monitoring|logging|security|"
    r"OAuth|encryption|performance|scalability|caching|CDN|cloud|infrastructure|automation|"
    r"testing|architecture|frontend|backend|data\s+science|machine\s+learning|deep\s+learning|"
    r"analytics|ETL|data\s+pipeline|streaming|real-time|distributed\s+systems|observability|"
    r"compliance|GDPR|HIPAA|SOC2|privacy)\b",
    re.IGNORECASE,
)
_BUSINESS_TERMS = (
    "funding", "investment", "revenue", "growth", "scaling", "expansion", "market",
    "competition", "strategy", "partnership", "acquisition", "valuation", "startup",
    "enterprise", "saas", "b2b", "b2c", "customer", "retention", "churn", "arr", "mrr",
)


# ---------------------------------------------------------------------------
# Section heuristics
# ---------------------------------------------------------------------------


def split_sections(content: str) -> list[str]:
    """Split provider prose into substantial sections.

    ``##`` headers first (sections over 200 chars), then runs of blank lines
    (chunks over 300 chars), else the whole content as one section.
    """
    content = content.strip()
    if not content:
        return []
    headed = [s.strip() for s in re.split(r"(?m)(?=^##\s)", content)]
    headed = [s for s in headed if len(s) > 200]
    if len(headed) > 1:
        return headed
    paragraphs = [s.strip() for s in re.split(r"\n\s*\n\s*\n+", content)]
    paragraphs = [s for s in paragraphs if len(s) > 300]
    return paragraphs or [content]


def _clip(text: str, limit: int = MAX_TITLE) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def extract_title(section: str) -> str:
    lines = [line.strip() for line in section.splitlines() if line.strip()]
    if not lines:
        return ""
    for line in lines[:5]:
        if re.match(r"^#+\s+", line):
            return _clip(re.sub(r"^#+\s*", "", line).replace("**", "").strip())
    first = lines[0]
    if re.match(r"^\d+\.\s+", first) or re.match(r"^[*\-]\s+\*\*", first):
        return _clip(re.sub(r"^[\d.*\-\s]+", "", first).replace("**", "").strip())
    sentence = re.split(r"[.!?]", first, maxsplit=1)[0].strip()
    if len(sentence) > 20:
        return _clip(sentence)
    return _clip(first)


def confidence_for(section: str, citation_count: int) -> float:
    score = 0.5 + min(citation_count * 0.1, 0.3)
    lowered = section.lower()
    if "specific" in lowered or "concrete" in lowered:
        score += 0.1
    if "recent" in lowered or "latest" in lowered:
        score += 0.1
    if len(re.findall(r"\d+", section)) > 2:
        score += 0.1
    return round(min(max(score, 0.0), 1.0), 3)


def priority_for(section: str, template_priority: str) -> str:
    lowered = section.lower()
    if any(k in lowered for k in _HIGH_PRIORITY):
        return "high"
    if any(k in lowered for k in _MEDIUM_PRIORITY):
        return "medium"
    return "medium" if template_priority == "high" else "low"


def extract_tags(section: str) -> list[str]:
    tags = [m.group(0).lower() for m in _TECH_TAG_RE.finditer(section)]
    lowered = section.lower()
    tags.extend(t for t in _BUSINESS_TERMS if re.search(rf"\b{re.escape(t)}\b", lowered))
    return list(dict.fromkeys(tags))[:MAX_TAGS]


def finding_type_for(category: str) -> str:
    return FINDING_TYPES.get(category, DEFAULT_FINDING_TYPE)


def _finding_id(session_id: str, template_id: str, index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"spearfish:{session_id}:{template_id}:{index}"))


def _normalize(text: str) -> str:
    return " ".join(re.sub(r"[^\w\s]", " ", text.lower()).split())


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def synthesize(
    outputs: Sequence[QueryOutput],
    session_id: str,
    now: datetime | None = None,
    similarity_threshold: float = SIMILARITY_THRESHOLD,
) -> list[ResearchFinding]:
    """Group outputs by template category, drop near-duplicates, rank by confidence.

    Categories keep the order in which they first appear in *outputs*; inside a
    category findings are sorted by descending confidence (ties keep input order).
    """
    created_at = as_utc(now) or utcnow()
    groups: dict[str, list[ResearchFinding]] = {}
    for output in outputs:
        citations = list(dict.fromkeys(output.citations))
        for index, section in enumerate(split_sections(output.content)):
            candidate = ResearchFinding(
                id=_finding_id(session_id, output.template_id, index),
                session_id=session_id,
                finding_type=finding_type_for(output.category),
                category=output.category,
                title=extract_title(section),
                content=section,
                confidence_score=confidence_for(section, len(citations)),
                citations=citations,
                priority_level=priority_for(section, output.priority),
                tags=extract_tags(section),
                source_template_id=output.template_id,
                created_at=created_at,
            )
            _add_unique(groups.setdefault(output.category, []), candidate, similarity_threshold)

    ranked: list[ResearchFinding] = []
    for findings in groups.values():
        ranked.extend(sorted(findings, key=lambda f: -f.confidence_score))
    return ranked


def _add_unique(bucket: list[ResearchFinding], candidate: ResearchFinding, threshold: float) -> None:
    normalized = _normalize(candidate.content)
    for i, existing in enumerate(bucket):
        if fuzz.ratio(normalized, _normalize(existing.content)) < threshold:
            continue
        keep, drop = (candidate, existing) if candidate.confidence_score > existing.confidence_score else (existing, candidate)
        citations = list(dict.fromkeys([*keep.citations, *drop.citations]))
        bucket[i] = keep.model_copy(update={"citations": citations})
        return
    bucket.append(candidate)


def group_by_category(findings: Iterable[ResearchFinding]) -> dict[str, list[ResearchFinding]]:
    grouped: dict[str, list[ResearchFinding]] = {}
    for finding in findings:
        grouped.setdefault(finding.category, []).append(finding)
    for bucket in grouped.values():
        bucket.sort(key=lambda f: -f.confidence_score)
    return grouped


def raw_findings(outputs: Sequence[QueryOutput], session_id: str, now: datetime | None = None) -> list[ResearchFinding]:
    """One unprocessed finding per output, used when synthesis is disabled."""
    created_at = as_utc(now) or utcnow()
    return [
        ResearchFinding(
            id=_finding_id(session_id, output.template_id, 0),
            session_id=session_id,
            finding_type=finding_type_for(output.category),
            category=output.category,
            title=output.template_name,
            content=output.content,
            confidence_score=0.5,
            citations=list(output.citations),
            priority_level=output.priority,
            tags=[],
            source_template_id=output.template_id,
            created_at=created_at,
        )
        for output in outputs if output.content.strip()
    ]


# ---------------------------------------------------------------------------
# Session summary
# ---------------------------------------------------------------------------

_SKILL_HINTS = (
    (("api", "integration"), "API development"),
    (("database", "sql"), "Database design"),
    (("frontend", "ui"), "Frontend development"),
    (("backend", "server"), "Backend development"),
    (("cloud", "aws"), "Cloud architecture"),
    (("security", "auth"), "Security engineering"),
    (("data", "analytics"), "Data analysis"),
    (("ml", "ai", "machine learning"), "Machine learning"),
    (("market", "competitive"), "Market research"),
    (("strategy", "business"), "Business strategy"),
    (("product", "roadmap"), "Product management"),
    (("sales", "marketing"), "Go-to-market"),
)
_ARTIFACT_HINTS = (
    (("dashboard", "analytics"), "Analytics dashboard"),
    (("api", "integration"), "API integration tool"),
    (("documentation", "guide"), "Technical documentation"),
    (("automation", "script"), "Automation scripts"),
    (("security", "audit"), "Security assessment"),
    (("performance", "optimization"), "Performance analysis"),
    (("market", "competitive"), "Market analysis report"),
    (("strategy", "roadmap"), "Strategic roadmap"),
)
_RISK_HINTS = (
    (("security", "vulnerab"), "Security vulnerabilities identified"),
    (("performance", "slow"), "Performance bottlenecks affecting user experience"),
    (("competitive", "threat"), "Competitive pressure increasing"),
    (("technical debt",), "Technical debt accumulation"),
    (("compliance", "regulat"), "Regulatory compliance challenges"),
)


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z]+", text.lower()))


def _hints(text: str, table, limit: int) -> list[str]:
    lowered = text.lower()
    words = _words(text)
    out = []
    for keys, label in table:
        if any((k in words) if " " not in k else (k in lowered) for k in keys):
            out.append(label)
    return out[:limit]


def summarize(company_name: str, findings: Sequence[ResearchFinding]) -> ResearchSummary:
    high = [f for f in findings if f.priority_level == "high"]
    if high:
        points = "\n".join(f"- {f.title}" for f in high[:5])
        executive = (
            f"Key findings for {company_name}:\n{points}\n\n"
            f"{len(findings)} insights in total across {len({f.category for f in findings})} categories."
        )
    else:
        executive = f"Research on {company_name} produced {len(findings)} findings."

    opportunities = [
        ActionableOpportunity(
            title=f"Address {f.title}",
            description=_clip(f.content, 200),
            estimated_impact="high" if f.confidence_score >= 0.8 else "medium",
            required_skills=_hints(f.content, _SKILL_HINTS, 5),
            potential_artifacts=_hints(f.content, _ARTIFACT_HINTS, 3),
        )
        for f in high[:3]
    ]

    risks: list[str] = []
    for f in findings:
        lowered = f.content.lower()
        for keys, label in _RISK_HINTS:
            if all(k in lowered for k in keys):
                risks.append(label)
    risks = list(dict.fromkeys(risks))[:5]

    steps = []
    types = {f.finding_type for f in findings}
    if "problem_identified" in types:
        steps += ["Prioritize technical challenges by impact and feasibility",
                  "Build a proof of concept for the highest-impact problem"]
    if "market_opportunity" in types:
        steps += ["Validate market opportunities with stakeholder interviews"]
    if "team_insight" in types:
        steps += ["Reach out to the identified technical decision makers"]
    steps.append("Schedule follow-up research to track progress")

    confidence = sum(f.confidence_score for f in findings) / len(findings) if findings else 0.0
    return ResearchSummary(
        executive_summary=executive,
        actionable_opportunities=opportunities,
        risk_factors=risks,
        recommended_next_steps=steps[:5],
        confidence_level=round(confidence, 3),
        finding_count=len(findings),
    )


# ---------------------------------------------------------------------------
# Source analysis
# ---------------------------------------------------------------------------

_NEWS_DOMAINS = ("techcrunch.com", "reuters.com", "bloomberg.com", "news.ycombinator.com", "theverge.com")


def classify_source(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    path = urlparse(url).path.lower()
    if host.endswith("github.com"):
        return "github"
    if "jobs" in host or "careers" in path or "jobs" in path or host.endswith(("workatastartup.com", "wellfound.com")):
        return "job"
    if host.startswith("docs.") or "/docs" in path or "documentation" in path:
        return "documentation"
    if host.startswith("blog.") or "/blog" in path or host.endswith(("medium.com", "dev.to", "substack.com")):
        return "blog"
    if host.endswith(_NEWS_DOMAINS) or "/news" in path:
        return "news"
    return "other"


def source_recency(url: str, now: datetime | None = None) -> str:
    year = (as_utc(now) or utcnow()).year
    found = [int(y) for y in re.findall(r"(?<!\d)(20\d{2})(?!\d)", url)]
    if not found:
        return "unknown"
    newest = max(found)
    if newest >= year - 1:
        return "recent"
    if newest >= year - 2:
        return "moderate"
    return "older"


def analyze_sources(citations: Iterable[str], now: datetime | None = None) -> list[SourceInfo]:
    out = []
    for url in dict.fromkeys(citations):
        if not url:
            continue
        out.append(SourceInfo(
            url=url,
            domain=(urlparse(url).hostname or "").removeprefix("www."),
            source_type=classify_source(url),
            recency=source_recency(url, now),
        ))
    return out
