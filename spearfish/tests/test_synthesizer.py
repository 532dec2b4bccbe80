from __future__ import annotations

from datetime import UTC, datetime

from spearfish.synthesizer import (
    QueryOutput,
    analyze_sources,
    classify_source,
    confidence_for,
    extract_title,
    group_by_category,
    priority_for,
    raw_findings,
    source_recency,
    split_sections,
    summarize,
    synthesize,
)

NOW = datetime(2025, 6, 1, tzinfo=UTC)

SCALING = (
    "## Database scaling\n"
    "The company runs a single PostgreSQL primary that is a critical bottleneck. Engineers "
    "describe specific write amplification problems in 3 recent posts, with p99 latency above "
    "400ms during 2 traffic spikes. Sharding and caching work is planned but unstaffed, and the "
    "team is hiring backend engineers to address it."
)
SECURITY = (
    "## Security review backlog\n"
    "An external audit flagged security vulnerabilities in the OAuth integration. The backlog of "
    "remediation work is growing and compliance with SOC2 is a stated goal for enterprise "
    "customers. There is no dedicated security engineer on the team yet, so fixes are slow."
)


def output(template_id="technical-challenges", category="technical", content=SCALING, citations=(), priority="high"):
    return QueryOutput(
        template_id=template_id,
        template_name=template_id.replace("-", " ").title(),
        category=category,
        priority=priority,
        content=content,
        citations=tuple(citations),
        cost_usd=0.01,
        tokens_used=100,
    )


class TestSectionHeuristics:
    def test_split_on_headers(self):
        sections = split_sections(SCALING + "\n\n" + SECURITY)
        assert len(sections) == 2
        assert sections[0].startswith("## Database scaling")

    def test_short_content_is_one_section(self):
        assert split_sections("Short answer.") == ["Short answer."]
        assert split_sections("   ") == []

    def test_extract_title(self):
        assert extract_title(SCALING) == "Database scaling"
        assert extract_title("1. **Hiring** is slow\nmore") == "Hiring is slow"
        assert len(extract_title("x" * 200)) == 83

    def test_confidence_signals(self):
        base = confidence_for("nothing special here", 0)
        assert base == 0.5
        assert confidence_for("nothing special here", 5) == 0.8
        assert confidence_for(SCALING, 2) == 1.0

    def test_priority(self):
        assert priority_for("a critical outage", "low") == "high"
        assert priority_for("a notable change", "low") == "medium"
        assert priority_for("plain", "high") == "medium"
        assert priority_for("plain", "medium") == "low"


class TestSynthesize:
    def test_findings_grouped_and_ranked(self):
        outputs = [
            output(content=SCALING + "\n\n" + SECURITY, citations=["https://github.com/a"]),
            output("market-opportunities", "market", SECURITY.replace("Security", "Market")),
        ]
        findings = synthesize(outputs, "s1", now=NOW)
        categories = [f.category for f in findings]
        assert categories == sorted(categories, key=["technical", "market"].index)
        technical = [f for f in findings if f.category == "technical"]
        assert [f.confidence_score for f in technical] == sorted((f.confidence_score for f in technical), reverse=True)
        assert all(0.0 <= f.confidence_score <= 1.0 for f in findings)
        assert {f.finding_type for f in findings} == {"problem_identified", "market_opportunity"}

    def test_near_duplicates_merged(self):
        outputs = [
            output(content=SCALING, citations=["https://a.dev/1"]),
            output("tech-stack-analysis", content=SCALING.replace("3 recent", "three recent"),
                   citations=["https://b.dev/2"]),
        ]
        findings = synthesize(outputs, "s1", now=NOW)
        assert len(findings) == 1
        assert set(findings[0].citations) == {"https://a.dev/1", "https://b.dev/2"}

    def test_deterministic_ids(self):
        outputs = [output()]
        assert [f.id for f in synthesize(outputs, "s1", now=NOW)] == [f.id for f in synthesize(outputs, "s1", now=NOW)]
        assert synthesize(outputs, "s1", now=NOW)[0].id != synthesize(outputs, "s2", now=NOW)[0].id

    def test_empty_outputs(self):
        assert synthesize([], "s1") == []
        assert synthesize([output(content="")], "s1") == []

    def test_group_by_category(self):
        findings = synthesize([output(), output("funding-analysis", "funding", SECURITY)], "s1", now=NOW)
        grouped = group_by_category(findings)
        assert list(grouped) == ["technical", "funding"]


class TestRawFindings:
    def test_one_finding_per_output(self):
        outputs = [output(), output("recent-activities", "business", "Launched v2."), output(content="  ")]
        findings = raw_findings(outputs, "s1", now=NOW)
        assert len(findings) == 2
        assert all(f.confidence_score == 0.5 for f in findings)
        assert findings[1].content == "Launched v2."
        assert findings[1].title == "Recent Activities"


class TestSummary:
    def test_summary_from_findings(self):
        findings = synthesize([output(content=SCALING + "\n\n" + SECURITY)], "s1", now=NOW)
        summary = summarize("Lumen", findings)
        assert summary.finding_count == len(findings)
        assert "Lumen" in summary.executive_summary
        assert "Security vulnerabilities identified" in summary.risk_factors
        assert summary.actionable_opportunities
        assert summary.recommended_next_steps[-1] == "Schedule follow-up research to track progress"
        assert 0.0 < summary.confidence_level <= 1.0

    def test_empty_summary(self):
        summary = summarize("Lumen", [])
        assert summary.finding_count == 0
        assert summary.confidence_level == 0.0


class TestSources:
    def test_classify(self):
        assert classify_source("https://github.com/lumen/core") == "github"
        assert classify_source("https://lumen.dev/careers/backend") == "job"
        assert classify_source("https://docs.lumen.dev/start") == "documentation"
        assert classify_source("https://lumen.dev/blog/scaling") == "blog"
        assert classify_source("https://techcrunch.com/2025/01/01/lumen") == "news"
        assert classify_source("https://example.com/") == "other"

    def test_recency(self):
        assert source_recency("https://x.dev/2025/post", NOW) == "recent"
        assert source_recency("https://x.dev/2023/post", NOW) == "moderate"
        assert source_recency("https://x.dev/2019/post", NOW) == "older"
        assert source_recency("https://x.dev/post", NOW) == "unknown"

    def test_analyze_sources_dedupes(self):
        sources = analyze_sources(["https://www.github.com/a", "https://www.github.com/a", ""], NOW)
        assert len(sources) == 1
        assert sources[0].domain == "github.com"
