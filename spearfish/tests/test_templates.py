from __future__ import annotations

import pytest

from spearfish.errors import ValidationError
from spearfish.templates import (
    CATEGORIES,
    DEFAULT_RESEARCH_TYPE,
    RESEARCH_TYPES,
    TEMPLATES,
    QueryVariables,
    get_template,
    list_templates,
    render,
    resolve_template_ids,
    validate_variables,
)


class TestRegistry:
    def test_every_template_is_well_formed(self):
        assert len(TEMPLATES) == 9
        for template_id, template in TEMPLATES.items():
            assert template.id == template_id
            assert template.category in CATEGORIES
            assert "{companyName}" in template.query_template
            assert template.cost_estimate_usd > 0

    def test_research_types_reference_known_templates(self):
        for ids in RESEARCH_TYPES.values():
            assert ids
            assert all(t in TEMPLATES for t in ids)

    def test_unknown_research_type_falls_back(self):
        assert resolve_template_ids("astrology") == list(RESEARCH_TYPES[DEFAULT_RESEARCH_TYPE])
        assert resolve_template_ids(None) == list(RESEARCH_TYPES[DEFAULT_RESEARCH_TYPE])
        assert resolve_template_ids(" Team-Dynamics ") == ["key-decision-makers", "hiring-patterns"]

    def test_get_unknown_template(self):
        with pytest.raises(ValidationError):
            get_template("does-not-exist")

    def test_list_by_category(self):
        technical = list_templates("technical")
        assert {t.id for t in technical} == {"technical-challenges", "tech-stack-analysis"}
        assert len(list_templates()) == len(TEMPLATES)


class TestRendering:
    def test_slots_filled_and_missing_slots_unknown(self):
        rendered = render(get_template("technical-challenges"), QueryVariables(company_name="Lumen"))
        assert "Lumen" in rendered.query
        assert "{" not in rendered.query
        assert "(unknown)" in rendered.query
        assert rendered.template_id == "technical-challenges"
        assert rendered.cost_estimate_usd == 0.015

    def test_context_lines_appended(self):
        variables = QueryVariables(
            company_name="Lumen",
            description="Vector search for logs",
            github_repos=["https://github.com/lumen/core"],
            technologies=["Rust"],
        )
        rendered = render(get_template("technical-challenges"), variables)
        assert "https://github.com/lumen/core" in rendered.query
        assert "Company description: Vector search for logs" in rendered.query
        assert "Technologies of interest: Rust" in rendered.query

    def test_invalid_variables_rejected(self):
        variables = QueryVariables(company_name="Lumen", founded_year=1700, github_repos=["gitlab.com/x"])
        errors = validate_variables(variables)
        assert len(errors) == 2
        with pytest.raises(ValidationError):
            render(get_template("recent-activities"), variables)

    def test_from_mapping(self):
        variables = QueryVariables.from_mapping({
            "company_name": "Lumen", "competitors": "Acme, Globex", "technologies": None, "unknown": 1,
        })
        assert variables.competitors == ["Acme", "Globex"]
        assert variables.technologies == []
        with pytest.raises(ValidationError):
            QueryVariables.from_mapping({"industry": "AI"})
