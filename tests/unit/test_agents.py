"""
PropelAI Unit Tests: Generation Agents
======================================

Tests:
- Validation gate rules (blockers, warnings, placeholders)
- Volume structure and page-limit policy
- RFP parsing, with and without the generation service
- Content mapping and keyword placement of unmapped requirements
- Volume writing with partial section failures
- Compliance scoring and its substring fallback
- Consultant plans and repeated-issue promotion
- Two-pass rewriting and its failure modes
- Final packaging
"""

import json
from datetime import timedelta

import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from core.config import PageLimitPolicy, PipelineConfig
from core.errors import GenerationError
from core.state import VOLUME_CATALOGUE, utcnow
from agents.base import AgentContext
from agents.compliance_agent import create_compliance_agent, estimate_win_probability
from agents.consultant_agent import create_consultant_agent
from agents.content_mapper_agent import create_content_mapper_agent, guess_volume
from agents.packaging_agent import create_packaging_agent
from agents.rewriter_agent import create_rewriter_agent
from agents.rfp_parser_agent import create_rfp_parser_agent, extract_requirements_by_pattern
from agents.validation_agent import create_validation_agent, is_placeholder
from agents.volume_structure_agent import (
    build_page_limits,
    create_volume_structure_agent,
    extract_page_limits,
    validate_page_count,
)
from agents.writer_agent import create_writer_agent, sanitize_content
from tests.conftest import (
    COMPANY_NAME,
    GOLDEN_PARSED_RFP,
    GOLDEN_RFP_TEXT,
    ScriptedLLMClient,
    make_blocked_company_data,
    make_company_data,
    make_gateway,
    volume_body,
)


def context_for(volume=None, **overrides) -> AgentContext:
    fields = {
        "job_id": "job-1",
        "company_id": "acme",
        "rfp_text": GOLDEN_RFP_TEXT,
        "rfp_parsed_data": GOLDEN_PARSED_RFP,
        "company_data": make_company_data(),
        "volume_page_limits": {"1": 40, "2": 25, "3": 25, "4": 20},
        "target_volume": volume,
    }
    fields.update(overrides)
    return AgentContext(**fields)


def offline_client() -> ScriptedLLMClient:
    return ScriptedLLMClient(default=GenerationError("service unavailable"))


# =============================================================================
# Validation Agent
# =============================================================================

@pytest.mark.unit
class TestValidationAgent:
    """The blocking data-validation gate"""

    @pytest.mark.asyncio
    async def test_complete_data_is_approved(self):
        result = await create_validation_agent().run(context_for())

        assert result.status == "success"
        assert result.data["status"] == "approved"
        assert result.data["blockers"] == []
        assert result.data["data_quality_score"] == 100

    @pytest.mark.asyncio
    async def test_thin_data_is_blocked(self):
        """Too few contracts and people, no PM, no rates"""
        result = await create_validation_agent().run(context_for(company_data=make_blocked_company_data()))

        assert result.status == "blocked"
        assert result.ok
        assert result.data["status"] == "blocked"
        assert "Only 1 past performance contracts (need minimum 3)" in result.errors
        assert "Only 2 key personnel (need minimum 4)" in result.errors
        assert "No Program Manager identified" in result.errors
        assert "No labor rates defined" in result.errors
        fix_paths = {b["fix_path"] for b in result.data["blockers"]}
        assert "/intake/acme#section-3" in fix_paths

    @pytest.mark.asyncio
    async def test_placeholder_identifiers_block(self):
        data = make_company_data()
        data["company"]["uei"] = "ABC123DEF456"
        data["company"]["cage_code"] = "TBD"

        result = await create_validation_agent().run(context_for(company_data=data))

        assert result.status == "blocked"
        assert "UEI appears to be placeholder data" in result.errors
        assert "CAGE code appears to be placeholder data" in result.errors

    @pytest.mark.asyncio
    async def test_stale_poc_and_odd_rates_warn(self):
        """Warnings do not block"""
        data = make_company_data()
        data["past_performance"][0]["poc_verified_date"] = (utcnow() - timedelta(days=200)).isoformat()
        data["labor_rates"].append({"category": "Intern", "hourly_rate": 35})
        data["labor_rates"].append({"category": "Principal", "hourly_rate": 650})

        result = await create_validation_agent().run(context_for(company_data=data))

        assert result.status == "warning"
        assert result.data["status"] == "warnings"
        assert len(result.warnings) == 3
        assert any("verified over 6 months ago" in w for w in result.warnings)
        assert any("Intern" in w and "unusually low" in w for w in result.warnings)
        assert any("Principal" in w and "unusually high" in w for w in result.warnings)
        assert result.data["data_quality_score"] == 85

    @pytest.mark.asyncio
    async def test_junior_pm_blocks_only_when_rfp_requires_ten_years(self):
        data = make_company_data()
        data["personnel"][0]["years_experience"] = 6

        result = await create_validation_agent().run(context_for(company_data=data))
        assert result.data["status"] == "approved"

        rfp = json.loads(json.dumps(GOLDEN_PARSED_RFP))
        rfp["section_c"]["requirements"].append({
            "id": "REQ-004", "section": "H.1",
            "text": "The Program Manager shall have 10 years of federal experience.",
        })
        result = await create_validation_agent().run(context_for(company_data=data, rfp_parsed_data=rfp))
        assert result.status == "blocked"
        assert "PM has 6 years experience (RFP requires 10+)" in result.errors

    @pytest.mark.asyncio
    async def test_missing_ids_is_an_error(self):
        result = await create_validation_agent().run(context_for(company_id=""))
        assert result.status == "error"

    def test_placeholder_patterns(self):
        assert is_placeholder("ABC123")
        assert is_placeholder("test-uei")
        assert is_placeholder("Sample Co")
        assert is_placeholder("N/A")
        assert not is_placeholder("QJ7KLM3NP8R2")
        assert not is_placeholder(None)


# =============================================================================
# Volume Structure Agent
# =============================================================================

@pytest.mark.unit
class TestVolumeStructure:

    @pytest.mark.asyncio
    async def test_limits_from_section_l_then_defaults(self):
        result = await create_volume_structure_agent(PipelineConfig()).run(context_for())

        assert result.data["volume_page_limits"] == {"1": 40, "2": 25, "3": 25, "4": 20}
        assert result.data["total_volume_limit"] == 110

    @pytest.mark.asyncio
    async def test_no_limit_policy(self):
        """Volumes without a stated limit are unlimited"""
        config = PipelineConfig(missing_page_limit_policy=PageLimitPolicy.NO_LIMIT)
        result = await create_volume_structure_agent(config).run(context_for())

        assert result.data["volume_page_limits"] == {"1": 40, "2": 25, "3": None, "4": None}
        assert result.data["total_volume_limit"] == 65

    def test_extract_page_limits_key_spellings(self):
        parsed = {"section_l": {"page_limits": {
            "volume_1_technical": 45, "volume_3": "12", "4": 10, "appendix_a": 5, "volume_2_management": None,
        }}}
        assert extract_page_limits(parsed) == {1: 45, 2: None, 3: 12, 4: 10}

    def test_build_page_limits_without_rfp(self):
        assert build_page_limits({}, PipelineConfig()) == {"1": 50, "2": 30, "3": 25, "4": 20}

    def test_validate_page_count(self):
        assert validate_page_count(1, 20, {"1": 40})["message"].endswith("OK")
        approaching = validate_page_count(1, 37, {"1": 40})
        assert approaching["within_limit"] and approaching["warning"]
        over = validate_page_count(1, 41, {"1": 40})
        assert not over["within_limit"]
        assert "EXCEEDS LIMIT" in over["message"]
        assert validate_page_count(3, 99, {"3": None})["within_limit"]


# =============================================================================
# RFP Parser Agent
# =============================================================================

@pytest.mark.unit
class TestRfpParser:

    @pytest.mark.asyncio
    async def test_three_pass_extraction(self):
        client = ScriptedLLMClient([
            json.dumps({
                "metadata": {"agency": "GSA", "solicitation_num": "47QTCA-26-R-0001", "title": "Cloud Ops"},
                "section_l": {"page_limits": {"volume_1_technical": 40}},
                "section_m": {"factors": [{"name": "Technical Approach", "weight": "60%"}]},
            }),
            "```json\n" + json.dumps([
                {"id": "X-1", "section": "C.2.1", "text": "The Contractor shall ensure 99.99% system uptime for all production environments."},
                {"id": "X-2", "section": "C.2.1", "text": "THE CONTRACTOR SHALL ensure 99.99% system uptime for all production environments."},
                {"id": "X-3", "section": "C.3.1", "text": "The Contractor shall comply with FedRAMP High baseline requirements.", "mandatory": False},
            ]) + "\n```",
            json.dumps({
                "section_b": {"clins": [{"clin": "0001", "description": "Base period", "quantity": 1, "unit": "LOT"}]},
                "disqualifying_requirements": ["Must submit exactly 4 separate volumes"],
            }),
        ])
        agent = create_rfp_parser_agent(make_gateway(client))

        result = await agent.run(context_for(rfp_parsed_data={}))

        assert result.status == "success"
        assert len(client.calls) == 3
        data = result.data
        assert data["metadata"]["agency"] == "GSA"
        assert data["metadata"]["deadline"] == "Not specified"
        assert [r["id"] for r in data["section_c"]["requirements"]] == ["REQ-001", "REQ-002"]
        assert data["section_c"]["requirements"][1]["mandatory"] is False
        assert data["section_b"]["clins"][0]["quantity"] == "1"
        assert data["disqualifying_requirements"] == ["Must submit exactly 4 separate volumes"]
        assert data["section_l"]["format"]["font"] == "Times New Roman"

    @pytest.mark.asyncio
    async def test_falls_back_to_pattern_sweep(self):
        """No generation service: shall/must sentences with a warning"""
        client = offline_client()
        agent = create_rfp_parser_agent(make_gateway(client))

        result = await agent.run(context_for(rfp_parsed_data={}))

        assert result.status == "warning"
        assert result.warnings[0].startswith("RFP parsed without generation service")
        requirements = result.data["section_c"]["requirements"]
        assert len(requirements) >= 3
        assert all("shall" in r["text"].lower() for r in requirements)
        assert len(result.data["section_m"]["factors"]) == 3

    @pytest.mark.asyncio
    async def test_provided_parse_skips_generation(self):
        client = offline_client()
        agent = create_rfp_parser_agent(make_gateway(client))

        result = await agent.run(context_for())

        assert result.status == "success"
        assert client.calls == []
        assert len(result.data["section_c"]["requirements"]) == 3
        assert result.data["section_m"]["factors"][0]["name"] == "Technical Approach"

    @pytest.mark.asyncio
    async def test_missing_rfp_text(self):
        agent = create_rfp_parser_agent(make_gateway(offline_client()))
        result = await agent.run(context_for(rfp_parsed_data={}, rfp_text=""))
        assert result.status == "error"

    def test_pattern_sweep_skips_non_requirements(self):
        text = "The Government will evaluate proposals.\n\nThe Offeror must provide a staffing plan for all sites."
        found = extract_requirements_by_pattern(text)
        assert len(found) == 1
        assert found[0]["id"] == "REQ-001"
        assert "staffing plan" in found[0]["text"]


# =============================================================================
# Content Mapper Agent
# =============================================================================

@pytest.mark.unit
class TestContentMapper:

    @pytest.mark.asyncio
    async def test_outlines_and_mapping(self):
        client = ScriptedLLMClient([
            json.dumps({"volume_1": {"volume_name": "Technical", "sections": [
                {"title": "Solution Overview", "page_allocation": 10},
                {"title": "Security Architecture", "page_allocation": 20},
            ]}}),
            json.dumps([
                {"req_id": "REQ-001", "requirement": "uptime", "volume": 2, "section": "Key Personnel"},
                {"req_id": "REQ-999", "requirement": "invented", "volume": 1, "section": "Solution Overview"},
            ]),
        ])
        agent = create_content_mapper_agent(make_gateway(client))

        result = await agent.run(context_for())

        assert result.status == "success"
        outlines = result.data
        assert [s["title"] for s in outlines["volume_1"]["sections"]] == ["Solution Overview", "Security Architecture"]
        assert [s["title"] for s in outlines["volume_2"]["sections"]] == list(VOLUME_CATALOGUE[2].default_sections)

        matrix = {m["req_id"]: m for m in outlines["compliance_matrix"]}
        assert set(matrix) == {"REQ-001", "REQ-002", "REQ-003"}
        assert matrix["REQ-001"]["volume"] == 2
        key_personnel = next(s for s in outlines["volume_2"]["sections"] if s["title"] == "Key Personnel")
        assert "REQ-001" in key_personnel["requirements_addressed"]

    @pytest.mark.asyncio
    async def test_default_outlines_when_offline(self):
        result = await create_content_mapper_agent(make_gateway(offline_client())).run(context_for())

        assert result.status == "warning"
        outline = result.data["volume_1"]
        assert outline["page_limit"] == 40
        assert [s["title"] for s in outline["sections"]] == list(VOLUME_CATALOGUE[1].default_sections)
        assert all(s["page_allocation"] == 10 for s in outline["sections"])
        # Every requirement is still placed somewhere
        assert len(result.data["compliance_matrix"]) == 3

    @pytest.mark.asyncio
    async def test_requires_parsed_rfp(self):
        result = await create_content_mapper_agent(make_gateway(offline_client())).run(context_for(rfp_parsed_data={}))
        assert result.status == "error"

    def test_guess_volume(self):
        assert guess_volume({"text": "Provide three past performance references"}) == 3
        assert guess_volume({"text": "Fully burdened labor rate for each category"}) == 4
        assert guess_volume({"text": "Describe the staffing plan"}) == 2
        assert guess_volume({"text": "Ensure 99.99% uptime"}) == 1


# =============================================================================
# Writer Agent
# =============================================================================

@pytest.mark.unit
class TestWriterAgent:

    @pytest.mark.asyncio
    async def test_writes_default_sections(self):
        """Empty outlines fall back to the volume's default sections"""
        prompts = []

        def reply(messages, task_type):
            prompts.append(messages[1].content)
            return "```html\n<h2>Section</h2><p>Body</p>\n```"

        client = ScriptedLLMClient(default=reply)
        progress = []

        async def report(percent, step):
            progress.append(percent)

        result = await create_writer_agent(make_gateway(client)).run(context_for(volume=1), progress=report)

        assert result.status == "success"
        assert result.data["sections_written"] == list(VOLUME_CATALOGUE[1].default_sections)
        assert result.data["failed_sections"] == []
        assert "```" not in result.data["content"]
        assert "Volume I: Technical" in result.data["content"]
        assert any('Write the "Executive Summary" section for the Technical Volume.' in p for p in prompts)
        assert sorted(progress) == [25, 50, 75, 100]

    @pytest.mark.asyncio
    async def test_failed_section_gets_marker(self):
        def reply(messages, task_type):
            if '"Risk Management"' in messages[1].content:
                raise GenerationError("overloaded")
            return "<h2>Section</h2><p>Body</p>"

        result = await create_writer_agent(make_gateway(ScriptedLLMClient(default=reply))).run(context_for(volume=1))

        assert result.status == "warning"
        assert result.data["failed_sections"] == ["Risk Management"]
        assert 'class="section-error"' in result.data["content"]
        assert result.warnings == ["Section failed: Risk Management"]

    @pytest.mark.asyncio
    async def test_all_sections_failing_is_an_error(self):
        result = await create_writer_agent(make_gateway(offline_client())).run(context_for(volume=2))

        assert result.status == "error"
        assert result.errors == ["All 4 sections of Volume 2 failed to generate"]

    def test_sanitize_content(self):
        assert sanitize_content("Sure! Here it is:\n<h2>A</h2>") == "<h2>A</h2>"
        assert sanitize_content("plain words") == "<div>plain words</div>"


# =============================================================================
# Compliance Agent
# =============================================================================

@pytest.mark.unit
class TestComplianceAgent:

    @pytest.mark.asyncio
    async def test_requirement_level_scoring(self):
        """Page check + 90 + 40 -> 2/3 checks pass; the 40 is critical"""
        client = ScriptedLLMClient([json.dumps({
            "requirementScores": [
                {"requirementId": "REQ-001", "requirementText": "uptime", "score": 90, "rationale": "Clear", "gaps": []},
                {"requirementId": "REQ-002", "requirementText": "failover", "score": 40, "rationale": "Thin",
                 "gaps": ["No failover timing"]},
            ],
            "strengths": ["Strong uptime story"],
            "criticalGaps": ["Failover"],
        })])
        agent = create_compliance_agent(make_gateway(client), PipelineConfig())

        result = await agent.run(context_for(volume=1, volumes={1: volume_body(1)}))

        data = result.data
        assert data["overall_score"] == 67
        assert data["estimated_win_probability"] == 20
        assert len(data["critical_fixes"]) == 1
        assert data["high_priority_fixes"] == []
        assert data["format_compliance"][0]["status"] == "pass"
        assert [r["score"] for r in data["requirement_scores"]] == [90, 40]
        assert data["critical_gaps"] == ["Failover"]
        assert result.status == "warning"

    @pytest.mark.asyncio
    async def test_substring_fallback(self):
        """75 when the requirement text appears in the volume, 40 when not"""
        content = volume_body(1) + "<p>" + GOLDEN_PARSED_RFP["section_c"]["requirements"][0]["text"] + "</p>"
        agent = create_compliance_agent(make_gateway(offline_client()), PipelineConfig())

        result = await agent.run(context_for(volume=1, volumes={1: content}))

        data = result.data
        assert [r["score"] for r in data["requirement_scores"]] == [75, 40, 40]
        assert data["overall_score"] == 50
        statuses = [c["status"] for c in data["content_compliance"]]
        assert statuses == ["pass", "warning", "warning"]
        assert len(data["critical_gaps"]) == 2

    @pytest.mark.asyncio
    async def test_page_limit_exceeded_is_critical(self):
        client = ScriptedLLMClient([json.dumps({"requirementScores": []})])
        agent = create_compliance_agent(make_gateway(client), PipelineConfig())

        result = await agent.run(context_for(volume=4, volumes={4: "x" * 3000 * 25}))

        assert result.data["format_compliance"][0]["status"] == "fail"
        assert result.data["overall_score"] == 0
        assert result.status == "warning"

    @pytest.mark.asyncio
    async def test_missing_content(self):
        agent = create_compliance_agent(make_gateway(offline_client()), PipelineConfig())
        result = await agent.run(context_for(volume=3))
        assert result.status == "error"

    def test_win_probability_table(self):
        assert estimate_win_probability(96, 0) == 85
        assert estimate_win_probability(91, 0) == 75
        assert estimate_win_probability(86, 0) == 65
        assert estimate_win_probability(80, 0) == 50
        assert estimate_win_probability(70, 0) == 40
        assert estimate_win_probability(30, 0) == 20
        assert estimate_win_probability(99, 2) == 10
        assert estimate_win_probability(99, 5) == 0


# =============================================================================
# Consultant Agent
# =============================================================================

SCORE_RESULT = {
    "overall_score": 65,
    "requirement_scores": [
        {"requirement_id": "REQ-001", "requirement_text": "uptime", "score": 60, "rationale": "Thin",
         "gaps": ["No SLA figures"]},
        {"requirement_id": "REQ-002", "requirement_text": "failover", "score": 85, "rationale": "Good", "gaps": []},
    ],
    "strengths": [],
    "critical_gaps": [],
}


@pytest.mark.unit
class TestConsultantAgent:

    @pytest.mark.asyncio
    async def test_plan_is_ranked_and_repeats_promoted(self):
        client = ScriptedLLMClient([json.dumps({
            "estimatedScoreIncrease": 12,
            "complianceGaps": [
                {"requirementId": "REQ-001", "requirement": "uptime", "currentIssue": "no SLA",
                 "recommendedFix": "Add SLA table", "priority": "medium", "estimatedScoreImpact": 3},
                {"requirementId": "REQ-002", "requirement": "failover", "currentIssue": "vague",
                 "recommendedFix": "Give timings", "priority": "high", "estimatedScoreImpact": 8},
            ],
            "recommendations": [{"category": "Compliance", "action": "Add SLA subsection", "rationale": "Required"}],
        })])
        agent = create_consultant_agent(make_gateway(client), PipelineConfig())
        history = [{"iteration": 1, "user_feedback": "Add SLAs", "issues_addressed": ["REQ-001"]}]

        result = await agent.run(
            context_for(volume=1, volumes={1: volume_body(1)}),
            score_result=SCORE_RESULT, iteration=1, history=history,
        )

        assert result.status == "success"
        gaps = result.data["compliance_gaps"]
        assert [(g["requirement_id"], g["priority"]) for g in gaps] == [("REQ-001", "critical"), ("REQ-002", "high")]
        assert result.data["iteration_context"]["repeated_issues"] == ["REQ-001"]
        assert result.data["estimated_score_increase"] == 12
        assert "PREVIOUS ITERATION HISTORY" in client.calls[0]["messages"][1].content

    @pytest.mark.asyncio
    async def test_fallback_derives_gaps_from_scores(self):
        agent = create_consultant_agent(make_gateway(offline_client()), PipelineConfig())

        result = await agent.run(context_for(volume=1, volumes={1: volume_body(1)}), score_result=SCORE_RESULT)

        assert result.status == "warning"
        gaps = result.data["compliance_gaps"]
        assert len(gaps) == 1
        assert gaps[0]["requirement_id"] == "REQ-001"
        assert gaps[0]["priority"] == "high"
        assert gaps[0]["estimated_score_impact"] == 5
        assert gaps[0]["current_issue"] == "No SLA figures"

    @pytest.mark.asyncio
    async def test_malformed_plan_uses_fallback(self):
        client = ScriptedLLMClient(['{"recommendations": []}'])
        agent = create_consultant_agent(make_gateway(client), PipelineConfig())

        result = await agent.run(context_for(volume=1, volumes={1: volume_body(1)}), score_result=SCORE_RESULT)

        assert result.status == "warning"
        assert "Invalid consultant response format" in result.warnings[0]


# =============================================================================
# Rewriter Agent
# =============================================================================

INSIGHTS = {
    "current_score": 65,
    "target_score": 85,
    "compliance_gaps": [{
        "requirement_id": "REQ-001", "requirement": "uptime", "current_issue": "no SLA",
        "recommended_fix": "Add an SLA table", "priority": "high", "estimated_score_impact": 5,
    }],
    "recommendations": [],
    "iteration_context": {"areas_to_preserve": ["Executive Summary"]},
}


@pytest.mark.unit
class TestRewriterAgent:

    @pytest.mark.asyncio
    async def test_two_pass_rewrite(self):
        client = ScriptedLLMClient(["<h2>Pass one</h2>", "```html\n<h2>Polished</h2>\n```"])
        agent = create_rewriter_agent(make_gateway(client), PipelineConfig())

        result = await agent.run(
            context_for(volume=1, volumes={1: volume_body(1)}),
            insights=INSIGHTS, user_feedback="Quantify uptime", iteration=1,
        )

        assert result.status == "success"
        assert result.data["rewritten_content"] == "<h2>Polished</h2>"
        assert [c["change_type"] for c in result.data["changes_applied"]] == [
            "user_feedback", "compliance_fix", "quality_enhancement",
        ]
        assert result.data["preserved_sections"] == ["Executive Summary"]
        pass1_prompt = client.calls[0]["messages"][1].content
        assert "USER FEEDBACK (HIGHEST PRIORITY)" in pass1_prompt
        assert "AREAS TO PRESERVE" in pass1_prompt

    @pytest.mark.asyncio
    async def test_pass1_failure_keeps_original(self):
        original = volume_body(1)
        agent = create_rewriter_agent(make_gateway(offline_client()), PipelineConfig())

        result = await agent.run(context_for(volume=1, volumes={1: original}), insights=INSIGHTS, iteration=1)

        assert result.status == "error"
        assert result.data["rewritten_content"] == original
        assert result.data["changes_applied"] == []

    @pytest.mark.asyncio
    async def test_pass2_failure_keeps_pass1(self):
        client = ScriptedLLMClient(["<h2>Pass one</h2>"], default=GenerationError("overloaded"))
        agent = create_rewriter_agent(make_gateway(client), PipelineConfig())

        result = await agent.run(
            context_for(volume=1, volumes={1: volume_body(1)}),
            insights=INSIGHTS, user_feedback="Shorter", iteration=2,
        )

        assert result.status == "warning"
        assert result.data["rewritten_content"] == "<h2>Pass one</h2>"
        assert [c["change_type"] for c in result.data["changes_applied"]] == ["user_feedback", "compliance_fix"]
        assert result.warnings[0].startswith("Quality pass skipped")

    @pytest.mark.asyncio
    async def test_nothing_to_rewrite(self):
        agent = create_rewriter_agent(make_gateway(offline_client()), PipelineConfig())
        result = await agent.run(context_for(volume=2), insights=INSIGHTS)
        assert result.status == "error"


# =============================================================================
# Packaging Agent
# =============================================================================

@pytest.mark.unit
class TestPackagingAgent:

    @pytest.mark.asyncio
    async def test_missing_volumes(self):
        context = context_for(volumes={1: volume_body(1), 2: volume_body(2)})
        result = await create_packaging_agent().run(context)

        assert result.status == "error"
        assert result.errors == ["Missing volume content: [3, 4]"]

    @pytest.mark.asyncio
    async def test_final_document(self):
        context = context_for(volumes={n: volume_body(n) for n in (1, 2, 3, 4)})
        result = await create_packaging_agent().run(context, page_counts={1: 3, 2: 3, 3: 3, 4: 3})

        html = result.data["final_html"]
        assert result.status == "success"
        assert html.startswith("<!DOCTYPE html>")
        assert f"Submitted by {COMPANY_NAME}" in html
        assert "47QTCA-26-R-0001" in html
        assert "Volume IV: Pricing" in html
        assert all(f'id="volume-{n}"' in html for n in (1, 2, 3, 4))
