import json

import pytest

from interview_research.config import AppSettings, SynthesisConfig
from interview_research.errors import MalformedResponseError, TransientNetworkError
from interview_research.schemas import JobRequest
from interview_research.synthesis import SynthesisEngine, build_prompt, parse_synthesis
from tests.fakes import DEFAULT_COMPANY_ANALYSIS, DEFAULT_CV_ANALYSIS, DEFAULT_JOB_ANALYSIS, FakeCompletionClient

JOB = JobRequest(job_id="job-1", company="Acme", role="Backend Engineer", target_seniority="senior")
GATHERED = {
    "company_research": {
        "company_insights": DEFAULT_COMPANY_ANALYSIS,
        "reported_questions": ["How would you scale a billing service?"],
    },
    "job_research": {"job_requirements": DEFAULT_JOB_ANALYSIS},
    "cv_research": {"cv_analysis": DEFAULT_CV_ANALYSIS},
}


def test_parse_synthesis_accepts_fenced_json():
    text = "```json\n" + json.dumps({"interview_stages": [{"name": "Screen"}]}) + "\n```"
    result = parse_synthesis(text)
    assert [stage.name for stage in result.interview_stages] == ["Screen"]


def test_parse_synthesis_falls_back_on_garbage():
    result = parse_synthesis("I could not do that")
    assert result.interview_stages == []
    assert result.question_count() == 0
    assert result.overall_fit_score() == 0.0


def test_parse_synthesis_falls_back_on_wrong_shape():
    result = parse_synthesis(json.dumps({"interview_stages": "four of them"}))
    assert result.interview_stages == []


def test_parse_synthesis_tolerates_loose_questions():
    text = json.dumps(
        {
            "interview_questions_data": {
                "behavioral": ["Why Acme?", {"question": "Tell me about a conflict.", "difficulty": "hard"}],
                "notes": "not a list",
            },
            "preparation_guidance": {"preparation_priorities": ["Design"]},
        }
    )
    result = parse_synthesis(text)
    assert result.question_count() == 2
    assert "notes" not in result.interview_questions_data
    assert result.preparation_priorities() == ["Design"]


def test_parse_synthesis_keeps_guide_when_one_question_is_malformed():
    text = json.dumps(
        {
            "interview_stages": [
                {"name": "Recruiter screen", "order_index": 1, "preparation_tips": "Know the product"},
                {"name": "Onsite", "order_index": "Stage 2", "common_questions": ["Design a queue"]},
            ],
            "comparison_analysis": {"overall_fit_score": 72},
            "interview_questions_data": {
                "behavioral": [
                    {"question": "Tell me about a conflict.", "confidence_score": 0.9},
                    {
                        "question": "Describe a failed launch.",
                        "confidence_score": "high",
                        "evaluation_criteria": "Ownership",
                        "star_story_fit": "yes",
                    },
                    {"difficulty": "Hard"},
                ],
            },
            "preparation_guidance": {"preparation_priorities": ["System design"]},
        }
    )
    result = parse_synthesis(text)
    assert [stage.name for stage in result.interview_stages] == ["Recruiter screen", "Onsite"]
    assert result.interview_stages[0].preparation_tips == ["Know the product"]
    assert result.interview_stages[1].order_index is None
    assert result.overall_fit_score() == 72.0
    assert result.preparation_priorities() == ["System design"]

    questions = result.interview_questions_data["behavioral"]
    assert [q.question for q in questions] == ["Tell me about a conflict.", "Describe a failed launch."]
    assert questions[0].confidence_score == 0.9
    assert questions[1].confidence_score is None
    assert questions[1].evaluation_criteria == ["Ownership"]
    assert questions[1].star_story_fit is True


def test_parse_synthesis_ignores_non_mapping_sections():
    result = parse_synthesis(
        json.dumps({"interview_stages": [{"name": "Screen"}], "comparison_analysis": "strong fit"})
    )
    assert [stage.name for stage in result.interview_stages] == ["Screen"]
    assert result.comparison_analysis == {}
    assert result.overall_fit_score() == 0.0


def test_build_prompt_includes_every_source():
    prompt = build_prompt(JOB, GATHERED, AppSettings())
    assert "Company: Acme" in prompt
    assert "Candidate Seniority: senior" in prompt
    assert "Tell me about a time you disagreed with your manager." in prompt
    assert "How would you scale a billing service?" in prompt
    assert "PostgreSQL" in prompt
    assert "Backend Engineer" in prompt
    assert '"interview_questions_data"' in prompt


def test_build_prompt_with_missing_sources():
    prompt = build_prompt(JOB, {"company_research": None, "job_research": None, "cv_research": None}, AppSettings())
    assert "Company: Acme" in prompt
    assert "JOB REQUIREMENTS" not in prompt


def test_build_prompt_respects_context_budget():
    settings = AppSettings(synthesis=SynthesisConfig(context_chars=200))
    small = build_prompt(JOB, GATHERED, settings)
    full = build_prompt(JOB, GATHERED, AppSettings())
    assert len(small) < len(full)


@pytest.mark.asyncio
async def test_synthesize_returns_bundle_with_metadata():
    llm = FakeCompletionClient()
    bundle = await SynthesisEngine(llm, AppSettings()).synthesize(JOB, GATHERED)
    assert bundle is not None
    assert len(bundle.result.interview_stages) == 2
    assert bundle.synthesis_metadata["model"] == "gpt-4o"
    assert bundle.synthesis_metadata["max_tokens"] == 8000
    assert len(llm.calls_for("synthesis")) == 1
    record = bundle.as_record()
    assert record["synthesis_metadata"]["timestamp"]


@pytest.mark.asyncio
async def test_synthesize_transport_failure_returns_none():
    llm = FakeCompletionClient(failures={"synthesis": TransientNetworkError("down", service="completion")})
    bundle = await SynthesisEngine(llm, AppSettings()).synthesize(JOB, GATHERED)
    assert bundle is None


@pytest.mark.asyncio
async def test_synthesize_malformed_body_uses_fallback():
    llm = FakeCompletionClient(failures={"synthesis": MalformedResponseError("not json")})
    bundle = await SynthesisEngine(llm, AppSettings()).synthesize(JOB, GATHERED)
    assert bundle is not None
    assert bundle.result.interview_stages == []
