"""Single-shot synthesis of the interview preparation guide."""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import httpx
from pydantic import ValidationError

from .config import AppSettings
from .db import utc_now
from .errors import ConfigError, MalformedResponseError, TransientNetworkError
from .llm import CompletionClient, message_text, parse_json_content
from .schemas import InterviewSynthesis, JobRequest

logger = logging.getLogger("uvicorn.error")

SYSTEM_PROMPT = """You are an interview preparation consultant with deep knowledge of hiring practices at large technology companies.

Build a tailored preparation guide from the company research, job requirements and candidate profile you are given:
1. Four realistic interview stages that follow the company's reported process.
2. A CV-to-job comparison: matching and missing skills, relevant and missing experience, STAR stories, positioning, and an overall_fit_score from 0 to 100.
3. Thirty to fifty questions across the seven categories (five to eight each), built from the real reported questions and tied to the candidate's history, the role and the company.
4. Preparation guidance with a timeline and ranked preparation_priorities.

Every question must reference concrete details from the material. No generic placeholders.
Return only valid JSON in the requested structure, with no markdown and no commentary."""

SYNTHESIS_SCHEMA: Dict[str, Any] = {
    "interview_stages": [
        {
            "name": "Stage Name",
            "order_index": 1,
            "duration": "Duration estimate",
            "interviewer": "Who conducts",
            "content": "What to expect",
            "guidance": "How to approach",
            "preparation_tips": ["tip"],
            "common_questions": ["question"],
            "red_flags_to_avoid": ["flag"],
        }
    ],
    "comparison_analysis": {
        "skill_gap_analysis": {
            "matching_skills": {"technical": [], "soft": [], "certifications": []},
            "missing_skills": {"technical": [], "soft": []},
            "skill_match_percentage": {"technical": 0, "soft": 0, "overall": 0},
        },
        "experience_gap_analysis": {
            "relevant_experience": [{"experience": "", "relevance_score": 0.8, "how_to_highlight": ""}],
            "missing_experience": [{"requirement": "", "severity": "low|medium|high", "mitigation_strategy": ""}],
        },
        "personalized_story_bank": {
            "stories": [
                {"situation": "", "task": "", "action": "", "result": "", "applicable_questions": [], "impact_quantified": ""}
            ]
        },
        "interview_prep_strategy": {
            "strengths_to_emphasize": [],
            "weaknesses_to_address": [],
            "competitive_positioning": {"unique_value_proposition": "", "differentiation_points": []},
        },
        "overall_fit_score": 0,
    },
    "interview_questions_data": {
        "behavioral": [
            {
                "question": "Specific question",
                "category": "behavioral",
                "difficulty": "easy|medium|hard",
                "rationale": "Why it is asked here",
                "suggested_answer_approach": "",
                "evaluation_criteria": [],
                "follow_up_questions": [],
                "star_story_fit": True,
                "company_context": "",
                "confidence_score": 0.9,
            }
        ],
        "technical": [],
        "situational": [],
        "company_specific": [],
        "role_specific": [],
        "experience_based": [],
        "cultural_fit": [],
    },
    "preparation_guidance": {
        "preparation_timeline": {"weeks_before": [], "week_before": [], "day_before": [], "day_of": []},
        "preparation_priorities": [],
        "personalized_guidance": {"strengths_to_highlight": [], "areas_to_improve": [], "suggested_stories": []},
    },
}

def _bullets(title: str, items: Any, quoted: bool = False, numbered: bool = False) -> List[str]:
    if not isinstance(items, list) or not items:
        return []
    lines = [f"{title}:"]
    for idx, item in enumerate(items, start=1):
        text = f'"{item}"' if quoted else str(item)
        lines.append(f"{idx}. {text}" if numbered else f"  - {text}")
    return lines


def _section(header: str, body: Iterable[str]) -> List[str]:
    body = [line for line in body if line is not None]
    if not body:
        return []
    return [f"=== {header} ===", *body, ""]


def _question_bank(company: str, insights: Dict[str, Any]) -> List[str]:
    bank = insights.get("interview_questions_bank") or {}
    if not isinstance(bank, dict):
        return []
    lines: List[str] = []
    for key, label in (
        ("behavioral", "BEHAVIORAL"),
        ("technical", "TECHNICAL"),
        ("situational", "SITUATIONAL"),
        ("company_specific", "COMPANY-SPECIFIC"),
    ):
        questions = bank.get(key) or []
        lines.extend(_bullets(f"{label} QUESTIONS ({len(questions)} found)", questions, quoted=True, numbered=True))
    if not lines:
        return []
    return [
        f"Questions candidates report being asked at {company}. Use them as the foundation.",
        *lines,
    ]


def _company_section(insights: Dict[str, Any], reported: List[str]) -> List[str]:
    values = insights.get("values") or []
    lines = [
        f"Industry: {insights.get('industry') or 'Not specified'}",
        f"Culture: {insights.get('culture') or 'Not specified'}",
        f"Values: {', '.join(str(v) for v in values) if values else 'Not specified'}",
        f"Interview Philosophy: {insights.get('interview_philosophy') or 'Not specified'}",
        f"Recent Hiring Trends: {insights.get('recent_hiring_trends') or 'Not specified'}",
    ]
    stages = insights.get("interview_stages") or []
    if stages:
        lines.append("INTERVIEW PROCESS (from candidate reports):")
        for idx, stage in enumerate(stages, start=1):
            if not isinstance(stage, dict):
                continue
            lines.append(f"Stage {stage.get('order_index') or idx}: {stage.get('name') or 'Unnamed'}")
            lines.append(f"  Duration: {stage.get('duration') or 'Not specified'}")
            lines.append(f"  Interviewer: {stage.get('interviewer') or 'Not specified'}")
            lines.append(f"  What to Expect: {stage.get('content') or 'Not specified'}")
            for question in stage.get("common_questions") or []:
                lines.append(f'    - "{question}"')
    experiences = insights.get("interview_experiences") or {}
    if isinstance(experiences, dict):
        if experiences.get("difficulty_rating"):
            lines.append(f"Difficulty Rating: {experiences['difficulty_rating']}")
        if experiences.get("process_duration"):
            lines.append(f"Typical Process Duration: {experiences['process_duration']}")
        lines.extend(_bullets("Common Challenges", experiences.get("negative_feedback")))
        lines.extend(_bullets("Recurring Themes", experiences.get("common_themes")))
    hiring = insights.get("hiring_manager_insights") or {}
    if isinstance(hiring, dict):
        lines.extend(_bullets("What They Look For", hiring.get("what_they_look_for")))
        lines.extend(_bullets("Success Factors", hiring.get("success_factors")))
        lines.extend(_bullets("Red Flags (Avoid These)", hiring.get("red_flags")))
    lines.extend(_bullets("Questions found verbatim in sources", reported, quoted=True))
    return lines


def _job_section(requirements: Dict[str, Any]) -> List[str]:
    lines = []
    if requirements.get("experience_level"):
        lines.append(f"Required Experience Level: {requirements['experience_level']}")
    lines.extend(_bullets("Technical Skills Required", requirements.get("technical_skills")))
    lines.extend(_bullets("Soft Skills Required", requirements.get("soft_skills")))
    lines.extend(_bullets("Key Responsibilities", requirements.get("responsibilities")))
    lines.extend(_bullets("Required Qualifications", requirements.get("qualifications")))
    lines.extend(_bullets("Nice to Have", requirements.get("nice_to_have")))
    lines.extend(_bullets("Interview Process Hints", requirements.get("interview_process_hints")))
    return lines


def _profile_section(profile: Dict[str, Any], seniority: str) -> List[str]:
    lines = [
        f"Current Role: {profile.get('current_role') or 'Not specified'}",
        f"Total Experience: {profile.get('experience_years') or 0} years",
        f"Target Seniority Level: {seniority}",
    ]
    history = profile.get("experience") or []
    if isinstance(history, list) and history:
        lines.append("WORK HISTORY:")
        for idx, item in enumerate(history, start=1):
            if not isinstance(item, dict):
                lines.append(f"{idx}. {item}")
                continue
            lines.append(
                f"{idx}. {item.get('role') or 'Role'} at {item.get('company') or 'Company'} "
                f"({item.get('duration') or 'Duration not specified'})"
            )
            for achievement in item.get("achievements") or []:
                lines.append(f"     - {achievement}")
    skills = profile.get("skills") or {}
    if isinstance(skills, dict):
        lines.extend(_bullets("TECHNICAL SKILLS", skills.get("technical")))
        lines.extend(_bullets("SOFT SKILLS", skills.get("soft")))
        lines.extend(_bullets("CERTIFICATIONS", skills.get("certifications")))
    lines.extend(_bullets("NOTABLE PROJECTS", profile.get("projects"), numbered=True))
    lines.extend(_bullets("KEY ACHIEVEMENTS", profile.get("key_achievements"), numbered=True))
    education = profile.get("education") or {}
    if isinstance(education, dict) and (education.get("degree") or education.get("institution")):
        lines.append(
            f"EDUCATION: {education.get('degree') or 'Not specified'}, {education.get('institution') or 'Not specified'}"
        )
    return lines


def _fit(lines: List[str], budget: int) -> List[str]:
    """Keep whole lines until the character budget is spent."""
    kept: List[str] = []
    used = 0
    for line in lines:
        cost = len(line) + 1
        if used + cost > budget:
            remaining = budget - used
            if remaining > 40:
                kept.append(line[: remaining - 1])
            break
        kept.append(line)
        used += cost
    return kept


def build_prompt(job: JobRequest, gathered: Dict[str, Optional[Dict[str, Any]]], settings: AppSettings) -> str:
    limits = settings.synthesis
    seniority = job.target_seniority or "mid"
    company_raw = gathered.get("company_research") or {}
    job_raw = gathered.get("job_research") or {}
    cv_raw = gathered.get("cv_research") or {}
    insights = company_raw.get("company_insights") if isinstance(company_raw, dict) else None
    requirements = job_raw.get("job_requirements") if isinstance(job_raw, dict) else None
    profile = cv_raw.get("cv_analysis") if isinstance(cv_raw, dict) else None

    header = [
        "Create a tailored interview preparation guide for:",
        f"Company: {job.company}",
    ]
    if job.role:
        header.append(f"Role: {job.role}")
    if job.country:
        header.append(f"Country: {job.country}")
    if job.target_seniority:
        header.append(f"Candidate Seniority: {job.target_seniority}")
    header.append("")

    # Per-source budgets first, then the whole context budget.
    body: List[str] = []
    if isinstance(insights, dict):
        body += _fit(
            _section("REAL INTERVIEW QUESTIONS FROM CANDIDATE REPORTS", _question_bank(job.company, insights)),
            limits.source_snippet_chars,
        )
        reported = company_raw.get("reported_questions") or []
        body += _fit(
            _section("COMPANY RESEARCH & INTERVIEW INSIGHTS", _company_section(insights, reported)),
            limits.deep_extract_chars,
        )
    if isinstance(requirements, dict):
        body += _fit(_section("JOB REQUIREMENTS & RESPONSIBILITIES", _job_section(requirements)), limits.source_snippet_chars)
    if isinstance(profile, dict):
        body += _fit(
            _section("CANDIDATE PROFILE (TAILOR QUESTIONS TO THIS BACKGROUND)", _profile_section(profile, seniority)),
            limits.source_snippet_chars,
        )
    instructions = [
        "=== SYNTHESIS REQUIREMENTS ===",
        "1. Use the reported questions above as the foundation; write tailored variations and extensions.",
        "2. Tie every question to the candidate's history, the role's responsibilities and the company's values.",
        "3. Generate 5-8 questions per category (30-50 total).",
        f"4. Match question complexity to a {seniority}-level candidate.",
        f"5. Explain in each rationale why {job.company} would ask it.",
        "6. Map the candidate's experience to STAR stories for behavioral questions.",
        "",
        "Return this exact JSON structure:",
        json.dumps(SYNTHESIS_SCHEMA, indent=2),
    ]
    context = "\n".join(_fit(body, limits.context_chars))
    return "\n".join(header) + "\n" + context + "\n" + "\n".join(instructions)


def parse_synthesis(text: str) -> InterviewSynthesis:
    """Parse completion text leniently.

    Fields are coerced one by one and unusable stages or questions are dropped
    individually. The empty result is the last resort for text that is not a JSON object.
    """
    parsed = parse_json_content(text)
    if not isinstance(parsed, dict):
        logger.warning("Synthesis output was not a JSON object; using empty fallback")
        return InterviewSynthesis.empty()
    try:
        return InterviewSynthesis.model_validate(parsed)
    except ValidationError as exc:
        logger.warning("Synthesis output failed validation; using empty fallback: %s", exc.errors()[:3])
        return InterviewSynthesis.empty()


@dataclass
class SynthesisBundle:
    result: InterviewSynthesis
    synthesis_metadata: Dict[str, Any] = field(default_factory=dict)

    def as_record(self) -> Dict[str, Any]:
        record = self.result.model_dump()
        record["synthesis_metadata"] = dict(self.synthesis_metadata)
        return record


class SynthesisEngine:
    def __init__(self, llm: CompletionClient, settings: AppSettings):
        self.llm = llm
        self.settings = settings

    async def synthesize(
        self,
        job: JobRequest,
        gathered: Dict[str, Optional[Dict[str, Any]]],
    ) -> Optional[SynthesisBundle]:
        """Issue exactly one completion. Returns None when the call itself fails."""
        cfg = self.settings.synthesis
        prompt = build_prompt(job, gathered, self.settings)
        try:
            response = await self.llm.chat_completion(
                model=cfg.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                max_tokens=cfg.max_tokens,
                response_format={"type": "json_object"},
                timeout=self.settings.timeouts.synthesis_s,
            )
        except (ConfigError, TransientNetworkError, httpx.HTTPError) as exc:
            logger.error("Job %s synthesis call failed: %s", job.job_id, exc)
            return None
        except MalformedResponseError as exc:
            logger.warning("Job %s synthesis body was not JSON: %s", job.job_id, exc)
            response = {}

        result = parse_synthesis(message_text(response))
        logger.info(
            "Job %s synthesis complete: %s stages, %s questions",
            job.job_id,
            len(result.interview_stages),
            result.question_count(),
        )
        metadata = {
            "model": (response or {}).get("_model_used") or cfg.model,
            "max_tokens": cfg.max_tokens,
            "timestamp": utc_now(),
        }
        return SynthesisBundle(result=result, synthesis_metadata=metadata)
