import asyncio
import json
from typing import Any, Dict, List, Optional, Tuple

from interview_research.db import Database

COMPANY_MARKER = "You analyse interview reports"
JOB_MARKER = "You read job postings"
CV_MARKER = "You parse a candidate's CV"
SYNTHESIS_MARKER = "You are an interview preparation consultant"

DEFAULT_COMPANY_ANALYSIS = {
    "name": "Acme",
    "industry": "Software",
    "culture": "Ownership and speed",
    "values": ["Customer obsession", "Bias for action"],
    "interview_stages": [
        {"name": "Recruiter screen", "duration": "30 min", "common_questions": ["Why Acme?"]},
        {"name": "Onsite loop", "duration": "4 hours", "common_questions": ["Design a rate limiter"]},
    ],
    "interview_questions_bank": {
        "behavioral": ["Tell me about a time you disagreed with your manager."],
        "technical": ["Design a URL shortener."],
        "situational": [],
        "company_specific": ["Which Acme value resonates with you?"],
    },
}

DEFAULT_JOB_ANALYSIS = {
    "technical_skills": ["Python", "PostgreSQL"],
    "soft_skills": ["Communication"],
    "experience_level": "5+ years building backend services",
    "responsibilities": ["Own the billing platform"],
}

DEFAULT_CV_ANALYSIS = {
    "current_role": "Backend Engineer",
    "experience_years": 6,
    "skills": {"technical": ["Python", "Kafka"], "soft": ["Mentoring"], "certifications": []},
    "experience": [{"company": "Globex", "role": "Engineer", "duration": "4 years", "achievements": ["Cut p99 by 40%"]}],
    "key_achievements": ["Led the payments migration"],
}

DEFAULT_SYNTHESIS = {
    "interview_stages": [
        {
            "name": "Recruiter screen",
            "order_index": 1,
            "duration": "30 min",
            "interviewer": "Recruiter",
            "content": "Background and motivation",
            "guidance": "Be concise",
            "preparation_tips": ["Research Acme values"],
            "common_questions": ["Why Acme?"],
            "red_flags_to_avoid": ["Vague answers"],
        },
        {
            "name": "Technical interview",
            "order_index": 2,
            "duration": "60 min",
            "interviewer": "Senior engineer",
            "content": "Coding and design",
            "guidance": "Think aloud",
            "preparation_tips": "Practise system design",
            "common_questions": [],
            "red_flags_to_avoid": [],
        },
    ],
    "comparison_analysis": {"overall_fit_score": 72},
    "interview_questions_data": {
        "behavioral": [
            {
                "question": "Tell me about the payments migration you led at Globex.",
                "difficulty": "medium",
                "rationale": "Acme values ownership",
                "star_story_fit": True,
                "confidence_score": 0.9,
            }
        ],
        "technical": [
            {"question": "How would you design Acme's billing event pipeline?", "difficulty": "Hard"},
        ],
        "company_specific": ["Which Acme value do you most identify with?"],
    },
    "preparation_guidance": {"preparation_priorities": ["System design", "STAR stories"]},
}


def completion(content: Any, model: str = "test-model") -> Dict[str, Any]:
    text = content if isinstance(content, str) else json.dumps(content)
    return {
        "model": model,
        "_model_used": model,
        "choices": [{"index": 0, "message": {"role": "assistant", "content": text}}],
    }


def _kind(system_text: str) -> str:
    if system_text.startswith(COMPANY_MARKER):
        return "company"
    if system_text.startswith(JOB_MARKER):
        return "job"
    if system_text.startswith(CV_MARKER):
        return "cv"
    if system_text.startswith(SYNTHESIS_MARKER):
        return "synthesis"
    return "other"


class FakeCompletionClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-openai",
        responses: Optional[Dict[str, Any]] = None,
        delays: Optional[Dict[str, float]] = None,
        failures: Optional[Dict[str, BaseException]] = None,
    ) -> None:
        self.api_key = api_key
        self.responses = {
            "company": DEFAULT_COMPANY_ANALYSIS,
            "job": DEFAULT_JOB_ANALYSIS,
            "cv": DEFAULT_CV_ANALYSIS,
            "synthesis": DEFAULT_SYNTHESIS,
            "other": {},
        }
        self.responses.update(responses or {})
        self.delays = delays or {}
        self.failures = failures or {}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def calls_for(self, kind: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["kind"] == kind]

    async def chat_completion(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: Optional[float] = None,
        max_tokens: int = 512,
        response_format: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        system_text = messages[0]["content"] if messages else ""
        user_text = messages[-1]["content"] if messages else ""
        kind = _kind(system_text)
        self.calls.append(
            {
                "kind": kind,
                "model": model,
                "user": user_text,
                "max_tokens": max_tokens,
                "response_format": response_format,
            }
        )
        if self.delays.get(kind):
            await asyncio.sleep(self.delays[kind])
        if kind in self.failures:
            raise self.failures[kind]
        return completion(self.responses[kind], model=model)

    async def close(self) -> None:
        self.closed = True


def search_result(url: str, title: str, content: str, raw_content: Optional[str] = None) -> Dict[str, Any]:
    return {"url": url, "title": title, "content": content, "raw_content": raw_content, "score": 0.9}


DEFAULT_SEARCH_RESULTS = [
    search_result(
        "https://www.glassdoor.com/Interview/Acme-Interview-Questions-E1.htm",
        "Acme Software Engineer Interview Questions",
        "I interviewed at Acme in 2025. The interview rounds were a phone screen and an onsite interview.",
        "I interviewed at Acme in 2025. They asked me: How would you scale a billing service to millions of users? "
        "Then the interviewer asked: Tell me about a time you owned a production incident? "
        "The final round covered system design.",
    ),
    search_result(
        "https://blind.teamblind.com/post/acme-loop-2025",
        "Acme interview loop",
        "Interview loop was four rounds with a hiring committee review.",
    ),
]


class FakeTavilyClient:
    def __init__(
        self,
        api_key: Optional[str] = "test-tavily",
        search_response: Optional[Dict[str, Any]] = None,
        extract_response: Optional[Dict[str, Any]] = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.api_key = api_key
        self.search_response = search_response
        self.extract_response = extract_response
        self.delay_seconds = delay_seconds
        self.search_calls: List[Dict[str, Any]] = []
        self.extract_calls: List[Dict[str, Any]] = []
        self.closed = False

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "basic",
        max_results: int = 5,
        topic: Optional[str] = None,
        time_range: Optional[str] = None,
        include_domains: Optional[List[str]] = None,
        exclude_domains: Optional[List[str]] = None,
        include_answer: bool = True,
        include_raw_content: bool = False,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self.search_calls.append(
            {
                "query": query,
                "search_depth": search_depth,
                "max_results": max_results,
                "time_range": time_range,
                "include_domains": include_domains,
                "exclude_domains": exclude_domains,
                "include_raw_content": include_raw_content,
            }
        )
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.enabled:
            return {"error": "missing_api_key"}
        if self.search_response is not None:
            return self.search_response
        return {"answer": "Acme runs a four round loop.", "results": [dict(item) for item in DEFAULT_SEARCH_RESULTS]}

    async def extract(
        self,
        urls: List[str],
        extract_depth: str = "basic",
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        self.extract_calls.append({"urls": list(urls), "extract_depth": extract_depth})
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if not self.enabled:
            return {"error": "missing_api_key"}
        if self.extract_response is not None:
            return self.extract_response
        return {
            "results": [
                {
                    "url": url,
                    "title": "Senior Backend Engineer",
                    "raw_content": "Senior Backend Engineer at Acme. Requirements: Python, PostgreSQL, 5+ years. "
                    "You will own the billing platform.",
                }
                for url in urls
            ],
            "failed_results": [],
        }

    async def close(self) -> None:
        self.closed = True


class RecordingDatabase(Database):
    """Database that keeps every job status write in call order."""

    def __init__(self, path: str):
        super().__init__(path)
        self.status_writes: List[Tuple[str, Optional[str], Optional[int], bool]] = []

    async def update_progress(self, job_id: str, step: str, percentage: int) -> bool:
        ok = await super().update_progress(job_id, step, percentage)
        self.status_writes.append(("processing", step, percentage, ok))
        return ok

    async def mark_job_failed(self, job_id: str, error_message: str, step=None, percentage=None) -> bool:
        ok = await super().mark_job_failed(job_id, error_message, step=step, percentage=percentage)
        self.status_writes.append(("failed", step, percentage, ok))
        return ok

    async def complete_job(self, job_id: str, step: str, overall_fit_score: float, preparation_priorities) -> bool:
        ok = await super().complete_job(job_id, step, overall_fit_score, preparation_priorities)
        self.status_writes.append(("completed", step, 100, ok))
        return ok
