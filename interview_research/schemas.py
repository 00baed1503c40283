import logging
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger("uvicorn.error")


Seniority = Literal["junior", "mid", "senior"]
QUESTION_CATEGORIES = (
    "behavioral",
    "technical",
    "situational",
    "company_specific",
    "role_specific",
    "experience_based",
    "cultural_fit",
)


def _clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class StartJobRequest(BaseModel):
    company: str = ""
    role: Optional[str] = None
    country: Optional[str] = None
    role_links: List[str] = Field(default_factory=list)
    cv: Optional[str] = None
    target_seniority: Optional[Seniority] = None
    user_id: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def normalize_inputs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("cv") and data.get("cv_text"):
            data["cv"] = data.pop("cv_text")
        data["company"] = str(data.get("company") or "").strip()
        for key in ("role", "country", "cv", "user_id"):
            data[key] = _clean_text(data.get(key))
        links = data.get("role_links") or []
        if isinstance(links, str):
            links = [part for part in links.replace(",", "\n").splitlines()]
        data["role_links"] = [str(link).strip() for link in links if str(link or "").strip()]
        seniority = data.get("target_seniority")
        if isinstance(seniority, str):
            seniority = seniority.strip().lower()
            data["target_seniority"] = seniority or None
        return data


class JobRequest(BaseModel):
    """The attributes a running job is researched under."""

    job_id: str
    company: str
    role: Optional[str] = None
    country: Optional[str] = None
    role_links: List[str] = Field(default_factory=list)
    cv_text: Optional[str] = None
    target_seniority: Optional[str] = None
    user_id: Optional[str] = None

    @classmethod
    def from_job(cls, job: Dict[str, Any]) -> "JobRequest":
        return cls(
            job_id=job["job_id"],
            company=job.get("company") or "",
            role=job.get("role"),
            country=job.get("country"),
            role_links=list(job.get("role_links") or []),
            cv_text=job.get("cv_text"),
            target_seniority=job.get("target_seniority"),
            user_id=job.get("user_id"),
        )


def _coerce_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, (str, int, float)):
        text = _clean_text(value)
        return [text] if text else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None]
    return []


def _coerce_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _coerce_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _validate_items(model: Type[BaseModel], items: Any, label: str) -> List[BaseModel]:
    if not isinstance(items, list):
        if items is not None:
            logger.warning("Synthesis %s was not a list; ignoring it", label)
        return []
    kept = []
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError as exc:
            logger.warning("Dropping unusable synthesis %s entry: %s", label, exc.errors()[:2])
    return kept


class InterviewStage(BaseModel):
    name: str = "Interview Stage"
    order_index: Optional[int] = None
    duration: Optional[str] = None
    interviewer: Optional[str] = None
    content: Optional[str] = None
    guidance: Optional[str] = None
    preparation_tips: List[str] = Field(default_factory=list)
    common_questions: List[str] = Field(default_factory=list)
    red_flags_to_avoid: List[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, value: Any) -> str:
        return _clean_text(value) or "Interview Stage"

    @field_validator("order_index", mode="before")
    @classmethod
    def coerce_order(cls, value: Any) -> Optional[int]:
        return _coerce_int(value)

    @field_validator("duration", "interviewer", "content", "guidance", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("preparation_tips", "common_questions", "red_flags_to_avoid", mode="before")
    @classmethod
    def coerce_list(cls, value: Any) -> List[str]:
        return _coerce_str_list(value)


class SynthesizedQuestion(BaseModel):
    question: str
    category: Optional[str] = None
    difficulty: Optional[str] = None
    rationale: Optional[str] = None
    suggested_answer_approach: Optional[str] = None
    evaluation_criteria: List[str] = Field(default_factory=list)
    follow_up_questions: List[str] = Field(default_factory=list)
    star_story_fit: bool = False
    company_context: Optional[str] = None
    confidence_score: Optional[float] = None

    model_config = {"extra": "allow"}

    @model_validator(mode="before")
    @classmethod
    def accept_bare_text(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"question": data}
        return data

    @field_validator(
        "question",
        "category",
        "difficulty",
        "rationale",
        "suggested_answer_approach",
        "company_context",
        mode="before",
    )
    @classmethod
    def coerce_text(cls, value: Any) -> Optional[str]:
        return _clean_text(value)

    @field_validator("evaluation_criteria", "follow_up_questions", mode="before")
    @classmethod
    def coerce_list(cls, value: Any) -> List[str]:
        return _coerce_str_list(value)

    @field_validator("star_story_fit", mode="before")
    @classmethod
    def coerce_flag(cls, value: Any) -> bool:
        if isinstance(value, str):
            return value.strip().lower() in ("true", "yes", "1")
        return bool(value)

    @field_validator("confidence_score", mode="before")
    @classmethod
    def coerce_confidence(cls, value: Any) -> Optional[float]:
        return _coerce_float(value)


class InterviewSynthesis(BaseModel):
    interview_stages: List[InterviewStage] = Field(default_factory=list)
    comparison_analysis: Dict[str, Any] = Field(default_factory=dict)
    interview_questions_data: Dict[str, List[SynthesizedQuestion]] = Field(default_factory=dict)
    preparation_guidance: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "allow"}

    @field_validator("interview_stages", mode="before")
    @classmethod
    def keep_usable_stages(cls, value: Any) -> List[BaseModel]:
        return _validate_items(InterviewStage, value, "stage")

    @field_validator("interview_questions_data", mode="before")
    @classmethod
    def keep_usable_questions(cls, value: Any) -> Dict[str, List[BaseModel]]:
        if not isinstance(value, dict):
            return {}
        return {
            str(key): _validate_items(SynthesizedQuestion, items, f"{key} question")
            for key, items in value.items()
            if isinstance(items, list)
        }

    @field_validator("comparison_analysis", "preparation_guidance", mode="before")
    @classmethod
    def require_mapping(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}

    @classmethod
    def empty(cls) -> "InterviewSynthesis":
        return cls()

    def question_count(self) -> int:
        return sum(len(items) for items in self.interview_questions_data.values())

    def overall_fit_score(self) -> float:
        raw = self.comparison_analysis.get("overall_fit_score")
        try:
            return float(raw)
        except (TypeError, ValueError):
            return 0.0

    def preparation_priorities(self) -> List[Any]:
        priorities = self.preparation_guidance.get("preparation_priorities")
        return list(priorities) if isinstance(priorities, list) else []
