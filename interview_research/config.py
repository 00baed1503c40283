import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from dotenv import load_dotenv

CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "INTERVIEW_RESEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}

DEFAULT_ALLOWED_DOMAINS = [
    "glassdoor.com",
    "levels.fyi",
    "blind.teamblind.com",
    "linkedin.com",
    "indeed.com",
    "1point3acres.com",
    "reddit.com",
    "interviewing.io",
    "leetcode.com",
    "geeksforgeeks.org",
    "interviewbit.com",
    "pramp.com",
    "educative.io",
]


class TimeoutConfig(BaseModel):
    company_research_s: float = 20.0
    job_analysis_s: float = 20.0
    cv_analysis_s: float = 15.0
    total_gather_s: float = 35.0
    tavily_search_s: float = 15.0
    tavily_extract_s: float = 20.0
    completion_s: float = 25.0
    synthesis_s: float = 90.0
    db_checkpoint_s: float = 30.0


class RetryConfig(BaseModel):
    max_retries: int = 2
    initial_delay_s: float = 1.0


class CacheConfig(BaseModel):
    max_age_days: int = 7
    min_quality: float = 0.6
    lookup_limit: int = 20
    hydrate_limit: int = 10
    high_quality_score: float = 0.7
    skip_search_min_high_quality: int = 8
    company_skip_min_entries: int = 5
    exclude_domain_min_entries: int = 3


class SearchConfig(BaseModel):
    search_depth: str = "basic"
    max_results: int = 3
    max_queries: int = 2
    time_range: Optional[str] = "year"
    allowed_domains: List[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_DOMAINS))
    job_extract_depth: str = "advanced"
    job_max_urls: int = 5
    deep_extract: bool = False
    deep_extract_max_urls: int = 5
    interview_url_limit: int = 15


class ProgressConfig(BaseModel):
    stall_threshold_s: int = 30
    retry_escalation_s: int = 45
    estimate_cap_s: int = 60


class SynthesisConfig(BaseModel):
    model: str = "gpt-4o"
    max_tokens: int = 8000
    company_analysis_max_tokens: int = 5000
    job_analysis_max_tokens: int = 3000
    cv_analysis_max_tokens: int = 3000
    source_snippet_chars: int = 4500
    deep_extract_chars: int = 6000
    job_posting_chars: int = 3000
    context_chars: int = 32000

    model_config = {"protected_namespaces": ()}


class AppSettings(BaseModel):
    tavily_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base_url: str = "https://api.openai.com/v1"
    database_path: str = "interview_research.db"
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"
    timeouts: TimeoutConfig = Field(default_factory=TimeoutConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    progress: ProgressConfig = Field(default_factory=ProgressConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        for key in ("tavily_api_key", "openai_api_key"):
            if data.get(key):
                data[key] = "********"
        return data

    model_config = {"protected_namespaces": ()}


def _load_from_env() -> dict:
    load_dotenv()
    env_map = {
        "tavily_api_key": os.getenv("TAVILY_API_KEY"),
        "openai_api_key": os.getenv("OPENAI_API_KEY"),
        "openai_base_url": os.getenv("OPENAI_BASE_URL"),
        "openai_model": os.getenv("OPENAI_MODEL"),
        "database_path": os.getenv("DATABASE_PATH"),
        "host": os.getenv("HOST"),
        "port": os.getenv("PORT"),
        "log_level": os.getenv("LOG_LEVEL"),
        "stall_threshold_s": os.getenv("STALL_THRESHOLD_S"),
        "cache_max_age_days": os.getenv("CACHE_MAX_AGE_DAYS"),
        "cache_min_quality": os.getenv("CACHE_MIN_QUALITY"),
        "max_retries": os.getenv("MAX_RETRIES"),
        "retry_initial_delay_s": os.getenv("RETRY_INITIAL_DELAY_S"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    if "port" in cleaned:
        cleaned["port"] = int(cleaned["port"])
    if "stall_threshold_s" in cleaned:
        cleaned["stall_threshold_s"] = int(cleaned["stall_threshold_s"])
    if "cache_max_age_days" in cleaned:
        cleaned["cache_max_age_days"] = int(cleaned["cache_max_age_days"])
    if "cache_min_quality" in cleaned:
        cleaned["cache_min_quality"] = float(cleaned["cache_min_quality"])
    if "max_retries" in cleaned:
        cleaned["max_retries"] = int(cleaned["max_retries"])
    if "retry_initial_delay_s" in cleaned:
        cleaned["retry_initial_delay_s"] = float(cleaned["retry_initial_delay_s"])
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _nest_env_values(env_data: Dict[str, Any]) -> Dict[str, Any]:
    """Move flat env values into the nested section they configure."""
    nested: Dict[str, Any] = {}
    section_keys = {
        "openai_model": ("synthesis", "model"),
        "stall_threshold_s": ("progress", "stall_threshold_s"),
        "cache_max_age_days": ("cache", "max_age_days"),
        "cache_min_quality": ("cache", "min_quality"),
        "max_retries": ("retry", "max_retries"),
        "retry_initial_delay_s": ("retry", "initial_delay_s"),
    }
    for key, value in env_data.items():
        if key in section_keys:
            section, field = section_keys[key]
            nested.setdefault(section, {})[field] = value
        else:
            nested[key] = value
    return nested


def _merge_sections(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    env_data = _nest_env_values(_load_from_env())
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text())
        except (OSError, ValueError):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge_sections(file_data, env_data)
    else:
        merged = _merge_sections(env_data, file_data)
    for key in ("tavily_api_key", "openai_api_key"):
        if not merged.get(key) and env_data.get(key):
            merged[key] = env_data[key]
    return AppSettings(**merged)

