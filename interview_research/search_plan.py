"""Discovery query templates and the heuristics used to rank fetched content."""
import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urlparse

COMPANY_TICKERS = {
    "amazon": "AMZN",
    "microsoft": "MSFT",
    "google": "GOOGL",
    "alphabet": "GOOGL",
    "meta": "META",
    "facebook": "META",
    "apple": "AAPL",
    "netflix": "NFLX",
    "tesla": "TSLA",
    "nvidia": "NVDA",
    "salesforce": "CRM",
    "oracle": "ORCL",
    "uber": "UBER",
    "airbnb": "ABNB",
    "stripe": "STRIPE",
    "snowflake": "SNOW",
    "databricks": "DATABRICKS",
    "palantir": "PLTR",
    "coinbase": "COIN",
    "shopify": "SHOP",
    "zoom": "ZM",
    "slack": "CRM",
    "github": "MSFT",
    "linkedin": "MSFT",
    "bytedance": "BDNCE",
    "tiktok": "BDNCE",
    "openai": "OPENAI",
    "anthropic": "ANTHROPIC",
}

# Ordered by expected yield; only the first ``max_queries`` are issued.
QUERY_TEMPLATES: Dict[str, List[str]] = {
    "glassdoor": [
        "{company} {role} Interview Questions & Answers site:glassdoor.com/Interview",
        "{company} interview process {role} site:glassdoor.com",
        '"{company}" interview experience review site:glassdoor.com',
        "{company} {role} interview difficulty rating site:glassdoor.com",
    ],
    "blind": [
        "{ticker} interview {role} site:blind.teamblind.com",
        "interview {ticker} {role} experience site:blind.teamblind.com",
        '"{company}" interview process rounds site:blind.teamblind.com',
    ],
    "reddit": [
        "{company} {role} interview experience site:reddit.com/r/cscareerquestions",
        "{company} interview process site:reddit.com/r/ExperiencedDevs",
        "{company} {role} onsite interview site:reddit.com",
    ],
    "technical": [
        "{company} {role} coding interview site:leetcode.com/discuss",
        "{company} system design interview site:interviewing.io",
        "{company} technical interview questions site:interviewbit.com",
    ],
    "international": [
        "{company} {role} interview site:1point3acres.com",
    ],
    "general": [
        "{company} {role} interview site:levels.fyi",
        '"{company}" interview timeline process stages',
        "{company} hiring manager interview tips advice",
    ],
}

INTERVIEW_URL_PATTERNS = [
    "/interview",
    "blind.teamblind.com",
    "1point3acres.com",
    "levels.fyi",
    "reddit.com/r/cscareerquestions",
    "reddit.com/r/experienceddevs",
    "reddit.com/r/itcareerquestions",
    "leetcode.com/discuss",
    "interviewing.io",
    "interview",
]

EXPERIENCE_PATTERNS = [
    "i interviewed at",
    "just finished my",
    "my interview experience",
    "went through the process",
    "interview rounds were",
    "they asked me",
    "the interviewer",
    "phone screen",
    "onsite interview",
    "virtual interview",
    "coding challenge",
    "system design",
    "behavioral questions",
    "technical questions",
    "final round",
    "offer negotiation",
    "interview feedback",
    "preparation tips",
    "what to expect",
    "interview format",
    "difficulty level",
    "interview duration",
    "follow up questions",
]

FORUM_PATTERNS = {
    "glassdoor": ["interview rating", "difficulty rating", "overall experience"],
    "blind": ["tc:", "total compensation", "interview loop", "hiring committee"],
    "reddit": ["[update]", "[experience]", "ama", "ask me anything"],
    "leetcode": ["interview question", "company tag", "difficulty:"],
}

DOMAIN_BONUS = {
    "glassdoor.com/interview": 5,
    "blind.teamblind.com": 4,
    "levels.fyi": 3,
    "reddit.com/r/cscareerquestions": 3,
    "1point3acres.com": 2,
    "leetcode.com/discuss": 2,
}

FRESH_MARKERS = ("2024", "2025", "2026")

CONTENT_TYPES = (
    "interview_review",
    "interview_questions",
    "job_posting",
    "forum_discussion",
    "company_info",
    "profile",
    "general",
)

_WHITESPACE = re.compile(r"\s+")
_QUESTION_LINE = re.compile(r"[^.?!\n]{12,240}\?")


def company_ticker(company: str) -> str:
    key = (company or "").strip().lower()
    return COMPANY_TICKERS.get(key) or (company or "").strip().upper()


def build_query(template: str, company: str, role: Optional[str] = None, ticker: Optional[str] = None) -> str:
    query = (
        template.replace("{company}", company)
        .replace("{role}", role or "")
        .replace("{ticker}", ticker or company_ticker(company))
    )
    return _WHITESPACE.sub(" ", query).strip()


def discovery_queries(company: str, role: Optional[str] = None, max_queries: Optional[int] = None) -> List[str]:
    ticker = company_ticker(company)
    queries: List[str] = []
    seen = set()
    # Interleave sources so a small budget still spans more than one site.
    columns = list(QUERY_TEMPLATES.values())
    depth = max(len(col) for col in columns)
    for idx in range(depth):
        for col in columns:
            if idx >= len(col):
                continue
            query = build_query(col[idx], company, role, ticker)
            if query in seen:
                continue
            seen.add(query)
            queries.append(query)
    if max_queries is not None:
        return queries[: max(0, max_queries)]
    return queries


def domain_of(url: str) -> str:
    try:
        host = urlparse(url).netloc.lower()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def score_interview_url(item: Dict[str, Any]) -> int:
    url = str(item.get("url") or "").lower()
    title = str(item.get("title") or "").lower()
    content = str(item.get("content") or "").lower()
    score = 0
    for pattern in INTERVIEW_URL_PATTERNS:
        if pattern in url:
            score += 3
        if pattern in title:
            score += 2
        if pattern in content:
            score += 1
    for pattern in EXPERIENCE_PATTERNS:
        if pattern in title:
            score += 2
        if pattern in content:
            score += 1
    for platform, patterns in FORUM_PATTERNS.items():
        if platform not in url:
            continue
        for pattern in patterns:
            if pattern in title or pattern in content:
                score += 2
    for fragment, bonus in DOMAIN_BONUS.items():
        if fragment in url:
            score += bonus
    if any(marker in title or marker in content for marker in FRESH_MARKERS):
        score += 2
    return score


def extract_interview_review_urls(
    search_results: Iterable[Dict[str, Any]],
    limit: int = 15,
    min_score: int = 3,
) -> List[str]:
    """Rank result URLs by how likely they are to hold candidate interview reports."""
    scores: Dict[str, int] = {}
    for response in search_results:
        for item in (response or {}).get("results") or []:
            url = item.get("url")
            if not url:
                continue
            score = score_interview_url(item)
            if score >= min_score and score > scores.get(url, -1):
                scores[url] = score
    ranked = sorted(scores.items(), key=lambda pair: pair[1], reverse=True)
    return [url for url, _ in ranked[:limit]]


def classify_content_type(url: str, title: Optional[str], content: Optional[str]) -> str:
    url_l = (url or "").lower()
    text = f"{title or ''} {content or ''}".lower()
    if any(marker in url_l for marker in ("/jobs/", "/job/", "careers", "greenhouse.io", "lever.co", "workday")):
        return "job_posting"
    if "glassdoor.com/interview" in url_l or "interview experience" in text or "i interviewed" in text:
        return "interview_review"
    if "interview questions" in text or "leetcode.com/discuss" in url_l:
        return "interview_questions"
    if any(site in url_l for site in ("reddit.com", "teamblind.com", "1point3acres.com")):
        return "forum_discussion"
    if "about us" in text or "our mission" in text or "culture" in text:
        return "company_info"
    return "general"


def assess_content_quality(
    content: Optional[str],
    title: Optional[str],
    url: str,
    content_type: str = "general",
) -> float:
    """Score in [0, 1]: length, interview signal, source and freshness."""
    text = (content or "").lower()
    title_l = (title or "").lower()
    url_l = (url or "").lower()
    words = len(text.split())
    score = 0.2
    if words >= 800:
        score += 0.25
    elif words >= 300:
        score += 0.2
    elif words >= 100:
        score += 0.1
    elif words < 30:
        score -= 0.1
    signals = sum(1 for pattern in EXPERIENCE_PATTERNS if pattern in text or pattern in title_l)
    score += min(0.25, signals * 0.05)
    if len(_QUESTION_LINE.findall(content or "")) >= 3:
        score += 0.1
    if any(fragment in url_l for fragment in DOMAIN_BONUS):
        score += 0.1
    if content_type in ("interview_review", "interview_questions"):
        score += 0.1
    elif content_type == "job_posting":
        score += 0.05
    if any(marker in text or marker in title_l for marker in FRESH_MARKERS):
        score += 0.05
    return round(max(0.0, min(1.0, score)), 3)


def extract_questions(content: Optional[str], limit: int = 25) -> List[str]:
    found: List[str] = []
    for match in _QUESTION_LINE.findall(content or ""):
        question = _WHITESPACE.sub(" ", match).strip(" -*\"'")
        if question and question not in found:
            found.append(question)
        if len(found) >= limit:
            break
    return found
