"""External gatherers: company, job-posting and CV research.

Each public gatherer returns a dict or ``None`` and never raises; cancellation
from the coordinator's deadline is the only exception that passes through.
"""
import asyncio
import copy
import hashlib
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import AppSettings
from .content_cache import CacheEntry, ContentCache
from .db import Database
from .errors import ConfigError, MalformedResponseError, TransientNetworkError
from .events import EventLog
from .llm import CompletionClient, message_text, parse_json_content
from .schemas import JobRequest
from .search_plan import (
    assess_content_quality,
    classify_content_type,
    discovery_queries,
    extract_interview_review_urls,
    extract_questions,
)
from .tavily import TavilyClient, format_tavily_error

logger = logging.getLogger("uvicorn.error")

# Failures of the completion call that mean "no analysis", as opposed to bad content.
ANALYSIS_CALL_ERRORS = (ConfigError, TransientNetworkError, httpx.HTTPStatusError)

CV_INPUT_CHARS = 12000

COMPANY_FALLBACK: Dict[str, Any] = {
    "name": "",
    "industry": "Unknown",
    "culture": "Research in progress",
    "values": [],
    "interview_philosophy": "Standard interview process",
    "recent_hiring_trends": "Information not available",
    "interview_stages": [],
    "interview_experiences": {
        "positive_feedback": [],
        "negative_feedback": [],
        "common_themes": [],
        "difficulty_rating": "Unknown",
        "process_duration": "Unknown",
    },
    "interview_questions_bank": {
        "behavioral": [],
        "technical": [],
        "situational": [],
        "company_specific": [],
    },
    "hiring_manager_insights": {
        "what_they_look_for": [],
        "red_flags": [],
        "success_factors": [],
    },
}

JOB_FALLBACK: Dict[str, Any] = {
    "technical_skills": [],
    "soft_skills": [],
    "experience_level": "Not specified",
    "responsibilities": [],
    "qualifications": [],
    "nice_to_have": [],
    "interview_process_hints": [],
}

CV_FALLBACK: Dict[str, Any] = {
    "current_role": "",
    "experience_years": 0,
    "skills": {"technical": [], "soft": [], "certifications": []},
    "education": {"degree": "", "institution": "", "graduation_year": None},
    "experience": [],
    "projects": [],
    "key_achievements": [],
}

COMPANY_SYSTEM_PROMPT = (
    "You analyse interview reports about one company for a candidate preparing to interview there. "
    "Work only from the supplied source material. Extract every concrete interview question candidates "
    "report, the sequence of interview rounds (name, duration, interviewer, what happens, common questions, "
    "difficulty, tips), recurring feedback themes, and what hiring managers look for or reject. "
    "Return a single JSON object with the keys: name, industry, culture, values, interview_philosophy, "
    "recent_hiring_trends, interview_stages, interview_experiences, interview_questions_bank "
    "(behavioral, technical, situational, company_specific), hiring_manager_insights "
    "(what_they_look_for, red_flags, success_factors)."
)

JOB_SYSTEM_PROMPT = (
    "You read job postings and summarise what the employer requires. Return a single JSON object with "
    "the keys: technical_skills, soft_skills, experience_level, responsibilities, qualifications, "
    "nice_to_have, interview_process_hints. Use lists of short strings; experience_level is a sentence."
)

CV_SYSTEM_PROMPT = (
    "You parse a candidate's CV. Return a single JSON object with the keys: current_role, "
    "experience_years (number), skills (technical, soft, certifications), education (degree, institution, "
    "graduation_year), experience (list of {company, role, duration, achievements}), projects, "
    "key_achievements. Do not invent facts that are not in the CV."
)


@dataclass
class GatherContext:
    settings: AppSettings
    db: Database
    cache: ContentCache
    events: EventLog
    tavily: TavilyClient
    llm: CompletionClient


def with_defaults(parsed: Any, fallback: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(fallback)
    if isinstance(parsed, dict):
        merged.update(parsed)
    return merged


def _credits(api_type: str, depth: str, url_count: int = 1) -> int:
    per_unit = 2 if depth == "advanced" else 1
    if api_type == "extract":
        return per_unit * max(1, math.ceil(url_count / 5))
    return per_unit


async def _audit(
    ctx: GatherContext,
    job_id: str,
    api_type: str,
    query_text: str,
    resp: Dict[str, Any],
    started: float,
    credits: int,
) -> None:
    failed = bool(resp.get("error"))
    try:
        await ctx.db.add_search_audit(
            job_id,
            api_type,
            query_text,
            0 if failed else len(resp.get("results") or []),
            int((time.monotonic() - started) * 1000),
            0 if failed else credits,
            format_tavily_error(resp) if failed else None,
        )
    except Exception as exc:
        logger.warning("Job %s search audit write failed: %s", job_id, exc)


async def audited_search(ctx: GatherContext, job_id: str, query: str, **kwargs: Any) -> Dict[str, Any]:
    depth = kwargs.pop("search_depth", ctx.settings.search.search_depth)
    started = time.monotonic()
    resp = await ctx.tavily.search(
        query,
        search_depth=depth,
        timeout=ctx.settings.timeouts.tavily_search_s,
        **kwargs,
    )
    await _audit(ctx, job_id, "search", query, resp, started, _credits("search", depth))
    return resp


async def audited_extract(ctx: GatherContext, job_id: str, urls: List[str], extract_depth: str) -> Dict[str, Any]:
    started = time.monotonic()
    resp = await ctx.tavily.extract(urls, extract_depth=extract_depth, timeout=ctx.settings.timeouts.tavily_extract_s)
    await _audit(ctx, job_id, "extract", " ".join(urls), resp, started, _credits("extract", extract_depth, len(urls)))
    return resp


async def complete_json(ctx: GatherContext, system: str, user: str, max_tokens: int) -> Optional[Any]:
    """One JSON-mode completion. Returns the parsed value, or None for unparseable content.

    Transport, HTTP and credential failures propagate to the caller.
    """
    try:
        response = await ctx.llm.chat_completion(
            model=ctx.settings.synthesis.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
            timeout=ctx.settings.timeouts.completion_s,
        )
    except MalformedResponseError as exc:
        logger.warning("Completion returned a malformed body: %s", exc)
        return None
    return parse_json_content(message_text(response))


async def _store_fresh(
    ctx: GatherContext,
    job: JobRequest,
    url: str,
    title: Optional[str],
    content: Optional[str],
    content_type: Optional[str] = None,
) -> Optional[int]:
    kind = content_type or classify_content_type(url, title, content)
    quality = assess_content_quality(content, title, url, kind)
    entry_id = await ctx.cache.store(url, job.company, job.role, job.country, title, content, kind, quality)
    if entry_id is not None:
        await ctx.cache.record_usage(job.job_id, entry_id, quality, "fresh_scrape")
    return entry_id


def _truncate(text: Optional[str], limit: int) -> str:
    text = text or ""
    return text if len(text) <= limit else text[:limit]


def build_company_context(
    job: JobRequest,
    cached: List[CacheEntry],
    search_results: List[Dict[str, Any]],
    extracted: List[Dict[str, Any]],
    settings: AppSettings,
) -> str:
    limits = settings.synthesis
    lines = [f"Company: {job.company}"]
    if job.role:
        lines.append(f"Role: {job.role}")
    if job.country:
        lines.append(f"Country: {job.country}")
    if cached:
        lines.append("\nPreviously collected sources:")
        for entry in cached:
            lines.append(f"SOURCE-START\n{entry.url}\n{_truncate(entry.content, limits.source_snippet_chars)}\nSOURCE-END")
    if search_results:
        lines.append("\nSearch results:")
        for idx, resp in enumerate(search_results, start=1):
            if resp.get("answer"):
                lines.append(f"Research {idx}: {resp['answer']}")
            for item in resp.get("results") or []:
                lines.append(f"- {item.get('title') or ''}: {item.get('content') or ''}")
                if item.get("raw_content"):
                    raw = _truncate(item["raw_content"], limits.source_snippet_chars)
                    lines.append(f"SOURCE-START\n{item.get('url')}\n{raw}\nSOURCE-END")
    if extracted:
        lines.append("\nDeep extracted interview reviews:")
        for item in extracted:
            text = item.get("raw_content") or item.get("content")
            if text and item.get("url"):
                lines.append(f"DEEP-EXTRACT-START\n{item['url']}\n{_truncate(text, limits.deep_extract_chars)}\nDEEP-EXTRACT-END")
    return _truncate("\n".join(lines), limits.context_chars)


def _reported_questions(cached: List[CacheEntry], search_results: List[Dict[str, Any]], limit: int = 25) -> List[str]:
    texts = [entry.content or "" for entry in cached]
    for resp in search_results:
        texts.extend(item.get("raw_content") or item.get("content") or "" for item in resp.get("results") or [])
    found: List[str] = []
    for text in texts:
        for question in extract_questions(text, limit=limit):
            if question not in found:
                found.append(question)
        if len(found) >= limit:
            break
    return found[:limit]


async def _company_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    name = "company"
    cfg = ctx.settings
    if not ctx.tavily.enabled:
        await ctx.events.phase(job.job_id, name, "skipped", reason="missing_search_key")
        return None

    await ctx.events.phase(job.job_id, name, "cache_check")
    lookup = await ctx.cache.find_reusable(
        job.company,
        job.role,
        job.country,
        max_age_days=cfg.cache.max_age_days,
        min_quality=cfg.cache.min_quality,
        limit=cfg.cache.lookup_limit,
    )
    cached: List[CacheEntry] = []
    if lookup.entries:
        cached = await ctx.cache.get_content(lookup.urls, job.company, job.role, job.country)
    high_quality = [entry for entry in cached if entry.quality_score > cfg.cache.high_quality_score]
    skip_search = (
        len(high_quality) >= cfg.cache.skip_search_min_high_quality
        or len(cached) >= cfg.cache.company_skip_min_entries
    )
    if cached:
        await ctx.cache.mark_reused(job.job_id, cached)

    search_results: List[Dict[str, Any]] = []
    if not skip_search:
        queries = discovery_queries(job.company, job.role, cfg.search.max_queries)
        await ctx.events.phase(
            job.job_id,
            name,
            "discovery",
            queries=len(queries),
            cache_hits=len(cached),
            excluded_domains=lookup.excluded_domains,
        )
        responses = await asyncio.gather(
            *[
                audited_search(
                    ctx,
                    job.job_id,
                    query,
                    search_depth=cfg.search.search_depth,
                    max_results=cfg.search.max_results,
                    time_range=cfg.search.time_range,
                    include_domains=cfg.search.allowed_domains,
                    exclude_domains=lookup.excluded_domains,
                    include_raw_content=True,
                )
                for query in queries
            ]
        )
        for query, resp in zip(queries, responses):
            if resp.get("error"):
                logger.warning("Job %s search failed for %r: %s", job.job_id, query, format_tavily_error(resp))
                continue
            search_results.append(resp)
            for item in resp.get("results") or []:
                if item.get("url"):
                    await _store_fresh(
                        ctx,
                        job,
                        item["url"],
                        item.get("title"),
                        item.get("raw_content") or item.get("content"),
                    )
    else:
        await ctx.events.phase(job.job_id, name, "discovery", skipped=True, cache_hits=len(cached))

    interview_urls = extract_interview_review_urls(search_results, limit=cfg.search.interview_url_limit)
    extracted: List[Dict[str, Any]] = []
    if cfg.search.deep_extract and interview_urls:
        targets = interview_urls[: cfg.search.deep_extract_max_urls]
        await ctx.events.phase(job.job_id, name, "extraction", urls=len(targets))
        resp = await audited_extract(ctx, job.job_id, targets, "advanced")
        if resp.get("error"):
            logger.warning("Job %s deep extract failed: %s", job.job_id, format_tavily_error(resp))
        else:
            extracted = [item for item in resp.get("results") or [] if item.get("url")]

    if not cached and not search_results:
        await ctx.events.phase(job.job_id, name, "result", ok=False, reason="no_sources")
        return None

    await ctx.events.phase(job.job_id, name, "analysis")
    context = build_company_context(job, cached, search_results, extracted, cfg)
    try:
        parsed = await complete_json(
            ctx,
            COMPANY_SYSTEM_PROMPT,
            f"Analyse this company research and extract structured interview insights:\n\n{context}",
            cfg.synthesis.company_analysis_max_tokens,
        )
    except ANALYSIS_CALL_ERRORS as exc:
        logger.warning("Job %s company analysis failed: %s", job.job_id, exc)
        await ctx.events.phase(job.job_id, name, "result", ok=False, reason=str(exc)[:200])
        return None
    insights = with_defaults(parsed, COMPANY_FALLBACK)
    if not insights.get("name"):
        insights["name"] = job.company

    sources = [entry.url for entry in cached]
    for resp in search_results:
        sources.extend(item.get("url") for item in resp.get("results") or [] if item.get("url"))
    result = {
        "company_insights": insights,
        "sources": list(dict.fromkeys(sources)),
        "interview_urls": interview_urls,
        "cache_hits": len(cached),
        "fresh_results": sum(len(resp.get("results") or []) for resp in search_results),
        "deep_extracts": len(extracted),
        "reported_questions": _reported_questions(cached, search_results),
        "analysis_fallback": parsed is None,
    }
    await ctx.events.phase(
        job.job_id,
        name,
        "result",
        ok=True,
        sources=len(result["sources"]),
        stages=len(insights.get("interview_stages") or []),
    )
    return result


async def _job_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    name = "job"
    cfg = ctx.settings
    if not job.role_links:
        await ctx.events.phase(job.job_id, name, "skipped", reason="no_role_links")
        return None

    links = list(dict.fromkeys(job.role_links))[: cfg.search.job_max_urls]
    await ctx.events.phase(job.job_id, name, "cache_check", links=len(links))
    cached = await ctx.cache.get_content(links, job.company, max_age_days=cfg.cache.max_age_days)
    if cached:
        await ctx.cache.mark_reused(job.job_id, cached)
    postings = [{"url": e.url, "title": e.title, "content": e.content, "source": "cache"} for e in cached]
    cached_urls = {entry.url for entry in cached}
    missing = [link for link in links if link not in cached_urls]

    if missing and ctx.tavily.enabled:
        await ctx.events.phase(job.job_id, name, "extraction", urls=len(missing))
        resp = await audited_extract(ctx, job.job_id, missing, cfg.search.job_extract_depth)
        if resp.get("error"):
            logger.warning("Job %s posting extract failed: %s", job.job_id, format_tavily_error(resp))
        else:
            for item in resp.get("results") or []:
                url = item.get("url")
                text = item.get("raw_content") or item.get("content")
                if not url or not text:
                    continue
                await _store_fresh(ctx, job, url, item.get("title"), text, content_type="job_posting")
                postings.append({"url": url, "title": item.get("title"), "content": text, "source": "fresh"})
            for failed in resp.get("failed_results") or []:
                logger.info("Job %s posting not extracted: %s", job.job_id, failed)

    if not postings:
        await ctx.events.phase(job.job_id, name, "result", ok=False, reason="no_postings")
        return None

    await ctx.events.phase(job.job_id, name, "analysis", postings=len(postings))
    parts = [f"Company: {job.company}"]
    if job.role:
        parts.append(f"Role: {job.role}")
    for idx, posting in enumerate(postings, start=1):
        parts.append(
            f"\nJob posting {idx} ({posting['url']}):\n{_truncate(posting['content'], cfg.synthesis.job_posting_chars)}"
        )
    try:
        parsed = await complete_json(
            ctx,
            JOB_SYSTEM_PROMPT,
            "Summarise the requirements in these job postings:\n" + "\n".join(parts),
            cfg.synthesis.job_analysis_max_tokens,
        )
    except ANALYSIS_CALL_ERRORS as exc:
        logger.warning("Job %s job analysis failed: %s", job.job_id, exc)
        await ctx.events.phase(job.job_id, name, "result", ok=False, reason=str(exc)[:200])
        return None
    result = {
        "job_requirements": with_defaults(parsed, JOB_FALLBACK),
        "postings": [{"url": p["url"], "title": p.get("title"), "source": p["source"]} for p in postings],
        "cache_hits": len(cached),
        "analysis_fallback": parsed is None,
    }
    await ctx.events.phase(job.job_id, name, "result", ok=True, postings=len(postings))
    return result


def cv_cache_key(user_id: Optional[str], cv_text: str) -> str:
    digest = hashlib.sha256(cv_text.encode("utf-8")).hexdigest()
    return f"cv://{user_id or 'anonymous'}/{digest}"


async def _cv_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    name = "cv"
    cfg = ctx.settings
    cv_text = (job.cv_text or "").strip()
    if not cv_text:
        await ctx.events.phase(job.job_id, name, "skipped", reason="no_cv")
        return None

    key = cv_cache_key(job.user_id, cv_text)
    await ctx.events.phase(job.job_id, name, "cache_check")
    cached = await ctx.cache.get_content([key], "")
    for entry in cached:
        analysis = parse_json_content(entry.content or "")
        if isinstance(analysis, dict):
            await ctx.cache.mark_reused(job.job_id, [entry])
            await ctx.events.phase(job.job_id, name, "result", ok=True, source="cache")
            return {"cv_analysis": with_defaults(analysis, CV_FALLBACK), "source": "cache"}

    await ctx.events.phase(job.job_id, name, "analysis", chars=len(cv_text))
    try:
        parsed = await complete_json(
            ctx,
            CV_SYSTEM_PROMPT,
            f"Parse this CV:\n\n{_truncate(cv_text, CV_INPUT_CHARS)}",
            cfg.synthesis.cv_analysis_max_tokens,
        )
    except ANALYSIS_CALL_ERRORS as exc:
        logger.warning("Job %s CV analysis failed: %s", job.job_id, exc)
        await ctx.events.phase(job.job_id, name, "result", ok=False, reason=str(exc)[:200])
        return None
    analysis = with_defaults(parsed, CV_FALLBACK)
    if parsed is not None:
        entry_id = await ctx.cache.store(
            key,
            "",
            None,
            None,
            "CV analysis",
            json.dumps(analysis, ensure_ascii=True),
            "profile",
            1.0,
        )
        if entry_id is not None:
            await ctx.cache.record_usage(job.job_id, entry_id, 1.0, "fresh_scrape")
    await ctx.events.phase(job.job_id, name, "result", ok=True, source="fresh")
    return {
        "cv_analysis": analysis,
        "source": "fresh",
        "analysis_fallback": parsed is None,
    }


async def _guarded(gatherer: str, coro, job: JobRequest) -> Optional[Dict[str, Any]]:
    try:
        return await coro
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.exception("Job %s %s research failed unexpectedly: %s", job.job_id, gatherer, exc)
        return None


async def gather_company_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    return await _guarded("company", _company_research(ctx, job), job)


async def gather_job_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    return await _guarded("job", _job_research(ctx, job), job)


async def gather_cv_research(ctx: GatherContext, job: JobRequest) -> Optional[Dict[str, Any]]:
    return await _guarded("cv", _cv_research(ctx, job), job)
