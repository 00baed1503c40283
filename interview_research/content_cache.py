import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

import aiosqlite

from .db import Database, utc_now
from .search_plan import domain_of

logger = logging.getLogger("uvicorn.error")

SUMMARY_CHARS = 500


@dataclass
class CacheEntry:
    id: int
    url: str
    domain: str
    company: str
    role: Optional[str]
    country: Optional[str]
    title: Optional[str]
    summary: Optional[str]
    content: Optional[str]
    content_type: Optional[str]
    quality_score: float
    word_count: int
    first_scraped_at: Optional[str]
    last_reused_at: Optional[str]
    times_reused: int

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "CacheEntry":
        return cls(
            id=row["id"],
            url=row["url"],
            domain=row["domain"] or "",
            company=row["company"] or "",
            role=row["role"],
            country=row["country"],
            title=row["title"],
            summary=row["summary"],
            content=row["content"],
            content_type=row["content_type"],
            quality_score=float(row["quality_score"] or 0.0),
            word_count=int(row["word_count"] or 0),
            first_scraped_at=row["first_scraped_at"],
            last_reused_at=row["last_reused_at"],
            times_reused=int(row["times_reused"] or 0),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "url": self.url,
            "domain": self.domain,
            "title": self.title,
            "content": self.content,
            "content_type": self.content_type,
            "score": self.quality_score,
            "times_reused": self.times_reused,
        }


@dataclass
class ReuseLookup:
    entries: List[CacheEntry] = field(default_factory=list)
    excluded_domains: List[str] = field(default_factory=list)

    @property
    def urls(self) -> List[str]:
        return [entry.url for entry in self.entries]


def _cutoff(max_age_days: int) -> str:
    moment = datetime.now(timezone.utc) - timedelta(days=max(0, max_age_days))
    return moment.isoformat().replace("+00:00", "Z")


class ContentCache:
    """Previously fetched documents keyed by company, role and country.

    Lookups never touch reuse counters; callers record reuse explicitly with
    ``record_usage`` and ``increment_reuse``, neither of which ever raises.
    """

    def __init__(
        self,
        db: Database,
        lookup_limit: int = 20,
        hydrate_limit: int = 10,
        exclude_domain_min_entries: int = 3,
    ):
        self.db = db
        self.lookup_limit = lookup_limit
        self.hydrate_limit = hydrate_limit
        self.exclude_domain_min_entries = exclude_domain_min_entries

    async def find_reusable(
        self,
        company: str,
        role: Optional[str] = None,
        country: Optional[str] = None,
        max_age_days: int = 7,
        min_quality: float = 0.6,
        limit: Optional[int] = None,
    ) -> ReuseLookup:
        if not (company or "").strip():
            return ReuseLookup()
        clauses = [
            "lower(company) = lower(?)",
            "quality_score >= ?",
            "first_scraped_at >= ?",
            "(content_type IS NULL OR content_type != 'profile')",
        ]
        params: list = [company.strip(), min_quality, _cutoff(max_age_days)]
        if role and role.strip():
            clauses.append("lower(COALESCE(role, '')) LIKE ?")
            params.append(f"%{role.strip().lower()}%")
        if country and country.strip():
            clauses.append("(country IS NULL OR country = '' OR lower(country) LIKE ?)")
            params.append(f"%{country.strip().lower()}%")
        params.append(limit or self.lookup_limit)
        rows = await self.db.fetchall(
            f"SELECT * FROM content_cache WHERE {' AND '.join(clauses)} "
            "ORDER BY quality_score DESC, times_reused DESC, id ASC LIMIT ?",
            tuple(params),
        )
        entries = [CacheEntry.from_row(row) for row in rows]
        counts: dict = {}
        for entry in entries:
            if entry.domain:
                counts[entry.domain] = counts.get(entry.domain, 0) + 1
        excluded = sorted(d for d, n in counts.items() if n >= self.exclude_domain_min_entries)
        return ReuseLookup(entries=entries, excluded_domains=excluded)

    async def get_content(
        self,
        urls: Iterable[str],
        company: str,
        role: Optional[str] = None,
        country: Optional[str] = None,
        max_age_days: Optional[int] = None,
    ) -> List[CacheEntry]:
        wanted = [u for u in dict.fromkeys(urls) if u][: self.hydrate_limit]
        if not wanted:
            return []
        placeholders = ",".join("?" for _ in wanted)
        query = (
            f"SELECT * FROM content_cache WHERE url IN ({placeholders}) AND lower(company) = lower(?) "
            "AND content IS NOT NULL AND content != ''"
        )
        params: list = [*wanted, company or ""]
        if max_age_days is not None:
            query += " AND first_scraped_at >= ?"
            params.append(_cutoff(max_age_days))
        query += " ORDER BY quality_score DESC, times_reused DESC"
        rows = await self.db.fetchall(query, tuple(params))
        return [CacheEntry.from_row(row) for row in rows]

    async def store(
        self,
        url: str,
        company: str,
        role: Optional[str],
        country: Optional[str],
        title: Optional[str],
        content: Optional[str],
        content_type: str,
        quality_score: float,
    ) -> Optional[int]:
        """Upsert on (url, company); the better-scored copy of the content wins."""
        if not url:
            return None
        quality = max(0.0, min(1.0, float(quality_score or 0.0)))
        text = content or ""
        now = utc_now()
        try:
            async with aiosqlite.connect(self.db.path) as db:
                await db.execute(
                    "INSERT INTO content_cache(url, domain, company, role, country, title, summary, content, content_type, "
                    "quality_score, word_count, first_scraped_at, times_reused) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,0) "
                    "ON CONFLICT(url, company) DO UPDATE SET "
                    "title=CASE WHEN excluded.quality_score >= content_cache.quality_score THEN excluded.title ELSE content_cache.title END, "
                    "summary=CASE WHEN excluded.quality_score >= content_cache.quality_score THEN excluded.summary ELSE content_cache.summary END, "
                    "content=CASE WHEN excluded.quality_score >= content_cache.quality_score THEN excluded.content ELSE content_cache.content END, "
                    "word_count=CASE WHEN excluded.quality_score >= content_cache.quality_score THEN excluded.word_count ELSE content_cache.word_count END, "
                    "content_type=COALESCE(content_cache.content_type, excluded.content_type), "
                    "quality_score=MAX(content_cache.quality_score, excluded.quality_score)",
                    (
                        url,
                        domain_of(url),
                        company or "",
                        role,
                        country,
                        title,
                        text[:SUMMARY_CHARS],
                        text,
                        content_type,
                        quality,
                        len(text.split()),
                        now,
                    ),
                )
                await db.commit()
                cursor = await db.execute(
                    "SELECT id FROM content_cache WHERE url=? AND company=?",
                    (url, company or ""),
                )
                row = await cursor.fetchone()
                await cursor.close()
        except Exception as exc:
            logger.warning("Content cache store failed for %s: %s", url, exc)
            return None
        return int(row[0]) if row else None

    async def record_usage(
        self,
        job_id: str,
        entry_id: int,
        quality_at_use: float,
        usage_type: str = "reused",
    ) -> None:
        try:
            await self.db.execute(
                "INSERT INTO cache_usage(job_id, entry_id, usage_type, quality_at_use, created_at) VALUES (?,?,?,?,?)",
                (job_id, entry_id, usage_type, quality_at_use, utc_now()),
            )
        except Exception as exc:
            logger.warning("Cache usage record failed job=%s entry=%s: %s", job_id, entry_id, exc)

    async def increment_reuse(self, entry_id: int) -> None:
        try:
            await self.db.execute(
                "UPDATE content_cache SET times_reused = times_reused + 1, last_reused_at = ? WHERE id = ?",
                (utc_now(), entry_id),
            )
        except Exception as exc:
            logger.warning("Cache reuse increment failed entry=%s: %s", entry_id, exc)

    async def mark_reused(self, job_id: str, entries: Iterable[CacheEntry]) -> None:
        for entry in entries:
            await self.record_usage(job_id, entry.id, entry.quality_score, "reused")
            await self.increment_reuse(entry.id)

    async def list_usage(self, job_id: str) -> List[dict]:
        rows = await self.db.fetchall(
            "SELECT entry_id, usage_type, quality_at_use, created_at FROM cache_usage WHERE job_id=? ORDER BY id ASC",
            (job_id,),
        )
        return [dict(row) for row in rows]
