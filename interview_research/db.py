import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import aiosqlite

TERMINAL_STATUSES = ("completed", "failed")
_NOT_TERMINAL = "status NOT IN ('completed','failed')"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def _json_or_null(value: Any) -> Optional[str]:
    return None if value is None else _json_dumps(value)


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS jobs(
                    job_id TEXT PRIMARY KEY,
                    user_id TEXT,
                    company TEXT NOT NULL,
                    role TEXT,
                    country TEXT,
                    role_links_json TEXT,
                    cv_text TEXT,
                    target_seniority TEXT,
                    status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (status IN ('pending','processing','completed','failed')),
                    progress_step TEXT,
                    progress_percentage INTEGER NOT NULL DEFAULT 0
                        CHECK (progress_percentage >= 0 AND progress_percentage <= 100),
                    error_message TEXT,
                    overall_fit_score REAL,
                    preparation_priorities_json TEXT,
                    created_at TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS artifact_bundles(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL UNIQUE,
                    user_id TEXT,
                    company_research_raw TEXT,
                    job_analysis_raw TEXT,
                    cv_analysis_raw TEXT,
                    synthesis_metadata_json TEXT,
                    comparison_analysis_json TEXT,
                    interview_stages_json TEXT,
                    interview_questions_data_json TEXT,
                    preparation_guidance_json TEXT,
                    processing_status TEXT,
                    raw_saved_at TEXT,
                    synthesis_saved_at TEXT
                );
                CREATE TABLE IF NOT EXISTS interview_stages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    name TEXT,
                    order_index INTEGER,
                    duration TEXT,
                    interviewer TEXT,
                    content TEXT,
                    guidance TEXT,
                    preparation_tips_json TEXT,
                    common_questions_json TEXT,
                    red_flags_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS interview_questions(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    stage_id INTEGER,
                    question TEXT,
                    category TEXT,
                    question_type TEXT,
                    difficulty TEXT,
                    rationale TEXT,
                    suggested_answer_approach TEXT,
                    evaluation_criteria_json TEXT,
                    follow_up_questions_json TEXT,
                    star_story_fit INTEGER DEFAULT 0,
                    company_context TEXT,
                    confidence_score REAL,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS content_cache(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    url TEXT NOT NULL,
                    domain TEXT,
                    company TEXT NOT NULL DEFAULT '',
                    role TEXT,
                    country TEXT,
                    title TEXT,
                    summary TEXT,
                    content TEXT,
                    content_type TEXT,
                    quality_score REAL NOT NULL DEFAULT 0.0
                        CHECK (quality_score >= 0.0 AND quality_score <= 1.0),
                    word_count INTEGER DEFAULT 0,
                    first_scraped_at TEXT,
                    last_reused_at TEXT,
                    times_reused INTEGER NOT NULL DEFAULT 0,
                    UNIQUE(url, company)
                );
                CREATE INDEX IF NOT EXISTS idx_content_cache_lookup
                    ON content_cache(company, role);
                CREATE INDEX IF NOT EXISTS idx_content_cache_quality
                    ON content_cache(quality_score DESC, times_reused DESC);
                CREATE TABLE IF NOT EXISTS cache_usage(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    entry_id INTEGER,
                    usage_type TEXT,
                    quality_at_use REAL,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS search_audit(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    api_type TEXT,
                    query_text TEXT,
                    results_count INTEGER,
                    duration_ms INTEGER,
                    credits_used INTEGER,
                    error_message TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS job_events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.rowcount

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def insert_job(
        self,
        job_id: str,
        company: str,
        role: Optional[str] = None,
        country: Optional[str] = None,
        role_links: Optional[List[str]] = None,
        cv_text: Optional[str] = None,
        target_seniority: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        now = utc_now()
        await self.execute(
            "INSERT INTO jobs(job_id, user_id, company, role, country, role_links_json, cv_text, target_seniority, "
            "status, progress_step, progress_percentage, created_at, updated_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            (
                job_id,
                user_id,
                company,
                role,
                country,
                _json_dumps(role_links or []),
                cv_text,
                target_seniority,
                "pending",
                "Queued",
                0,
                now,
                now,
            ),
        )

    async def get_job(self, job_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM jobs WHERE job_id=?", (job_id,))
        if not row:
            return None
        return {
            "job_id": row["job_id"],
            "user_id": row["user_id"],
            "company": row["company"],
            "role": row["role"],
            "country": row["country"],
            "role_links": _json_loads(row["role_links_json"], []),
            "cv_text": row["cv_text"],
            "target_seniority": row["target_seniority"],
            "status": row["status"],
            "progress_step": row["progress_step"],
            "progress_percentage": row["progress_percentage"],
            "error_message": row["error_message"],
            "overall_fit_score": row["overall_fit_score"],
            "preparation_priorities": _json_loads(row["preparation_priorities_json"], []),
            "created_at": row["created_at"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "updated_at": row["updated_at"],
        }

    async def update_progress(self, job_id: str, step: str, percentage: int) -> bool:
        """Move a live job to processing; percentages never decrease and a lower step keeps the current label."""
        now = utc_now()
        count = await self.execute(
            "UPDATE jobs SET status='processing', "
            "progress_step=CASE WHEN ? >= progress_percentage THEN ? ELSE progress_step END, "
            "progress_percentage=MAX(progress_percentage, ?), started_at=COALESCE(started_at, ?), updated_at=? "
            f"WHERE job_id=? AND {_NOT_TERMINAL}",
            (percentage, step, percentage, now, now, job_id),
        )
        return count > 0

    async def mark_job_failed(
        self,
        job_id: str,
        error_message: str,
        step: Optional[str] = None,
        percentage: Optional[int] = None,
    ) -> bool:
        now = utc_now()
        count = await self.execute(
            "UPDATE jobs SET status='failed', error_message=?, progress_step=COALESCE(?, progress_step), "
            "progress_percentage=COALESCE(?, progress_percentage), completed_at=?, updated_at=? "
            f"WHERE job_id=? AND {_NOT_TERMINAL}",
            (error_message, step, percentage, now, now, job_id),
        )
        return count > 0

    async def complete_job(
        self,
        job_id: str,
        step: str,
        overall_fit_score: float,
        preparation_priorities: List[Any],
    ) -> bool:
        now = utc_now()
        count = await self.execute(
            "UPDATE jobs SET status='completed', progress_step=?, progress_percentage=100, overall_fit_score=?, "
            "preparation_priorities_json=?, completed_at=?, updated_at=? "
            f"WHERE job_id=? AND {_NOT_TERMINAL}",
            (step, overall_fit_score, _json_dumps(preparation_priorities or []), now, now, job_id),
        )
        return count > 0

    async def upsert_raw_artifacts(
        self,
        job_id: str,
        user_id: Optional[str],
        company_research: Any,
        job_research: Any,
        cv_research: Any,
    ) -> None:
        now = utc_now()
        await self.execute(
            "INSERT INTO artifact_bundles(job_id, user_id, company_research_raw, job_analysis_raw, cv_analysis_raw, "
            "interview_stages_json, processing_status, raw_saved_at) VALUES (?,?,?,?,?,?,?,?) "
            "ON CONFLICT(job_id) DO UPDATE SET company_research_raw=excluded.company_research_raw, "
            "job_analysis_raw=excluded.job_analysis_raw, cv_analysis_raw=excluded.cv_analysis_raw, "
            "raw_saved_at=excluded.raw_saved_at",
            (
                job_id,
                user_id,
                _json_or_null(company_research),
                _json_or_null(job_research),
                _json_or_null(cv_research),
                _json_dumps([]),
                "raw_data_saved",
                now,
            ),
        )

    async def update_bundle_synthesis(self, job_id: str, synthesis: Dict[str, Any]) -> bool:
        count = await self.execute(
            "UPDATE artifact_bundles SET synthesis_metadata_json=?, comparison_analysis_json=?, interview_stages_json=?, "
            "interview_questions_data_json=?, preparation_guidance_json=?, processing_status='complete', "
            "synthesis_saved_at=? WHERE job_id=?",
            (
                _json_dumps(synthesis.get("synthesis_metadata") or {}),
                _json_dumps(synthesis.get("comparison_analysis") or {}),
                _json_dumps(synthesis.get("interview_stages") or []),
                _json_dumps(synthesis.get("interview_questions_data") or {}),
                _json_dumps(synthesis.get("preparation_guidance") or {}),
                utc_now(),
                job_id,
            ),
        )
        return count > 0

    async def get_bundle(self, job_id: str) -> Optional[dict]:
        row = await self.fetchone("SELECT * FROM artifact_bundles WHERE job_id=?", (job_id,))
        if not row:
            return None
        return {
            "job_id": row["job_id"],
            "company_research_raw": _json_loads(row["company_research_raw"], None),
            "job_analysis_raw": _json_loads(row["job_analysis_raw"], None),
            "cv_analysis_raw": _json_loads(row["cv_analysis_raw"], None),
            "synthesis_metadata": _json_loads(row["synthesis_metadata_json"], None),
            "comparison_analysis": _json_loads(row["comparison_analysis_json"], None),
            "interview_stages": _json_loads(row["interview_stages_json"], []),
            "interview_questions_data": _json_loads(row["interview_questions_data_json"], None),
            "preparation_guidance": _json_loads(row["preparation_guidance_json"], None),
            "processing_status": row["processing_status"],
            "raw_saved_at": row["raw_saved_at"],
            "synthesis_saved_at": row["synthesis_saved_at"],
        }

    async def insert_stages(self, job_id: str, stages: Iterable[Dict[str, Any]]) -> List[dict]:
        created_at = utc_now()
        inserted: List[dict] = []
        async with aiosqlite.connect(self.path) as db:
            for stage in stages:
                cursor = await db.execute(
                    "INSERT INTO interview_stages(job_id, name, order_index, duration, interviewer, content, guidance, "
                    "preparation_tips_json, common_questions_json, red_flags_json, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
                    (
                        job_id,
                        stage.get("name"),
                        stage.get("order_index"),
                        stage.get("duration"),
                        stage.get("interviewer"),
                        stage.get("content"),
                        stage.get("guidance"),
                        _json_dumps(stage.get("preparation_tips") or []),
                        _json_dumps(stage.get("common_questions") or []),
                        _json_dumps(stage.get("red_flags_to_avoid") or []),
                        created_at,
                    ),
                )
                inserted.append({"id": cursor.lastrowid, "order_index": stage.get("order_index")})
            await db.commit()
        return inserted

    async def insert_questions(self, job_id: str, questions: Iterable[Dict[str, Any]]) -> int:
        created_at = utc_now()
        rows = [
            (
                job_id,
                q.get("stage_id"),
                q.get("question"),
                q.get("category"),
                q.get("question_type") or "synthesized",
                q.get("difficulty"),
                q.get("rationale") or "",
                q.get("suggested_answer_approach") or "",
                _json_dumps(q.get("evaluation_criteria") or []),
                _json_dumps(q.get("follow_up_questions") or []),
                1 if q.get("star_story_fit") else 0,
                q.get("company_context") or "",
                q.get("confidence_score"),
                created_at,
            )
            for q in questions
        ]
        if not rows:
            return 0
        async with aiosqlite.connect(self.path) as db:
            await db.executemany(
                "INSERT INTO interview_questions(job_id, stage_id, question, category, question_type, difficulty, rationale, "
                "suggested_answer_approach, evaluation_criteria_json, follow_up_questions_json, star_story_fit, "
                "company_context, confidence_score, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                rows,
            )
            await db.commit()
        return len(rows)

    async def list_stages(self, job_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM interview_stages WHERE job_id=? ORDER BY order_index ASC, id ASC",
            (job_id,),
        )
        return [
            {
                "id": r["id"],
                "name": r["name"],
                "order_index": r["order_index"],
                "duration": r["duration"],
                "interviewer": r["interviewer"],
                "content": r["content"],
                "guidance": r["guidance"],
                "preparation_tips": _json_loads(r["preparation_tips_json"], []),
                "common_questions": _json_loads(r["common_questions_json"], []),
                "red_flags_to_avoid": _json_loads(r["red_flags_json"], []),
            }
            for r in rows
        ]

    async def list_questions(self, job_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT * FROM interview_questions WHERE job_id=? ORDER BY id ASC",
            (job_id,),
        )
        return [
            {
                "id": r["id"],
                "stage_id": r["stage_id"],
                "question": r["question"],
                "category": r["category"],
                "question_type": r["question_type"],
                "difficulty": r["difficulty"],
                "rationale": r["rationale"],
                "suggested_answer_approach": r["suggested_answer_approach"],
                "evaluation_criteria": _json_loads(r["evaluation_criteria_json"], []),
                "follow_up_questions": _json_loads(r["follow_up_questions_json"], []),
                "star_story_fit": bool(r["star_story_fit"]),
                "company_context": r["company_context"],
                "confidence_score": r["confidence_score"],
            }
            for r in rows
        ]

    async def add_search_audit(
        self,
        job_id: str,
        api_type: str,
        query_text: str,
        results_count: int,
        duration_ms: int,
        credits_used: int,
        error_message: Optional[str] = None,
    ) -> None:
        await self.execute(
            "INSERT INTO search_audit(job_id, api_type, query_text, results_count, duration_ms, credits_used, "
            "error_message, created_at) VALUES (?,?,?,?,?,?,?,?)",
            (job_id, api_type, query_text, results_count, duration_ms, credits_used, error_message, utc_now()),
        )

    async def list_search_audit(self, job_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT api_type, query_text, results_count, duration_ms, credits_used, error_message, created_at "
            "FROM search_audit WHERE job_id=? ORDER BY id ASC",
            (job_id,),
        )
        return [dict(r) for r in rows]

    async def add_event(self, job_id: str, event_type: str, payload: dict) -> dict:
        created_at = utc_now()
        # Sequence is assigned inside the INSERT so concurrent gatherers never share a seq.
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO job_events(job_id, seq, event_type, payload_json, created_at) "
                "SELECT ?, COALESCE(MAX(seq), 0) + 1, ?, ?, ? FROM job_events WHERE job_id=?",
                (job_id, event_type, _json_dumps(payload), created_at, job_id),
            )
            await db.commit()
            cursor = await db.execute("SELECT MAX(seq) FROM job_events WHERE job_id=?", (job_id,))
            row = await cursor.fetchone()
            await cursor.close()
        seq = int(row[0]) if row and row[0] is not None else 0
        return {"job_id": job_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, job_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM job_events WHERE job_id=? AND seq>? ORDER BY seq ASC",
            (job_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": _json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
