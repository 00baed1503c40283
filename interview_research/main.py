import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .config import AppSettings, load_settings
from .content_cache import ContentCache
from .db import Database
from .events import EventLog
from .gatherers import GatherContext
from .llm import CompletionClient
from .orchestrator import run_job
from .progress import can_retry, progress_view
from .schemas import StartJobRequest
from .tavily import TavilyClient

logger = logging.getLogger("uvicorn.error")

SUPERSEDED_MESSAGE = "Superseded by retry"


def new_job_id() -> str:
    return str(uuid.uuid4())


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_context(request: Request) -> GatherContext:
    return request.app.state.context


def get_job_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.job_tasks


def spawn_job(job_id: str, ctx: GatherContext, job_tasks: Dict[str, asyncio.Task]) -> asyncio.Task:
    async def run_and_cleanup() -> None:
        try:
            await run_job(job_id, ctx)
        finally:
            job_tasks.pop(job_id, None)

    task = asyncio.create_task(run_and_cleanup(), name=f"job:{job_id}")
    job_tasks[job_id] = task
    return task


async def _require_job(db: Database, job_id: str) -> dict:
    job = await db.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


router = APIRouter()


@router.get("/health")
async def health(settings: AppSettings = Depends(get_settings)):
    return {
        "ok": True,
        "search_configured": bool(settings.tavily_api_key),
        "completion_configured": bool(settings.openai_api_key),
    }


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/api/jobs")
async def start_job(
    payload: StartJobRequest,
    db: Database = Depends(get_db),
    ctx: GatherContext = Depends(get_context),
    job_tasks: Dict[str, asyncio.Task] = Depends(get_job_tasks),
):
    if not payload.company:
        raise HTTPException(status_code=400, detail="Company is required.")
    job_id = new_job_id()
    await db.insert_job(
        job_id,
        payload.company,
        role=payload.role,
        country=payload.country,
        role_links=payload.role_links,
        cv_text=payload.cv,
        target_seniority=payload.target_seniority,
        user_id=payload.user_id,
    )
    spawn_job(job_id, ctx, job_tasks)
    logger.info("Job %s queued for %s", job_id, payload.company)
    return {"job_id": job_id, "status": "pending"}


@router.get("/api/jobs/{job_id}/progress")
async def get_progress(
    job_id: str,
    db: Database = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
):
    job = await _require_job(db, job_id)
    return progress_view(
        job,
        stall_threshold_s=settings.progress.stall_threshold_s,
        retry_escalation_s=settings.progress.retry_escalation_s,
        estimate_cap_s=settings.progress.estimate_cap_s,
    )


@router.get("/api/jobs/{job_id}")
async def get_job(job_id: str, db: Database = Depends(get_db)):
    job = await _require_job(db, job_id)
    job.pop("cv_text", None)
    return job


@router.get("/api/jobs/{job_id}/artifacts")
async def get_artifacts(job_id: str, db: Database = Depends(get_db)):
    await _require_job(db, job_id)
    return {
        "job_id": job_id,
        "bundle": await db.get_bundle(job_id),
        "stages": await db.list_stages(job_id),
        "questions": await db.list_questions(job_id),
        "search_audit": await db.list_search_audit(job_id),
    }


@router.get("/api/jobs/{job_id}/events")
async def list_job_events(job_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    await _require_job(db, job_id)
    return {"job_id": job_id, "events": await db.list_events(job_id, after_seq=after_seq)}


@router.post("/api/jobs/{job_id}/retry")
async def retry_job(
    job_id: str,
    db: Database = Depends(get_db),
    settings: AppSettings = Depends(get_settings),
    ctx: GatherContext = Depends(get_context),
    job_tasks: Dict[str, asyncio.Task] = Depends(get_job_tasks),
):
    job = await _require_job(db, job_id)
    now = datetime.now(timezone.utc)
    if not can_retry(job, now, settings.progress.retry_escalation_s):
        raise HTTPException(status_code=409, detail="Job is not failed or stalled; retry is not available yet.")
    if job["status"] != "failed":
        await db.mark_job_failed(job_id, SUPERSEDED_MESSAGE)
    task = job_tasks.pop(job_id, None)
    if task and not task.done():
        task.cancel()
    new_id = new_job_id()
    await db.insert_job(
        new_id,
        job["company"],
        role=job.get("role"),
        country=job.get("country"),
        role_links=job.get("role_links"),
        cv_text=job.get("cv_text"),
        target_seniority=job.get("target_seniority"),
        user_id=job.get("user_id"),
    )
    await ctx.events.emit(job_id, "job_retried", {"new_job_id": new_id})
    spawn_job(new_id, ctx, job_tasks)
    logger.info("Job %s retried as %s", job_id, new_id)
    return {"job_id": new_id, "status": "pending", "retry_of": job_id}


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    llm_client: Optional[Any] = None,
    tavily_client: Optional[Any] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.setLevel(app.state.settings.log_level.upper())
        await app.state.db.init()
        try:
            yield
        finally:
            running = list(app.state.job_tasks.values())
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            await app.state.llm_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="Interview Research Jobs", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.llm_client = llm_client or CompletionClient(
        settings.openai_api_key,
        base_url=settings.openai_base_url,
        max_retries=settings.retry.max_retries,
        retry_initial_delay=settings.retry.initial_delay_s,
    )
    app.state.tavily_client = tavily_client or TavilyClient(
        settings.tavily_api_key,
        max_retries=settings.retry.max_retries,
        retry_initial_delay=settings.retry.initial_delay_s,
    )
    app.state.context = GatherContext(
        settings=settings,
        db=app.state.db,
        cache=ContentCache(
            app.state.db,
            lookup_limit=settings.cache.lookup_limit,
            hydrate_limit=settings.cache.hydrate_limit,
            exclude_domain_min_entries=settings.cache.exclude_domain_min_entries,
        ),
        events=EventLog(app.state.db),
        tavily=app.state.tavily_client,
        llm=app.state.llm_client,
    )
    app.state.job_tasks = {}
    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    try:
        uvicorn.run(
            "interview_research.main:app",
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        pass
