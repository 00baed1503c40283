import asyncio
import logging

from .coordinator import Outcome, gather
from .db import TERMINAL_STATUSES
from .errors import ConfigError, ResearchError, SynthesisFailure
from .gatherers import GatherContext
from .persistence import PersistenceWriter
from .progress import ProgressHandle, ProgressStep
from .schemas import JobRequest
from .synthesis import SynthesisEngine

logger = logging.getLogger("uvicorn.error")

CANCELLED_MESSAGE = "Research cancelled"


async def run_job(job_id: str, ctx: GatherContext) -> None:
    """Drive one job from pending to completed or failed.

    Every failure ends in ``mark_failed`` with a readable message; nothing is
    raised to the caller except cancellation.
    """
    job_row = await ctx.db.get_job(job_id)
    if not job_row:
        logger.warning("Job %s not found; nothing to run", job_id)
        return
    if job_row["status"] in TERMINAL_STATUSES:
        logger.info("Job %s already %s; not running again", job_id, job_row["status"])
        return
    job = JobRequest.from_job(job_row)
    progress = ProgressHandle(job_id, ctx.db)
    writer = PersistenceWriter(ctx.db, ctx.settings.timeouts.db_checkpoint_s)
    engine = SynthesisEngine(ctx.llm, ctx.settings)

    try:
        await progress.advance(ProgressStep.INITIALIZING)
        await ctx.events.emit(
            job_id,
            "job_started",
            {
                "company": job.company,
                "role": job.role,
                "country": job.country,
                "role_links": len(job.role_links),
                "has_cv": bool(job.cv_text),
            },
        )
        if not ctx.llm.enabled:
            raise ConfigError("Completion service credential is not configured (OPENAI_API_KEY)")

        await progress.advance(ProgressStep.DATA_GATHERING_START)

        async def on_settled(outcome: Outcome, settled: int, total: int) -> None:
            await ctx.events.emit(
                job_id,
                "gatherer_settled",
                {"gatherer": outcome.key, "ok": outcome.ok, "error": outcome.error, "duration_ms": outcome.duration_ms},
            )
            if settled < total:
                await progress.advance(ProgressStep.DATA_GATHERING_PARTIAL)

        gathered = await gather(ctx, job, on_settled=on_settled)
        await progress.advance(ProgressStep.DATA_GATHERING_COMPLETE)
        await ctx.events.emit(job_id, "gather_complete", {"succeeded": gathered.succeeded})

        raw = gathered.as_raw()
        if await writer.save_raw(job, raw):
            await progress.advance(ProgressStep.RAW_DATA_SAVED)

        await progress.advance(ProgressStep.AI_SYNTHESIS_START)
        bundle = await engine.synthesize(job, raw)
        if bundle is None:
            raise SynthesisFailure("AI synthesis failed: the completion service did not return a result")
        await progress.advance(ProgressStep.AI_SYNTHESIS_COMPLETE)
        await ctx.events.emit(
            job_id,
            "synthesis_complete",
            {
                "stages": len(bundle.result.interview_stages),
                "questions": bundle.result.question_count(),
                "model": bundle.synthesis_metadata.get("model"),
            },
        )

        await progress.advance(ProgressStep.PERSIST_START)
        summary = await writer.save(job, raw, bundle, progress)
        await ctx.events.emit(job_id, "job_completed", summary)
        logger.info("Job %s completed", job_id)
    except asyncio.CancelledError:
        await progress.mark_failed(CANCELLED_MESSAGE)
        await ctx.events.emit(job_id, "job_failed", {"error": CANCELLED_MESSAGE})
        raise
    except ResearchError as exc:
        logger.warning("Job %s failed: %s", job_id, exc)
        await _fail(ctx, progress, job_id, exc.message)
    except Exception as exc:
        logger.exception("Job %s failed unexpectedly", job_id)
        await _fail(ctx, progress, job_id, f"Research failed: {exc.__class__.__name__}: {exc}")


async def _fail(ctx: GatherContext, progress: ProgressHandle, job_id: str, message: str) -> None:
    try:
        await progress.mark_failed(message)
    except Exception as exc:
        logger.error("Job %s could not be marked failed: %s", job_id, exc)
        return
    await ctx.events.emit(job_id, "job_failed", {"error": message})
