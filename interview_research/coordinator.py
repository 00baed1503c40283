"""Concurrent gather phase: run every gatherer, wait for all, combine by key."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .gatherers import (
    GatherContext,
    gather_company_research,
    gather_cv_research,
    gather_job_research,
)
from .schemas import JobRequest

logger = logging.getLogger("uvicorn.error")

GathererFn = Callable[[GatherContext, JobRequest], Awaitable[Optional[Dict[str, Any]]]]
SettledCallback = Callable[["Outcome", int, int], Awaitable[None]]

COMPANY = "company_research"
JOB = "job_research"
CV = "cv_research"


@dataclass
class Outcome:
    key: str
    ok: bool
    value: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: int = 0


@dataclass
class GatherResult:
    company_research: Optional[Dict[str, Any]] = None
    job_research: Optional[Dict[str, Any]] = None
    cv_research: Optional[Dict[str, Any]] = None
    outcomes: Dict[str, Outcome] = field(default_factory=dict)

    def as_raw(self) -> Dict[str, Optional[Dict[str, Any]]]:
        return {
            COMPANY: self.company_research,
            JOB: self.job_research,
            CV: self.cv_research,
        }

    @property
    def succeeded(self) -> List[str]:
        return [key for key, value in self.as_raw().items() if value is not None]


def default_gatherers(ctx: GatherContext) -> List[Tuple[str, GathererFn, float]]:
    timeouts = ctx.settings.timeouts
    return [
        (COMPANY, gather_company_research, timeouts.company_research_s),
        (JOB, gather_job_research, timeouts.job_analysis_s),
        (CV, gather_cv_research, timeouts.cv_analysis_s),
    ]


async def _run_one(key: str, fn: GathererFn, ctx: GatherContext, job: JobRequest, deadline_s: float) -> Outcome:
    started = time.monotonic()
    try:
        value = await asyncio.wait_for(fn(ctx, job), timeout=deadline_s)
    except asyncio.TimeoutError:
        return Outcome(key, False, None, f"timed out after {deadline_s:g}s", int((time.monotonic() - started) * 1000))
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        return Outcome(key, False, None, f"{exc.__class__.__name__}: {exc}", int((time.monotonic() - started) * 1000))
    elapsed = int((time.monotonic() - started) * 1000)
    if value is None:
        return Outcome(key, False, None, "no result", elapsed)
    return Outcome(key, True, value, None, elapsed)


async def gather(
    ctx: GatherContext,
    job: JobRequest,
    on_settled: Optional[SettledCallback] = None,
    gatherers: Optional[List[Tuple[str, GathererFn, float]]] = None,
    overall_deadline_s: Optional[float] = None,
) -> GatherResult:
    """Run all gatherers concurrently and never raise.

    Each gatherer has its own deadline; anything still running at the overall
    deadline is cancelled and its field stays ``None``. ``on_settled`` is
    awaited once per settled gatherer with (outcome, settled_count, total).
    """
    plan = gatherers if gatherers is not None else default_gatherers(ctx)
    deadline = overall_deadline_s if overall_deadline_s is not None else ctx.settings.timeouts.total_gather_s
    tasks: Dict[asyncio.Task, str] = {
        asyncio.create_task(_run_one(key, fn, ctx, job, timeout_s), name=f"gather:{job.job_id}:{key}"): key
        for key, fn, timeout_s in plan
    }
    outcomes: Dict[str, Outcome] = {}
    pending = set(tasks)
    loop = asyncio.get_running_loop()
    end_at = loop.time() + deadline
    try:
        while pending:
            remaining = end_at - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                key = tasks[task]
                if task.cancelled():
                    outcome = Outcome(key, False, None, "cancelled")
                elif task.exception() is not None:
                    outcome = Outcome(key, False, None, str(task.exception()))
                else:
                    outcome = task.result()
                outcomes[key] = outcome
                if on_settled is not None:
                    try:
                        await on_settled(outcome, len(outcomes), len(tasks))
                    except Exception as exc:
                        logger.warning("Job %s on_settled callback failed: %s", job.job_id, exc)
    finally:
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
    for task in pending:
        key = tasks[task]
        outcomes[key] = Outcome(key, False, None, f"abandoned at overall deadline {deadline:g}s")
        logger.warning("Job %s gatherer %s abandoned at overall deadline", job.job_id, key)

    result = GatherResult(outcomes=outcomes)
    for key, outcome in outcomes.items():
        if outcome.ok:
            setattr(result, key, outcome.value)
        elif outcome.error != "no result":
            logger.warning("Job %s gatherer %s failed: %s", job.job_id, key, outcome.error)
    return result
