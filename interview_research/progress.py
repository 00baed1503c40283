"""Job progress steps, the per-job progress handle and stall detection."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from .db import Database, TERMINAL_STATUSES, parse_timestamp


class ProgressStep(Enum):
    INITIALIZING = ("Initializing research...", 5)
    DATA_GATHERING_START = ("Researching company, role and CV...", 15)
    DATA_GATHERING_PARTIAL = ("Research partially complete (continuing)", 25)
    DATA_GATHERING_COMPLETE = ("Research gathering completed", 30)
    RAW_DATA_SAVED = ("Research data saved", 35)
    AI_SYNTHESIS_START = ("Generating interview preparation guide...", 75)
    AI_SYNTHESIS_COMPLETE = ("Interview guide generated", 85)
    PERSIST_START = ("Saving interview stages and questions...", 90)
    PERSIST_COMPLETE = ("Finalizing results...", 95)
    COMPLETED = ("Research completed successfully!", 100)

    @property
    def label(self) -> str:
        return self.value[0]

    @property
    def percentage(self) -> int:
        return self.value[1]


def clamp_percentage(value: Any) -> int:
    try:
        pct = int(round(float(value)))
    except (TypeError, ValueError):
        return 0
    return max(0, min(100, pct))


class ProgressHandle:
    """Writes progress for one job; handed explicitly to each phase."""

    def __init__(self, job_id: str, db: Database):
        self.job_id = job_id
        self.db = db

    async def advance(self, step: ProgressStep, override_percentage: Optional[int] = None) -> bool:
        """Returns False once the job is terminal; terminal rows are never touched."""
        pct = step.percentage if override_percentage is None else override_percentage
        return await self.db.update_progress(self.job_id, step.label, clamp_percentage(pct))

    async def mark_failed(
        self,
        message: str,
        step: Optional[str] = None,
        percentage: Optional[int] = None,
    ) -> bool:
        pct = None if percentage is None else clamp_percentage(percentage)
        return await self.db.mark_job_failed(self.job_id, message or "Research failed", step=step, percentage=pct)

    async def mark_completed(self, overall_fit_score: float, preparation_priorities: List[Any]) -> bool:
        return await self.db.complete_job(
            self.job_id,
            ProgressStep.COMPLETED.label,
            overall_fit_score,
            preparation_priorities,
        )


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def stalled_seconds(job: dict, now: Optional[datetime] = None) -> float:
    if job.get("status") != "processing":
        return 0.0
    updated = parse_timestamp(job.get("updated_at"))
    if not updated:
        return 0.0
    return max(0.0, (_now(now) - updated).total_seconds())


def is_stalled(job: dict, now: Optional[datetime] = None, threshold_s: float = 30) -> bool:
    return job.get("status") == "processing" and stalled_seconds(job, now) > threshold_s


def offer_retry(job: dict, now: Optional[datetime] = None, escalation_s: float = 45) -> bool:
    return job.get("status") == "processing" and stalled_seconds(job, now) > escalation_s


def can_retry(job: dict, now: Optional[datetime] = None, escalation_s: float = 45) -> bool:
    return job.get("status") == "failed" or offer_retry(job, now, escalation_s)


def elapsed_seconds(job: dict, now: Optional[datetime] = None) -> float:
    started = parse_timestamp(job.get("started_at")) or parse_timestamp(job.get("created_at"))
    if not started:
        return 0.0
    return max(0.0, (_now(now) - started).total_seconds())


def estimate_remaining_seconds(job: dict, now: Optional[datetime] = None, cap_s: int = 60) -> Optional[int]:
    status = job.get("status")
    if status == "completed":
        return 0
    if status == "failed":
        return None
    pct = clamp_percentage(job.get("progress_percentage"))
    if pct <= 0:
        return cap_s
    elapsed = elapsed_seconds(job, now)
    remaining = elapsed * (100 - pct) / pct
    return int(min(cap_s, max(0.0, round(remaining))))


def poll_interval_seconds(elapsed_s: float) -> int:
    if elapsed_s < 30:
        return 2
    if elapsed_s < 60:
        return 5
    return 10


def progress_view(
    job: dict,
    now: Optional[datetime] = None,
    stall_threshold_s: float = 30,
    retry_escalation_s: float = 45,
    estimate_cap_s: int = 60,
) -> dict:
    now = _now(now)
    terminal = job.get("status") in TERMINAL_STATUSES
    return {
        "job_id": job.get("job_id"),
        "status": job.get("status"),
        "step": job.get("progress_step"),
        "percentage": clamp_percentage(job.get("progress_percentage")),
        "error": job.get("error_message") if job.get("status") == "failed" else None,
        "is_stalled": is_stalled(job, now, stall_threshold_s),
        "stalled_seconds": round(stalled_seconds(job, now), 1),
        "offer_retry": offer_retry(job, now, retry_escalation_s),
        "estimated_seconds_remaining": estimate_remaining_seconds(job, now, estimate_cap_s),
        "poll_after_seconds": None if terminal else poll_interval_seconds(elapsed_seconds(job, now)),
    }
