import logging
from typing import Optional

from .db import Database

logger = logging.getLogger("uvicorn.error")


class EventLog:
    """Persisted phase-transition trace for a job.

    Tracing is observability only; a failed write is logged and dropped.
    """

    def __init__(self, db: Database):
        self.db = db

    async def emit(self, job_id: str, event_type: str, payload: Optional[dict] = None) -> Optional[dict]:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("job_id", job_id)
        logger.info("Job %s %s %s", job_id, event_type, _summary(safe_payload))
        try:
            return await self.db.add_event(job_id, event_type, safe_payload)
        except Exception as exc:
            logger.warning("Job %s trace write failed (%s): %s", job_id, event_type, exc)
            return None

    async def phase(self, job_id: str, gatherer: str, phase: str, **detail) -> Optional[dict]:
        return await self.emit(job_id, "gatherer_phase", {"gatherer": gatherer, "phase": phase, **detail})


def _summary(payload: dict) -> str:
    parts = []
    for key, value in payload.items():
        if key == "job_id":
            continue
        text = str(value)
        if len(text) > 80:
            text = text[:77] + "..."
        parts.append(f"{key}={text}")
    return " ".join(parts)
