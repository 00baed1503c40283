"""Checkpointed writes of a finished job.

Checkpoints run in a fixed order, each under its own timeout. Only the final
status write raises; the others log a warning and yield ``None``.
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional

from .db import Database
from .errors import PersistenceError
from .progress import ProgressHandle, ProgressStep
from .schemas import JobRequest
from .synthesis import SynthesisBundle

logger = logging.getLogger("uvicorn.error")

STAGE_FOR_CATEGORY = {
    "behavioral": 1,
    "cultural_fit": 1,
    "technical": 2,
    "role_specific": 2,
    "situational": 3,
    "experience_based": 3,
}
DEFAULT_STAGE = 4
DEFAULT_CONFIDENCE = 0.8


def normalize_difficulty(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text.startswith("easy"):
        return "Easy"
    if text.startswith("hard"):
        return "Hard"
    return "Medium"


def normalize_confidence(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONFIDENCE
    return max(0.0, min(1.0, score))


def stage_id_for(category: str, stage_ids: Dict[int, int], first_stage_id: int) -> int:
    target = STAGE_FOR_CATEGORY.get((category or "").strip().lower(), DEFAULT_STAGE)
    return stage_ids.get(target) or first_stage_id


def stage_rows(bundle: SynthesisBundle) -> List[Dict[str, Any]]:
    rows = []
    for idx, stage in enumerate(bundle.result.interview_stages):
        row = stage.model_dump()
        if row.get("order_index") is None:
            row["order_index"] = idx + 1
        rows.append(row)
    return rows


def question_rows(bundle: SynthesisBundle, stage_ids: Dict[int, int], first_stage_id: int) -> List[Dict[str, Any]]:
    rows = []
    for category_key, questions in bundle.result.interview_questions_data.items():
        for question in questions:
            text = (question.question or "").strip()
            if not text:
                continue
            category = question.category or category_key
            rows.append(
                {
                    "stage_id": stage_id_for(category, stage_ids, first_stage_id),
                    "question": text,
                    "category": category,
                    "question_type": "synthesized",
                    "difficulty": normalize_difficulty(question.difficulty),
                    "rationale": question.rationale,
                    "suggested_answer_approach": question.suggested_answer_approach,
                    "evaluation_criteria": question.evaluation_criteria,
                    "follow_up_questions": question.follow_up_questions,
                    "star_story_fit": question.star_story_fit,
                    "company_context": question.company_context,
                    "confidence_score": normalize_confidence(question.confidence_score),
                }
            )
    return rows


class PersistenceWriter:
    def __init__(self, db: Database, checkpoint_timeout_s: float = 30.0):
        self.db = db
        self.checkpoint_timeout_s = checkpoint_timeout_s

    async def _checkpoint(self, job_id: str, name: str, op: Awaitable[Any]) -> Optional[Any]:
        try:
            return await asyncio.wait_for(op, timeout=self.checkpoint_timeout_s)
        except asyncio.TimeoutError:
            logger.warning("Job %s checkpoint %s timed out after %ss", job_id, name, self.checkpoint_timeout_s)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Job %s checkpoint %s failed: %s", job_id, name, exc)
        return None

    async def _save_raw(self, job: JobRequest, raw: Dict[str, Any]) -> bool:
        await self.db.upsert_raw_artifacts(
            job.job_id,
            job.user_id,
            raw.get("company_research"),
            raw.get("job_research"),
            raw.get("cv_research"),
        )
        return True

    async def save_raw(self, job: JobRequest, raw: Dict[str, Any]) -> Optional[bool]:
        return await self._checkpoint(job.job_id, "raw_artifacts", self._save_raw(job, raw))

    async def _save_questions(self, job: JobRequest, bundle: SynthesisBundle, stages: List[dict]) -> int:
        stage_ids = {int(s["order_index"]): s["id"] for s in stages if s.get("order_index") is not None}
        rows = question_rows(bundle, stage_ids, stages[0]["id"])
        return await self.db.insert_questions(job.job_id, rows)

    async def save(
        self,
        job: JobRequest,
        raw: Dict[str, Any],
        bundle: SynthesisBundle,
        progress: ProgressHandle,
    ) -> Dict[str, Any]:
        summary: Dict[str, Any] = {}
        summary["raw_saved"] = bool(await self.save_raw(job, raw))
        synthesis_saved = await self._checkpoint(
            job.job_id,
            "synthesis",
            self.db.update_bundle_synthesis(job.job_id, bundle.as_record()),
        )
        if synthesis_saved is False:
            logger.warning("Job %s checkpoint synthesis found no artifact bundle to update", job.job_id)
        summary["synthesis_saved"] = bool(synthesis_saved)
        stages = await self._checkpoint(job.job_id, "stages", self.db.insert_stages(job.job_id, stage_rows(bundle)))
        summary["stages"] = len(stages or [])
        if stages:
            inserted = await self._checkpoint(job.job_id, "questions", self._save_questions(job, bundle, stages))
            summary["questions"] = inserted or 0
        else:
            logger.warning("Job %s has no interview stages; skipping question rows", job.job_id)
            summary["questions"] = 0

        await progress.advance(ProgressStep.PERSIST_COMPLETE)

        try:
            completed = await asyncio.wait_for(
                progress.mark_completed(bundle.result.overall_fit_score(), bundle.result.preparation_priorities()),
                timeout=self.checkpoint_timeout_s,
            )
        except asyncio.TimeoutError as exc:
            raise PersistenceError("Timed out saving final job status", checkpoint="final_status") from exc
        except Exception as exc:
            raise PersistenceError(f"Failed to save final job status: {exc}", checkpoint="final_status") from exc
        if not completed:
            raise PersistenceError("Job is no longer active; final status not written", checkpoint="final_status")
        logger.info(
            "Job %s persisted: %s stages, %s questions",
            job.job_id,
            summary["stages"],
            summary["questions"],
        )
        return summary
