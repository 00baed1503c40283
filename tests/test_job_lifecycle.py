from datetime import datetime, timedelta, timezone

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from interview_research.config import TimeoutConfig
from interview_research.content_cache import ContentCache
from interview_research.errors import TransientNetworkError
from interview_research.events import EventLog
from interview_research.gatherers import GatherContext
from interview_research.orchestrator import run_job
from interview_research.progress import ProgressStep
from tests.conftest import make_settings, wait_for_job
from tests.fakes import FakeCompletionClient, FakeTavilyClient, RecordingDatabase

START_PAYLOAD = {
    "company": "Acme",
    "role": "Backend Engineer",
    "country": "US",
    "role_links": ["https://acme.test/careers/jobs/1"],
    "cv": "Backend engineer with six years of Python and Kafka.",
    "target_seniority": "Senior",
    "user_id": "user-1",
}


async def _start(client: AsyncClient, app, payload=None) -> str:
    res = await client.post("/api/jobs", json=payload or START_PAYLOAD)
    assert res.status_code == 200
    data = res.json()
    assert data["status"] == "pending"
    await wait_for_job(app, data["job_id"])
    return data["job_id"]


@pytest.mark.asyncio
async def test_job_completes_end_to_end(client):
    app = client.app
    job_id = await _start(client, app)

    progress = (await client.get(f"/api/jobs/{job_id}/progress")).json()
    assert progress["status"] == "completed"
    assert progress["percentage"] == 100
    assert progress["estimated_seconds_remaining"] == 0
    assert progress["poll_after_seconds"] is None

    job = (await client.get(f"/api/jobs/{job_id}")).json()
    assert "cv_text" not in job
    assert job["overall_fit_score"] == 72.0
    assert job["target_seniority"] == "senior"

    artifacts = (await client.get(f"/api/jobs/{job_id}/artifacts")).json()
    assert artifacts["bundle"]["processing_status"] == "complete"
    assert artifacts["bundle"]["company_research_raw"]["company_insights"]["industry"] == "Software"
    assert artifacts["bundle"]["job_analysis_raw"]["job_requirements"]["technical_skills"] == ["Python", "PostgreSQL"]
    assert artifacts["bundle"]["cv_analysis_raw"]["cv_analysis"]["current_role"] == "Backend Engineer"
    assert [stage["order_index"] for stage in artifacts["stages"]] == [1, 2]
    assert len(artifacts["questions"]) == 3
    assert {row["api_type"] for row in artifacts["search_audit"]} == {"search", "extract"}

    events = (await client.get(f"/api/jobs/{job_id}/events")).json()["events"]
    types = [ev["event_type"] for ev in events]
    assert types[0] == "job_started"
    assert types[-1] == "job_completed"
    assert types.count("gatherer_settled") == 3
    assert [ev["seq"] for ev in events] == sorted(ev["seq"] for ev in events)

    later = (await client.get(f"/api/jobs/{job_id}/events", params={"after_seq": events[-2]["seq"]})).json()
    assert [ev["event_type"] for ev in later["events"]] == ["job_completed"]


@pytest.mark.asyncio
async def test_slow_job_analysis_is_dropped(app_factory):
    fake_llm = FakeCompletionClient(delays={"job": 1.0})
    app, _, _ = app_factory(
        fake_llm=fake_llm,
        timeouts=TimeoutConfig(job_analysis_s=0.1, total_gather_s=3.0, synthesis_s=3.0, db_checkpoint_s=3.0),
    )
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            job_id = await _start(client, app)
            job = await app.state.db.get_job(job_id)
            assert job["status"] == "completed"
            bundle = await app.state.db.get_bundle(job_id)
            assert bundle["job_analysis_raw"] is None
            assert bundle["company_research_raw"] is not None
            events = await app.state.db.list_events(job_id)
            settled = {ev["payload"]["gatherer"]: ev["payload"] for ev in events if ev["event_type"] == "gatherer_settled"}
            assert settled["job_research"]["ok"] is False
            assert "timed out" in settled["job_research"]["error"]


@pytest.mark.asyncio
async def test_synthesis_transport_failure_fails_job(app_factory):
    fake_llm = FakeCompletionClient(failures={"synthesis": TransientNetworkError("down", service="completion")})
    app, _, _ = app_factory(fake_llm=fake_llm)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            job_id = await _start(client, app)
            progress = (await client.get(f"/api/jobs/{job_id}/progress")).json()
            assert progress["status"] == "failed"
            assert progress["error"].startswith("AI synthesis failed")
            assert progress["percentage"] == 75
            bundle = await app.state.db.get_bundle(job_id)
            assert bundle["processing_status"] == "raw_data_saved"
            assert await app.state.db.list_stages(job_id) == []


@pytest.mark.asyncio
async def test_missing_completion_key_fails_fast(app_factory):
    fake_llm = FakeCompletionClient(api_key=None)
    app, _, tavily = app_factory(fake_llm=fake_llm)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            job_id = await _start(client, app)
            job = await app.state.db.get_job(job_id)
            assert job["status"] == "failed"
            assert "OPENAI_API_KEY" in job["error_message"]
            assert tavily.search_calls == []


@pytest.mark.asyncio
async def test_start_rejects_blank_company(client):
    res = await client.post("/api/jobs", json={"company": "   "})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_start_rejects_unknown_seniority(client):
    res = await client.post("/api/jobs", json={"company": "Acme", "target_seniority": "principal"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    assert (await client.get("/api/jobs/nope/progress")).status_code == 404
    assert (await client.get("/api/jobs/nope/artifacts")).status_code == 404
    assert (await client.post("/api/jobs/nope/retry")).status_code == 404


@pytest.mark.asyncio
async def test_retry_refused_for_completed_job(client):
    job_id = await _start(client, client.app)
    res = await client.post(f"/api/jobs/{job_id}/retry")
    assert res.status_code == 409


@pytest.mark.asyncio
async def test_retry_failed_job_creates_new_job(app_factory):
    fake_llm = FakeCompletionClient(failures={"synthesis": TransientNetworkError("down")})
    app, _, _ = app_factory(fake_llm=fake_llm)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            job_id = await _start(client, app)
            fake_llm.failures.clear()
            res = await client.post(f"/api/jobs/{job_id}/retry")
            assert res.status_code == 200
            data = res.json()
            assert data["retry_of"] == job_id
            assert data["job_id"] != job_id
            await wait_for_job(app, data["job_id"])
            new_job = await app.state.db.get_job(data["job_id"])
            assert new_job["status"] == "completed"
            assert new_job["company"] == "Acme"
            assert new_job["cv_text"] == START_PAYLOAD["cv"]


@pytest.mark.asyncio
async def test_retry_stalled_job_supersedes_it(client):
    app = client.app
    db = app.state.db
    await db.insert_job("stalled-1", "Acme", role="Backend Engineer")
    await db.update_progress("stalled-1", "Researching company, role and CV...", 15)

    res = await client.post("/api/jobs/stalled-1/retry")
    assert res.status_code == 409

    old = (datetime.now(timezone.utc) - timedelta(seconds=120)).isoformat().replace("+00:00", "Z")
    await db.execute("UPDATE jobs SET updated_at=? WHERE job_id=?", (old, "stalled-1"))
    progress = (await client.get("/api/jobs/stalled-1/progress")).json()
    assert progress["is_stalled"] is True
    assert progress["offer_retry"] is True

    res = await client.post("/api/jobs/stalled-1/retry")
    assert res.status_code == 200
    await wait_for_job(app, res.json()["job_id"])
    superseded = await db.get_job("stalled-1")
    assert superseded["status"] == "failed"
    assert superseded["error_message"] == "Superseded by retry"
    assert superseded["progress_percentage"] == 15


@pytest.mark.asyncio
async def test_repeat_request_reuses_cached_content(client):
    app = client.app
    tavily = client.fake_tavily
    await _start(client, app)
    first_calls = len(tavily.search_calls) + len(tavily.extract_calls)
    await _start(client, app)
    second_calls = len(tavily.search_calls) + len(tavily.extract_calls) - first_calls
    assert second_calls < first_calls
    assert len(client.fake_llm.calls_for("cv")) == 1

    rows = await app.state.db.fetchall("SELECT url, times_reused FROM content_cache WHERE company='Acme'")
    reused = {row["url"]: row["times_reused"] for row in rows}
    assert reused["https://acme.test/careers/jobs/1"] == 1
    assert reused["https://www.glassdoor.com/Interview/Acme-Interview-Questions-E1.htm"] >= 1


@pytest.mark.asyncio
async def test_run_job_reports_each_step_in_order(tmp_path):
    db = RecordingDatabase(str(tmp_path / "steps.db"))
    await db.init()
    ctx = GatherContext(
        settings=make_settings(tmp_path),
        db=db,
        cache=ContentCache(db),
        events=EventLog(db),
        tavily=FakeTavilyClient(),
        llm=FakeCompletionClient(),
    )
    await db.insert_job("job-steps", "Acme", role="Backend Engineer", cv_text=START_PAYLOAD["cv"])
    assert (await db.get_job("job-steps"))["status"] == "pending"

    await run_job("job-steps", ctx)

    kinds = [write[0] for write in db.status_writes]
    percentages = [write[2] for write in db.status_writes]
    assert kinds[-1] == "completed"
    assert kinds.count("completed") == 1
    assert "failed" not in kinds
    assert all(write[3] for write in db.status_writes)
    assert percentages == sorted(percentages)
    assert {5, 15, 30, 35, 75, 85, 90, 95, 100} <= set(percentages)
    assert percentages[:2] == [5, 15]

    job = await db.get_job("job-steps")
    assert job["status"] == "completed"
    assert job["progress_step"] == ProgressStep.COMPLETED.label
