import asyncio
from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from interview_research.config import AppSettings, RetryConfig, TimeoutConfig
from interview_research.content_cache import ContentCache
from interview_research.db import Database
from interview_research.events import EventLog
from interview_research.gatherers import GatherContext
from interview_research.main import create_app
from tests.fakes import FakeCompletionClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        tavily_api_key="test-tavily",
        openai_api_key="test-openai",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        timeouts=TimeoutConfig(
            company_research_s=2.0,
            job_analysis_s=2.0,
            cv_analysis_s=2.0,
            total_gather_s=5.0,
            tavily_search_s=2.0,
            tavily_extract_s=2.0,
            completion_s=2.0,
            synthesis_s=5.0,
            db_checkpoint_s=5.0,
        ),
        retry=RetryConfig(max_retries=0, initial_delay_s=0.0),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


async def wait_for_job(app, job_id: str, timeout: float = 5.0) -> None:
    task = app.state.job_tasks.get(job_id)
    if task is not None:
        await asyncio.wait({task}, timeout=timeout)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeCompletionClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeCompletionClient()
        tavily_client = fake_tavily or FakeTavilyClient()
        app = create_app(settings, llm_client=llm_client, tavily_client=tavily_client)
        return app, llm_client, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, llm_client, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
def context_factory(tmp_path: Path, db: Database):
    def _factory(
        *,
        fake_llm: FakeCompletionClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        **settings_overrides,
    ) -> GatherContext:
        settings = make_settings(tmp_path, **settings_overrides)
        return GatherContext(
            settings=settings,
            db=db,
            cache=ContentCache(db),
            events=EventLog(db),
            tavily=fake_tavily or FakeTavilyClient(),
            llm=fake_llm or FakeCompletionClient(),
        )

    return _factory
