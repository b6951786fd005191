import json
import os

# Settings are read at import time, so the test environment goes in first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["DATABASE_URL_SYNC"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["TRANSLATION_RETRY_DELAY"] = "0"
os.environ["GEMINI_API_KEY"] = ""

import pytest
from unittest.mock import MagicMock
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from accounts import AccountService
from catalog import Catalog
from database import Base, get_db
from ingestion_queue import TranslationQueue
from main import app, get_translation_queue
from models import UserRole
from schemas import NovelCreate
from translation import get_provider


class StubProvider:
    """
    Scripted translation provider.

    Responses are consumed in order; the last one repeats. Exceptions in
    the script are raised instead of returned.
    """

    def __init__(self, *responses):
        self.responses = list(responses)
        self.prompts = []

    @property
    def calls(self) -> int:
        return len(self.prompts)

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, BaseException):
            raise response
        return response


class ProviderError(Exception):
    """Error carrying an HTTP-like status code, shaped like SDK API errors."""

    def __init__(self, code: int, message: str = ""):
        super().__init__(f"{code} {message}".strip())
        self.code = code


def chapter_json(**fields) -> str:
    data = {
        "chapterNumber": None,
        "title": None,
        "originalTitle": None,
        "translatedContent": "<p>Translated text</p>",
    }
    data.update(fields)
    return json.dumps(data, ensure_ascii=False)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def provider():
    return StubProvider(chapter_json())


@pytest.fixture
def rq_queue():
    """Stand-in for the RQ queue so nothing talks to Redis."""
    return MagicMock()


@pytest.fixture
async def client(session_factory, provider, rq_queue):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_translation_queue] = lambda: TranslationQueue(queue=rq_queue)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def make_novel(session_factory):
    """Create a novel directly through the catalog."""
    async def _make_novel(title="Isekai Tale", **fields):
        async with session_factory() as session:
            novel = await Catalog(session).create_novel(NovelCreate(title=title, **fields))
            return novel.id
    return _make_novel


@pytest.fixture
def login(client, session_factory):
    """Create an account with the given role and log the client in."""
    async def _login(role=UserRole.READER, username=None, password="secret"):
        username = username or f"{role.value}_user"
        async with session_factory() as session:
            await AccountService(session).register(username, password, role=role)
        response = await client.post("/login", json={"username": username, "password": password})
        assert response.status_code == 200
        return response.json()
    return _login
