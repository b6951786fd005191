"""Tests for the background translation queue."""
from unittest.mock import MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.exc import OperationalError

from errors import NoContent, NotFound
from ingestion_queue import QUEUE_NAME, TranslationQueue, get_job, run_job
from models import Chapter, TranslationJobStatus
from pipeline import ChapterIngestionPipeline
from tests.conftest import ProviderError, StubProvider, chapter_json


@pytest.fixture
async def novel_id(make_novel):
    return await make_novel("Queued Novel")


class TestTranslationQueue:
    async def test_create_job(self, db, novel_id):
        queue = TranslationQueue(queue=MagicMock())

        job = await queue.create_job(db, novel_id, "raw chapter")

        assert job.id is not None
        assert job.status == TranslationJobStatus.QUEUED
        assert job.source_text == "raw chapter"
        queue.queue.enqueue.assert_not_called()

    async def test_create_job_requires_text(self, db, novel_id):
        with pytest.raises(NoContent):
            await TranslationQueue(queue=MagicMock()).create_job(db, novel_id, "")

    async def test_create_job_requires_novel(self, db):
        with pytest.raises(NotFound):
            await TranslationQueue(queue=MagicMock()).create_job(db, 999, "text")

    def test_enqueue_job(self):
        rq_queue = MagicMock()

        assert TranslationQueue(queue=rq_queue).enqueue_job(7) is True

        args, kwargs = rq_queue.enqueue.call_args
        assert args == ("ingestion_queue.process_job", 7)
        assert kwargs["job_timeout"] == "1h"

    def test_enqueue_job_redis_down(self):
        rq_queue = MagicMock()
        rq_queue.enqueue.side_effect = RedisConnectionError("refused")

        assert TranslationQueue(queue=rq_queue).enqueue_job(7) is False

    def test_queue_name(self):
        assert QUEUE_NAME == "translation"


class TestRunJob:
    async def test_success_creates_chapter(self, db, session_factory, novel_id):
        job = await TranslationQueue(queue=MagicMock()).create_job(db, novel_id, "第1話 始まり")
        provider = StubProvider(chapter_json(chapterNumber=1, title="第1話 始まり"))

        assert await run_job(job.id, session_factory, provider) is True

        async with session_factory() as session:
            stored = await get_job(session, job.id)
            chapter = await session.get(Chapter, stored.chapter_id)
        assert stored.status == TranslationJobStatus.DONE
        assert stored.error_message is None
        assert chapter.title == "Chapter 1 : 始まり"
        assert chapter.original_content == "第1話 始まり"

    async def test_failure_recorded_on_job(self, db, session_factory, novel_id):
        job = await TranslationQueue(queue=MagicMock()).create_job(db, novel_id, "text")
        provider = StubProvider(ProviderError(429, "quota"))

        assert await run_job(job.id, session_factory, provider) is False

        async with session_factory() as session:
            stored = await get_job(session, job.id)
        assert stored.status == TranslationJobStatus.ERROR
        assert "busy" in stored.error_message
        assert stored.chapter_id is None
        assert provider.calls == 3

    async def test_unexpected_error_marks_job_failed(self, db, session_factory, novel_id, monkeypatch):
        job = await TranslationQueue(queue=MagicMock()).create_job(db, novel_id, "text")

        async def broken(self, novel_id):
            raise OperationalError("SELECT max(chapter_number)", {}, Exception("database is locked"))

        monkeypatch.setattr(ChapterIngestionPipeline, "next_chapter_number", broken)

        assert await run_job(job.id, session_factory, StubProvider(chapter_json())) is False

        async with session_factory() as session:
            stored = await get_job(session, job.id)
        assert stored.status == TranslationJobStatus.ERROR
        assert stored.error_message == "Unexpected error while processing the job"
        assert stored.chapter_id is None

    async def test_missing_job(self, session_factory):
        assert await run_job(12345, session_factory, StubProvider(chapter_json())) is False

    async def test_get_job_missing(self, db):
        with pytest.raises(NotFound):
            await get_job(db, 1)
