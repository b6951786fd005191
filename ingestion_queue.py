"""Background translation queue backed by Redis/RQ."""
import asyncio
import logging
import traceback
from typing import Optional

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from database import create_job_sessionmaker
from errors import NoContent, NotFound, NovelLibraryError
from models import Novel, TranslationJob, TranslationJobStatus
from pipeline import ChapterIngestionPipeline
from schemas import ChapterIngestRequest
from translation import TranslationProvider, Translator, get_provider

logger = logging.getLogger(__name__)

QUEUE_NAME = 'translation'

# Redis connection
redis_conn = Redis.from_url(settings.redis_url)
# RQ Queue
job_queue = Queue(QUEUE_NAME, connection=redis_conn)


class TranslationQueue:
    """
    Redis-based translation queue manager using RQ.

    Enqueues auto-mode ingestion jobs for background worker processing.
    """

    def __init__(self, queue: Optional[Queue] = None):
        """
        Initialize queue.

        Args:
            queue: RQ Queue instance (uses default if None)
        """
        self.queue = queue or job_queue

    async def create_job(self, db: AsyncSession, novel_id: int, source_text: Optional[str]) -> TranslationJob:
        """Record a queued job for a novel. Nothing is sent to Redis yet."""
        if not source_text:
            raise NoContent()
        if await db.get(Novel, novel_id) is None:
            raise NotFound("Novel", novel_id)

        job = TranslationJob(
            novel_id=novel_id,
            source_text=source_text,
            status=TranslationJobStatus.QUEUED,
        )
        db.add(job)
        await db.commit()
        await db.refresh(job)

        logger.info(f"Created translation job {job.id} for novel {novel_id}")
        return job

    def enqueue_job(self, job_id: int) -> bool:
        """
        Enqueue a translation job to Redis.

        Non-blocking - returns immediately after queueing.

        Args:
            job_id: ID of the translation job

        Returns:
            True if enqueued successfully
        """
        try:
            self.queue.enqueue(
                'ingestion_queue.process_job',
                job_id,
                job_timeout='1h',
                result_ttl=86400,  # Keep result for 24 hours
                failure_ttl=604800,  # Keep failures for 7 days
            )
        except RedisError as e:
            logger.error(f"Failed to enqueue job {job_id}: {e}")
            return False

        logger.info(f"Job {job_id} enqueued successfully")
        return True


async def get_job(db: AsyncSession, job_id: int) -> TranslationJob:
    job = await db.get(TranslationJob, job_id)
    if job is None:
        raise NotFound("Job", job_id)
    return job


async def mark_failed(db: AsyncSession, job_id: int, message: str):
    try:
        await db.execute(
            update(TranslationJob)
            .where(TranslationJob.id == job_id)
            .values(status=TranslationJobStatus.ERROR, error_message=message)
        )
        await db.commit()
    except SQLAlchemyError as update_error:
        await db.rollback()
        logger.error(f"WORKER: Failed to update job status: {update_error}")


async def run_job(
    job_id: int,
    session_factory: async_sessionmaker,
    provider: TranslationProvider,
) -> bool:
    """
    Run auto ingestion for a queued job and record the outcome.

    Returns:
        True when a chapter was created
    """
    async with session_factory() as db:
        job = await db.get(TranslationJob, job_id)
        if job is None:
            logger.error(f"WORKER: Job {job_id} not found in database")
            return False

        logger.info(f"WORKER: Job {job_id} for novel {job.novel_id} ({job.status.value})")
        job.status = TranslationJobStatus.TRANSLATING
        await db.commit()

        pipeline = ChapterIngestionPipeline(db, Translator(provider))
        try:
            chapter = await pipeline.ingest(
                job.novel_id,
                ChapterIngestRequest(mode="auto", raw_text=job.source_text),
            )
        except NovelLibraryError as e:
            logger.error(f"WORKER: Job {job_id} failed: {e}")
            job.status = TranslationJobStatus.ERROR
            job.error_message = e.message[:1000]
            await db.commit()
            return False
        except Exception as e:
            logger.error(f"WORKER: FATAL ERROR processing job {job_id}: {type(e).__name__}: {e}")
            logger.error(f"Traceback:\n{traceback.format_exc()}")
            await db.rollback()
            await mark_failed(db, job_id, "Unexpected error while processing the job")
            return False

        job.status = TranslationJobStatus.DONE
        job.chapter_id = chapter.id
        job.error_message = None
        await db.commit()

        logger.info(f"WORKER: Job {job_id} created chapter {chapter.id}")
        return True


# Worker function (called by RQ worker)
def process_job(job_id: int) -> bool:
    """
    Process a single translation job.

    Each call gets its own event loop and a NullPool engine.

    Args:
        job_id: ID of the translation job to process
    """
    async def _run():
        engine, session_factory = create_job_sessionmaker()
        try:
            return await run_job(job_id, session_factory, get_provider())
        finally:
            await engine.dispose()

    logger.info(f"WORKER: Starting to process job {job_id}")
    success = asyncio.run(_run())
    logger.info(f"WORKER: Job {job_id} processing completed: {'SUCCESS' if success else 'FAILED'}")
    return success
