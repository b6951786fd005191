"""
Background translation worker.

Usage:
    python worker.py

    Or with RQ directly:
    rq worker translation --url redis://localhost:6379/0

Several workers can run side by side; each job opens its own database engine.
"""
import logging
from rq import Worker
from config import settings
from ingestion_queue import QUEUE_NAME, redis_conn

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def build_worker() -> Worker:
    return Worker([QUEUE_NAME], connection=redis_conn)


def main():
    logger.info(f"Listening on '{QUEUE_NAME}' at {settings.redis_url}")
    build_worker().work(with_scheduler=False)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
