"""
CLI utility for managing the novel library backend.

Usage:
    python cli.py init-db                          # Create database tables
    python cli.py create-admin <username> <password>
    python cli.py list-novels                      # List novels
    python cli.py list-jobs                        # List translation jobs
    python cli.py list-models                      # Gemini models usable for translation
    python cli.py process-queue                    # Re-enqueue queued jobs
"""
import argparse
import getpass
import logging
import sys

from sqlalchemy import func

from accounts import hash_password
from config import settings
from database import SessionLocal, init_db
from models import Chapter, Novel, TranslationJob, TranslationJobStatus, User, UserRole

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def cmd_init_db(args):
    """Create all tables that do not exist yet."""
    tables = init_db()
    print(f"✓ Tables ready: {', '.join(tables)}")


def cmd_create_admin(args):
    """Create an admin account, or promote an existing one."""
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 4:
        print("Error: password must be at least 4 characters")
        sys.exit(1)

    db = SessionLocal()
    try:
        user = db.query(User).filter_by(username=args.username).first()
        if user:
            user.role = UserRole.ADMIN
            user.password_hash = hash_password(password)
            print(f"Promoted existing user '{user.username}' to admin")
        else:
            user = User(username=args.username, password_hash=hash_password(password), role=UserRole.ADMIN)
            db.add(user)
            print(f"Created admin '{args.username}'")
        db.commit()
    finally:
        db.close()


def cmd_list_novels(args):
    """List novels, most recently updated first."""
    db = SessionLocal()
    try:
        rows = (
            db.query(Novel, func.count(Chapter.id))
            .outerjoin(Chapter, Chapter.novel_id == Novel.id)
            .group_by(Novel.id)
            .order_by(Novel.updated_at.desc())
            .limit(args.limit)
            .all()
        )

        print(f"\n{'ID':<5} {'Title':<40} {'Status':<12} {'Chapters':<10} {'Views':<8}")
        print("-" * 75)

        for novel, chapter_count in rows:
            title = novel.title[:37] + "..." if len(novel.title) > 40 else novel.title
            print(f"{novel.id:<5} {title:<40} {novel.status.value:<12} {chapter_count:<10} {novel.views:<8}")

        print(f"\nTotal: {len(rows)} novels")

    finally:
        db.close()


def cmd_list_jobs(args):
    """List translation jobs."""
    db = SessionLocal()
    try:
        query = db.query(TranslationJob)
        if args.status:
            query = query.filter_by(status=TranslationJobStatus(args.status))
        jobs = query.order_by(TranslationJob.created_at.desc()).limit(args.limit).all()

        print(f"\n{'ID':<5} {'Status':<12} {'Novel':<7} {'Chapter':<9} {'Created':<20}")
        print("-" * 55)

        for job in jobs:
            created = job.created_at.strftime("%Y-%m-%d %H:%M:%S")
            chapter = job.chapter_id if job.chapter_id is not None else "-"
            print(f"{job.id:<5} {job.status.value:<12} {job.novel_id:<7} {chapter:<9} {created:<20}")

            if job.error_message:
                print(f"      Error: {job.error_message[:80]}")

        print(f"\nTotal: {len(jobs)} jobs")

    finally:
        db.close()


def cmd_list_models(args):
    """Print the Gemini models that support content generation."""
    from translation import GeminiProvider

    try:
        models = GeminiProvider().list_models()
    except RuntimeError as e:
        print(f"Error: {e}")
        sys.exit(1)

    for name in models:
        print(name)
    print(f"\nTotal: {len(models)} models (configured: {settings.gemini_model})")


def cmd_process_queue(args):
    """Send every job still in QUEUED state to Redis."""
    from ingestion_queue import TranslationQueue

    queue = TranslationQueue()
    db = SessionLocal()
    try:
        jobs = (
            db.query(TranslationJob)
            .filter_by(status=TranslationJobStatus.QUEUED)
            .order_by(TranslationJob.created_at.asc())
            .all()
        )
        print(f"Found {len(jobs)} queued jobs")

        failed = 0
        for job in jobs:
            if not queue.enqueue_job(job.id):
                failed += 1

        print(f"Enqueued {len(jobs) - failed} jobs, {failed} failed")
    finally:
        db.close()


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Novel Library Backend CLI"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    init_db_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_db_parser.set_defaults(func=cmd_init_db)

    create_admin_parser = subparsers.add_parser("create-admin", help="Create or promote an admin account")
    create_admin_parser.add_argument("username", help="Account name")
    create_admin_parser.add_argument("password", nargs="?", help="Password (prompted when omitted)")
    create_admin_parser.set_defaults(func=cmd_create_admin)

    list_novels_parser = subparsers.add_parser("list-novels", help="List novels")
    list_novels_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of novels to show"
    )
    list_novels_parser.set_defaults(func=cmd_list_novels)

    list_jobs_parser = subparsers.add_parser("list-jobs", help="List translation jobs")
    list_jobs_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of jobs to show"
    )
    list_jobs_parser.add_argument(
        "--status",
        choices=[s.value for s in TranslationJobStatus],
        help="Only show jobs in this state"
    )
    list_jobs_parser.set_defaults(func=cmd_list_jobs)

    list_models_parser = subparsers.add_parser("list-models", help="List available Gemini models")
    list_models_parser.set_defaults(func=cmd_list_models)

    process_queue_parser = subparsers.add_parser(
        "process-queue",
        help="Enqueue all queued jobs"
    )
    process_queue_parser.set_defaults(func=cmd_process_queue)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    args.func(args)


if __name__ == "__main__":
    main()
