import logging
from collections import Counter
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings
from .models import CleanRecord, Job

logger = logging.getLogger(__name__)


# ----------------------------
# Time helpers
# ----------------------------
def now_utc():
    return datetime.now(tz=timezone.utc)


# ----------------------------
# Expiry sweep
# ----------------------------
def expire_stale_records(session_factory: sessionmaker, ttl_days: int, now: datetime | None = None) -> int:
    """
    Flag clean records older than ttl_days as expired and roll the counts
    up into each originating job's `expired` figure. Expired records keep
    taking part in dedup.
    """
    threshold = (now or now_utc()) - timedelta(days=ttl_days)
    db: Session = session_factory()
    try:
        rows = (
            db.query(CleanRecord)
            .filter(
                CleanRecord.is_expired == False,  # noqa: E712
                CleanRecord.created_at <= threshold,
            )
            .all()
        )
        per_job = Counter()
        for r in rows:
            r.is_expired = True
            per_job[r.job_id] += 1

        for job_id, n in per_job.items():
            job = db.get(Job, job_id)
            if job is not None:
                job.expired_records = (job.expired_records or 0) + n

        db.commit()
        logger.info("[expiry] expired %d records across %d jobs (threshold=%s)", len(rows), len(per_job), threshold.isoformat())
        return len(rows)
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# ----------------------------
# Scheduler bootstrap
# ----------------------------
def build_scheduler(settings: Settings, session_factory: sessionmaker) -> AsyncIOScheduler:
    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    # Daily sweep, off-peak
    scheduler.add_job(
        expire_stale_records,
        "cron",
        hour=settings.EXPIRY_SWEEP_HOUR, minute=0,
        args=[session_factory, settings.RECORD_TTL_DAYS],
        id="daily_expiry_sweep",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    return scheduler
