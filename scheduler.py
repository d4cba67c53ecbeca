# scheduler.py
import logging
import os
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from pytz import timezone

from models import db, Message
from teams_notifier import DailySummaryJob

logger = logging.getLogger(__name__)

IST = timezone("Asia/Kolkata")
SUMMARY_HOUR, SUMMARY_MINUTE = 21, 0
CLEANUP_INTERVAL_MINUTES = 5


def cleanup_expired_messages(now=None) -> int:
    """Deletes vanishing messages past expiry; notifications go with them."""
    now = now or datetime.utcnow()
    deleted = (Message.query
               .filter(Message.is_vanishing.is_(True),
                       Message.expires_at.isnot(None),
                       Message.expires_at <= now)
               .delete(synchronize_session=False))
    db.session.commit()
    if deleted:
        logger.info("Deleted %s expired vanishing messages", deleted)
    return deleted


def teams_summary_enabled() -> bool:
    return os.environ.get("ENABLE_TEAMS_SUMMARY", "false").lower() == "true"


def create_scheduler(app):
    def run_daily_summary():
        with app.app_context():
            try:
                DailySummaryJob().execute()
            except Exception:
                logger.exception("Teams daily summary job failed")

    def run_cleanup():
        with app.app_context():
            try:
                cleanup_expired_messages()
            except Exception:
                db.session.rollback()
                logger.exception("Vanishing message cleanup failed")

    sched = BackgroundScheduler(timezone=IST)
    if teams_summary_enabled():
        sched.add_job(run_daily_summary, CronTrigger(hour=SUMMARY_HOUR, minute=SUMMARY_MINUTE, timezone=IST),
                      id="teams_daily_summary", replace_existing=True)
        logger.info("Teams daily summary scheduled at %02d:%02d IST", SUMMARY_HOUR, SUMMARY_MINUTE)
    else:
        logger.info("Teams daily summary job is disabled (ENABLE_TEAMS_SUMMARY=false)")
    sched.add_job(run_cleanup, IntervalTrigger(minutes=CLEANUP_INTERVAL_MINUTES),
                  id="vanishing_messages_cleanup", replace_existing=True)
    sched.start()
    return sched
