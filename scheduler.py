from apscheduler.schedulers.background import BackgroundScheduler
import logging

from extensions import get_services

logger = logging.getLogger("scheduler")

scheduler = BackgroundScheduler()


def sync_allowlist_job(app):
    with app.app_context():
        try:
            logger.info("Running scheduled allowlist sync task...")
            summary = get_services().reconciler.run()
            logger.info(
                f"Allowlist sync completed: synced={summary['synced']} "
                f"failed={summary['failed']} backfilled={summary['backfilled']}"
            )
            return summary
        except Exception:
            # 下个周期会重新扫描未同步的行
            logger.exception("Allowlist sync task failed:")
            return None


def start_scheduler(app):
    minutes = app.config.get('SYNC_INTERVAL_MINUTES', 10)
    scheduler.add_job(
        lambda: sync_allowlist_job(app),
        'interval',
        minutes=minutes,
        id='sync_allowlist',
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.start()
    logger.info(f"Scheduler started: allowlist sync every {minutes}min")
