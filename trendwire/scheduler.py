# trendwire/scheduler.py
"""
Background Task Scheduler

Uses APScheduler to run periodic tasks:
- Generation tick (one job per run, every TICK_INTERVAL_MINUTES)
- Trend import at TREND_IMPORT_HOURS, followed by a plan refresh
- Daily retention cleanup of quota buckets and old trends

Single-instance friendly: every job runs with max_instances=1 and coalesced
misfires, and the generation tick is safe to deliver twice.
"""
from apscheduler.schedulers.background import BackgroundScheduler
import logging

from trendwire.db_retry import cleanup_db_session

logger = logging.getLogger(__name__)
scheduler = None


def init_scheduler(app):
    """
    Initialize the APScheduler with Flask app context
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    timezone = app.config.get('OPERATING_TIMEZONE', 'UTC')
    scheduler = BackgroundScheduler(
        timezone=timezone,
        job_defaults={'max_instances': 1, 'coalesce': True, 'misfire_grace_time': 300},
    )

    @scheduler.scheduled_job(
        'interval', minutes=app.config.get('TICK_INTERVAL_MINUTES', 10), id='generation_tick'
    )
    def generation_tick():
        """
        Generate the article for the current slot, if one is due.
        """
        with app.app_context():
            from trendwire.generation.driver import get_driver
            try:
                result = get_driver(app).tick()
                logger.info(f"Generation tick: {result['status']} ({result.get('reason') or 'ok'})")
            except Exception as e:
                logger.error(f"Generation tick job error: {e}", exc_info=True)
            finally:
                cleanup_db_session()

    @scheduler.scheduled_job(
        'cron', hour=app.config.get('TREND_IMPORT_HOURS', '6,9,12,15,18'), minute=0, id='trend_import'
    )
    def trend_import():
        """
        Pull fresh trends and refresh today's plan.
        """
        with app.app_context():
            from trendwire.generation.driver import get_driver
            try:
                result = get_driver(app).ingest_trends()
                ingest = result['ingest']
                logger.info(
                    f"Trend import: fetched={ingest['fetched']} created={ingest['created']} "
                    f"updated={ingest['updated']} reason={ingest.get('reason')}"
                )
            except Exception as e:
                logger.error(f"Trend import job error: {e}", exc_info=True)
            finally:
                cleanup_db_session()

    @scheduler.scheduled_job('cron', hour=3, minute=30, id='retention_cleanup')
    def retention_cleanup():
        """
        Prune expired quota buckets and trends nobody references.
        Runs daily at 3:30 AM operating time.
        """
        with app.app_context():
            from trendwire.generation.driver import get_driver
            try:
                get_driver(app).run_retention_cleanup()
            except Exception as e:
                logger.error(f"Retention cleanup job error: {e}", exc_info=True)
            finally:
                cleanup_db_session()

    logger.info("Scheduler initialized with generation tasks")
    return scheduler


def start_scheduler():
    """
    Start the scheduler
    Should be called after app initialization
    """
    global scheduler

    if scheduler is None:
        logger.error("Scheduler not initialized. Call init_scheduler() first.")
        return

    if not scheduler.running:
        scheduler.start()
        logger.info("Scheduler started")
    else:
        logger.warning("Scheduler already running")


def shutdown_scheduler():
    """
    Shutdown the scheduler gracefully
    """
    global scheduler

    if scheduler and scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down")
