"""
Background jobs (APScheduler).

Four independent timers: the session reminder scan every minute, the daily
streak update, the daily report generation and the weekly notification
cleanup. Each job body catches and logs its own errors, so one failing job
never affects the others.
"""

import logging

from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

REMINDER_JOB = 'session-reminders'
STREAK_JOB = 'streak-update'
REPORT_JOB = 'report-generation'
CLEANUP_JOB = 'notification-cleanup'


def update_streaks(store):
    try:
        count = store.update_all_streaks()
        logger.info('📊 Study streaks updated (%s users)', count)
        return True
    except Exception:
        logger.exception('Error updating streaks')
        return False


def generate_reports(store):
    try:
        count = store.generate_daily_reports()
        logger.info('📈 Daily reports generated (%s users)', count)
        return True
    except Exception:
        logger.exception('Error generating daily reports')
        return False


def cleanup_notifications(store):
    try:
        removed = store.cleanup_old_notifications()
        logger.info('🧹 Cleaned up %s old notifications', removed)
        return True
    except Exception:
        logger.exception('Error cleaning up notifications')
        return False


class StudyScheduler:
    """Owns the background scheduler and the four periodic jobs.

    Usage:
        scheduler = StudyScheduler(app, store, reminder_scheduler)
        scheduler.start()
        ...
        scheduler.shutdown()
    """

    def __init__(self, app, store, reminder_scheduler, scheduler=None):
        self.app = app
        self.store = store
        self.reminder_scheduler = reminder_scheduler
        self.scheduler = scheduler or BackgroundScheduler(
            timezone=app.config.get('SCHEDULER_TIMEZONE') or None
        )
        self.jobs = {
            REMINDER_JOB: self.reminder_scheduler.tick,
            STREAK_JOB: lambda: update_streaks(self.store),
            REPORT_JOB: lambda: generate_reports(self.store),
            CLEANUP_JOB: lambda: cleanup_notifications(self.store),
        }

    @property
    def is_running(self):
        return self.scheduler.running

    def _in_app_context(self, job_id):
        def run():
            with self.app.app_context():
                return self.jobs[job_id]()
        return run

    def schedule_jobs(self):
        config = self.app.config
        # max_instances=1: a tick that overruns makes APScheduler skip the next fire
        defaults = {'max_instances': 1, 'coalesce': True, 'replace_existing': True}

        self.scheduler.add_job(self._in_app_context(REMINDER_JOB), trigger='interval',
                               minutes=1, id=REMINDER_JOB, **defaults)
        self.scheduler.add_job(self._in_app_context(STREAK_JOB), trigger='cron',
                               hour=config.get('STREAK_UPDATE_HOUR', 0), minute=0,
                               id=STREAK_JOB, **defaults)
        self.scheduler.add_job(self._in_app_context(REPORT_JOB), trigger='cron',
                               hour=config.get('DAILY_REPORT_HOUR', 23), minute=0,
                               id=REPORT_JOB, **defaults)
        self.scheduler.add_job(self._in_app_context(CLEANUP_JOB), trigger='cron',
                               day_of_week=config.get('NOTIFICATION_CLEANUP_DAY', 'sun'),
                               hour=0, minute=0, id=CLEANUP_JOB, **defaults)

    def start(self):
        if self.is_running:
            logger.warning('Scheduler already running')
            return
        self.schedule_jobs()
        self.scheduler.start()
        logger.info('✅ Background scheduler started with %d jobs', len(self.scheduler.get_jobs()))

    def shutdown(self, wait=False):
        if self.is_running:
            self.scheduler.shutdown(wait=wait)
            logger.info('Background scheduler stopped')

    def run_job(self, job_id):
        """Run one job immediately in the current thread (CLI and tests)."""
        if job_id not in self.jobs:
            raise KeyError(f'Unknown job: {job_id}')
        return self._in_app_context(job_id)()

    def get_status(self):
        return {
            'is_running': self.is_running,
            'jobs': [
                {
                    'id': job.id,
                    'next_run_time': job.next_run_time.isoformat()
                    if getattr(job, 'next_run_time', None) else None,
                }
                for job in self.scheduler.get_jobs()
            ],
        }
