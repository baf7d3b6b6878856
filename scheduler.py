"""In-process runner for the periodic ops jobs.

Deployments with an external cron hit the ``/api/internal`` endpoints
instead. This keeps a single-process install (``main.py``) self-sufficient:
the generation worker, free percoin expiry and the account purge run on
fixed intervals in a daemon thread, each inside the Flask app context.
"""
import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


class SimpleScheduler:
    """Fixed-interval job runner."""

    def __init__(self, app=None, tick_seconds: int = 30):
        self.app = app
        self.tick_seconds = tick_seconds
        self.jobs = []
        self._stop = threading.Event()
        self.thread = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def add_job(self, func: Callable[[], object], interval_seconds: int, name: Optional[str] = None):
        self.jobs.append({
            'func': func,
            'interval': interval_seconds,
            'name': name or func.__name__,
            'last_run': None,
            'last_error': None,
        })

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self.thread = threading.Thread(target=self._loop, name='ops-scheduler', daemon=True)
        self.thread.start()
        logger.info(f"Scheduler started with {len(self.jobs)} jobs, tick {self.tick_seconds}s")

    def stop(self):
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=5)
        logger.info("Scheduler stopped")

    def _is_due(self, job, now: datetime) -> bool:
        if job['last_run'] is None:
            return True
        return (now - job['last_run']).total_seconds() >= job['interval']

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Run every due job once. Returns the names of the jobs that ran."""
        now = now or datetime.utcnow()
        ran = []
        for job in self.jobs:
            if self._is_due(job, now):
                self._run_job(job, now)
                ran.append(job['name'])
        return ran

    def _loop(self):
        while not self._stop.is_set():
            self.run_pending()
            self._stop.wait(self.tick_seconds)

    def _run_job(self, job, now: datetime):
        # A failing job waits a full interval before its next attempt
        job['last_run'] = now
        try:
            if self.app is not None:
                with self.app.app_context():
                    result = job['func']()
            else:
                result = job['func']()
            job['last_error'] = None
            logger.info(f"Scheduled job {job['name']} finished: {result}")
        except Exception as e:
            job['last_error'] = str(e)
            logger.exception(f"Scheduled job {job['name']} failed")


def create_default_scheduler(app) -> SimpleScheduler:
    from ops_jobs import purge_due_accounts, expire_free_percoins, run_generation_worker

    scheduler = SimpleScheduler(app)
    scheduler.add_job(run_generation_worker, 30, 'generation_worker')
    scheduler.add_job(expire_free_percoins, 3600, 'expire_free_percoins')
    scheduler.add_job(purge_due_accounts, 86400, 'account_purge')
    return scheduler
