"""
RQ worker and cron registration for the discharge follow-up dispatch queue
"""
import logging
import signal
import time
from typing import Any, Dict, Optional

import redis
from rq import Queue, Worker
from rq_scheduler import Scheduler

from config.redis import create_redis_connection
from config.settings import Settings, get_settings

from .tasks import run_daily_auto_scheduling

logger = logging.getLogger("scheduling-worker")

DAILY_RUN_JOB_ID = "daily-auto-scheduling"


class DischargeDispatchWorker:
    """
    Manages the RQ worker that fires scheduled follow-ups
    """

    def __init__(self, settings: Optional[Settings] = None, redis_conn: Optional[redis.Redis] = None):
        """Initialize the worker with the queue connection (raw bytes for rq)"""
        self.settings = settings or get_settings()
        self.redis_conn = redis_conn or create_redis_connection(decode_responses=False)
        self.queue = Queue(self.settings.dispatch_queue_name, connection=self.redis_conn)
        self.worker: Optional[Worker] = None
        self.running = False

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals gracefully"""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.stop()

    def start_worker(self, worker_name: Optional[str] = None):
        """
        Start the RQ worker; its built-in scheduler releases enqueue_at jobs when due

        Args:
            worker_name: Optional name for the worker (defaults to a timestamped name)
        """
        if self.running:
            logger.warning("Worker is already running")
            return

        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Starting dispatch worker on queue '{self.queue.name}'...")
        self.worker = Worker(
            [self.queue],
            connection=self.redis_conn,
            name=worker_name or f"discharge-worker-{int(time.time())}"
        )
        self.running = True

        try:
            self.worker.work(with_scheduler=True, logging_level=self.settings.log_level)
        except KeyboardInterrupt:
            logger.info("Worker interrupted by user")
        finally:
            self.running = False
            logger.info("Worker stopped")

    def stop(self):
        """Stop the worker gracefully"""
        if self.worker and self.running:
            logger.info("Stopping worker...")
            self.worker.request_stop(signal.SIGTERM, None)
            self.running = False
        else:
            logger.info("Worker not running")

    def get_worker_stats(self) -> Dict[str, Any]:
        """Get statistics about the worker and queue"""
        return {
            "queue": self.queue.name,
            "queue_size": len(self.queue),
            "scheduled_jobs": len(self.queue.scheduled_job_registry),
            "started_jobs": len(self.queue.started_job_registry),
            "finished_jobs": len(self.queue.finished_job_registry),
            "failed_jobs": len(self.queue.failed_job_registry),
            "worker_count": len(Worker.all(connection=self.redis_conn)),
            "is_running": self.running,
        }


class DailyRunScheduler:
    """
    Registers the daily auto-scheduling run with rq-scheduler and runs the
    rq-scheduler loop that enqueues it
    """

    def __init__(self, settings: Optional[Settings] = None, redis_conn: Optional[redis.Redis] = None):
        self.settings = settings or get_settings()
        self.redis_conn = redis_conn or create_redis_connection(decode_responses=False)
        self.scheduler = Scheduler(queue_name=self.settings.dispatch_queue_name, connection=self.redis_conn)

    def register_daily_run(self, cron_string: Optional[str] = None):
        """
        Replace any existing daily-run cron entry with one for cron_string

        Returns:
            The scheduled rq job
        """
        cron_string = cron_string or self.settings.daily_run_cron
        for job in self.scheduler.get_jobs():
            if job.id == DAILY_RUN_JOB_ID:
                self.scheduler.cancel(job)
                logger.info("Removed previous daily-run cron entry")

        job = self.scheduler.cron(
            cron_string,
            func=run_daily_auto_scheduling,
            queue_name=self.settings.dispatch_queue_name,
            id=DAILY_RUN_JOB_ID,
            description="Daily discharge auto-scheduling run",
            repeat=None,
        )
        logger.info(f"Registered daily auto-scheduling run with cron '{cron_string}'")
        return job

    def run(self, interval: int = 60):
        """Register the cron entry, then run the rq-scheduler loop"""
        self.register_daily_run()
        self.scheduler._interval = interval
        logger.info(f"Starting rq-scheduler loop (interval {interval}s)")
        self.scheduler.run()


def main():
    """
    Main function for running the worker or the cron scheduler
    """
    import argparse

    from dotenv import load_dotenv

    load_dotenv()

    parser = argparse.ArgumentParser(description="Discharge follow-up dispatch worker")
    parser.add_argument(
        "mode",
        choices=["worker", "scheduler", "stats"],
        help="worker (fire queued items), scheduler (daily cron), or stats"
    )
    parser.add_argument("--worker-name", help="Name for the worker process")
    parser.add_argument(
        "--interval",
        type=int,
        default=60,
        help="rq-scheduler polling interval in seconds (default: 60)"
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.mode == "worker":
        DischargeDispatchWorker(settings).start_worker(worker_name=args.worker_name)
    elif args.mode == "scheduler":
        DailyRunScheduler(settings).run(interval=args.interval)
    else:
        for key, value in DischargeDispatchWorker(settings).get_worker_stats().items():
            print(f"{key}: {value}")


if __name__ == "__main__":
    main()
