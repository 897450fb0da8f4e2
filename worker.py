#!/usr/bin/env python3
"""
Worker process that drains the notification outbox.
Runs separately from the web process so slow Telegram/SMTP sends never block requests.
"""

from dotenv import load_dotenv
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

# Load environment variables
load_dotenv()

# Import after loading env vars
from app import app, run_dispatch_job


def build_scheduler(scheduler_class=BlockingScheduler):
    """Create the scheduler with the outbox dispatch job registered."""
    scheduler = scheduler_class()
    scheduler.add_job(
        run_dispatch_job,
        IntervalTrigger(seconds=app.config["DISPATCH_INTERVAL_SECONDS"]),
        id='notification-dispatch',
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    return scheduler


def run_scheduler():
    """Run the blocking scheduler until interrupted."""
    scheduler = build_scheduler()

    print("🚀 Starting Staff Points notification worker...")
    print(f"📨 Outbox dispatched every {app.config['DISPATCH_INTERVAL_SECONDS']}s")

    try:
        scheduler.start()
    except KeyboardInterrupt:
        scheduler.shutdown()


if __name__ == '__main__':
    run_scheduler()
