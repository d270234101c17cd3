# Overview: Background maintenance jobs (reservation lease sweeper) on APScheduler.

from __future__ import annotations

import atexit

from apscheduler.schedulers.background import BackgroundScheduler

from ..extensions import db
from .inventory_service import sweep_expired_reservations


SWEEP_JOB_ID = "reservation_sweep"

_scheduler: BackgroundScheduler | None = None


def _sweep_job(app) -> int:
    """Run one sweep inside an app context; the scheduler thread has none."""
    with app.app_context():
        try:
            return sweep_expired_reservations()
        except Exception:
            app.logger.exception("Reservation sweep failed")
            return 0
        finally:
            db.session.remove()


def start_reservation_sweeper(app) -> BackgroundScheduler | None:
    """
    Start the periodic reservation sweep.

    Disabled when RESERVATION_SWEEP_INTERVAL_SECONDS <= 0 or under TESTING.
    `flask ledger sweep-reservations` runs the same sweep on demand.
    """
    global _scheduler

    interval = int(app.config.get("RESERVATION_SWEEP_INTERVAL_SECONDS", 0))
    if interval <= 0 or app.config.get("TESTING"):
        app.logger.info("Reservation sweeper disabled")
        return None

    if _scheduler is not None and _scheduler.running:
        return _scheduler

    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        _sweep_job,
        trigger="interval",
        seconds=interval,
        args=[app],
        id=SWEEP_JOB_ID,
        name="Expire stale stock reservations",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    _scheduler = scheduler
    atexit.register(shutdown_reservation_sweeper)
    app.logger.info("Reservation sweeper started: every %ss", interval)
    return scheduler


def shutdown_reservation_sweeper() -> None:
    """Stop the sweeper thread. Registered with atexit when the sweeper starts."""
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None


def get_sweeper_status() -> dict:
    if _scheduler is None:
        return {"enabled": False, "running": False, "jobs": []}

    jobs = []
    for job in _scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
        })
    return {"enabled": True, "running": _scheduler.running, "jobs": jobs}
