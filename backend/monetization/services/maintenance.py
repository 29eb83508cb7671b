from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from ..config import settings
from . import ad_views, idempotency, premium_service, view_sessions


logger = logging.getLogger(__name__)

_scheduler: BackgroundScheduler | None = None


def run_maintenance() -> dict[str, int]:
    report = {
        "sessions_purged": 0,
        "premium_expired": 0,
        "idempotency_keys_purged": 0,
        "ad_views_flagged": 0,
    }
    jobs = (
        ("sessions_purged", view_sessions.purge_stale_sessions),
        ("premium_expired", premium_service.expire_lapsed_premium),
        ("idempotency_keys_purged", idempotency.purge_expired_keys),
        ("ad_views_flagged", ad_views.reconcile_orphan_ad_views),
    )
    for name, job in jobs:
        try:
            report[name] = job()
        except Exception:
            logger.exception("Maintenance job %s failed", name)
    return report


def start() -> None:
    global _scheduler
    if not settings.scheduler_enabled:
        return
    if _scheduler and _scheduler.running:
        return

    _scheduler = BackgroundScheduler()
    _scheduler.add_job(run_maintenance, "interval", minutes=max(1, settings.maintenance_interval_minutes))
    _scheduler.start()
    logger.info("Maintenance scheduler started (every %s minutes)", settings.maintenance_interval_minutes)


def shutdown() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
    _scheduler = None
