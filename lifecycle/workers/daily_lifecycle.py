"""
Daily Lifecycle Check Worker.

Runs once a day (settings.daily_check_hour, in the configured timezone) and
emits the events that only the passage of time produces, so time-based stage
rules such as AT_RISK and CHURNED get evaluated.
"""

import asyncio
import logging

from lifecycle.database import get_db_context
from lifecycle.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, max_retries=3)
def run_daily_lifecycle_check(self):
    """Celery task wrapper around LifecycleIntegrations.run_daily_lifecycle_check."""
    try:
        result = asyncio.run(_run_daily_check())
        logger.info(f"Daily lifecycle check finished: {result}")
        return result
    except Exception as e:
        logger.error(f"Daily lifecycle check failed: {e}", exc_info=True)
        raise self.retry(exc=e, countdown=60 * (2 ** self.request.retries))


async def _run_daily_check():
    """Async implementation of the daily check."""
    from lifecycle.services.integrations import LifecycleIntegrations

    async with get_db_context() as db:
        integrations = LifecycleIntegrations(db)
        return await integrations.run_daily_lifecycle_check()
