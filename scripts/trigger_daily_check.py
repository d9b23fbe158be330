"""
Run the daily lifecycle check once, outside Celery beat.
"""
import asyncio

from lifecycle.database import get_db_context
from lifecycle.logging_config import configure_logging
from lifecycle.services.integrations import LifecycleIntegrations


async def run_check():
    async with get_db_context() as db:
        integrations = LifecycleIntegrations(db)
        stats = await integrations.run_daily_lifecycle_check()

        print(f"Users checked: {stats['users_checked']}")
        print(f"Inactivity events: {stats['inactivity_events']}")
        print(f"Missed target events: {stats['missed_target_events']}")
        print(f"Streaks broken: {stats['streaks_broken']}")
        print(f"Errors: {stats['errors']}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(run_check())
