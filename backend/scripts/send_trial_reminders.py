"""
Trial ending reminders.

Emails trialing subscribers whose trial ends in 3 or 1 day(s). Each threshold
is sent once per subscriber; subscription state is never changed here (lapsed
trials are canceled lazily by the API). Meant to run daily from cron.

Usage (from backend/):
  python -m scripts.send_trial_reminders
  python -m scripts.send_trial_reminders --dry-run
"""

import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

from database import get_db_context
from services.subscription_service import subscription_service
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def run(dry_run: bool) -> dict:
    async with get_db_context():
        result = await subscription_service.send_trial_reminders(dry_run=dry_run)
    logger.info(
        "Trial reminders: checked=%s sent=%s skipped=%s dry_run=%s",
        result["checked"], len(result["sent"]), result["skipped"], dry_run,
    )
    for item in result["sent"]:
        logger.info("  subscriber_id=%s days_left=%s", item["subscriber_id"], item["days_left"])
    return result


def main():
    parser = argparse.ArgumentParser(description="Send trial-ending reminder emails")
    parser.add_argument("--dry-run", action="store_true", help="List who would be emailed without sending")
    args = parser.parse_args()
    asyncio.run(run(args.dry_run))
    return 0


if __name__ == "__main__":
    sys.exit(main())
