"""Short per-subscriber lease serialising limit checks with the writes they guard.

The lease lives on the subscriber document (usage_lock_until /
usage_lock_owner) and is taken with one conditional find_one_and_update, so
two workers can never both hold it. A crashed holder's lease simply expires.
"""
import asyncio
import logging
import os
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta

from pymongo import ReturnDocument

from database import database
from services.billing_errors import ConcurrencyConflictError
from utils import clock

logger = logging.getLogger(__name__)

LEASE_SECONDS = 10
ACQUIRE_ATTEMPTS = int(os.getenv("USAGE_LEASE_ATTEMPTS", "5"))
ACQUIRE_BACKOFF_SECONDS = 0.05


async def _acquire(subscriber_id: int, owner: str) -> bool:
    db = database.get_db()
    now = clock.utcnow()
    result = await db.subscribers.find_one_and_update(
        {
            "subscriber_id": subscriber_id,
            "$or": [
                {"usage_lock_until": None},
                {"usage_lock_until": {"$exists": False}},
                {"usage_lock_until": {"$lt": now}},
            ],
        },
        {"$set": {"usage_lock_until": now + timedelta(seconds=LEASE_SECONDS), "usage_lock_owner": owner}},
        return_document=ReturnDocument.AFTER,
    )
    return result is not None


async def _release(subscriber_id: int, owner: str) -> None:
    db = database.get_db()
    await db.subscribers.update_one(
        {"subscriber_id": subscriber_id, "usage_lock_owner": owner},
        {"$unset": {"usage_lock_until": "", "usage_lock_owner": ""}},
    )


@asynccontextmanager
async def usage_lease(subscriber_id: int):
    """Hold the subscriber's usage lease for the duration of the block.

    Raises ConcurrencyConflictError (retryable) when the lease stays busy.
    """
    owner = uuid.uuid4().hex
    for attempt in range(ACQUIRE_ATTEMPTS):
        if await _acquire(subscriber_id, owner):
            break
        await asyncio.sleep(ACQUIRE_BACKOFF_SECONDS * (attempt + 1))
    else:
        logger.info(f"USAGE_LEASE_BUSY subscriber_id={subscriber_id}")
        raise ConcurrencyConflictError(
            "Another change for this subscriber is in progress, retry shortly",
            subscriber_id=subscriber_id,
        )
    try:
        yield owner
    finally:
        await _release(subscriber_id, owner)
