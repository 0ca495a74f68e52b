"""
Sequence service - monotonically increasing numeric ids.

- subscriber_id, transaction_id and campaign_id are integers drawn from an
  atomic counter document per sequence: { _id: "<name>_seq", seq: N }.
- Payment references are derived from the transaction id:
  PAY-NNNNNNNN (8-digit zero-padded).
- Concurrency-safe: $inc with upsert on a single document.
"""
import logging

from pymongo import ReturnDocument
from database import database

logger = logging.getLogger(__name__)

COUNTERS_COLLECTION = "counters"
PAYMENT_REFERENCE_FORMAT = "PAY-{seq:08d}"


async def next_value(name: str, session=None) -> int:
    db = database.get_db()
    result = await db[COUNTERS_COLLECTION].find_one_and_update(
        {"_id": f"{name}_seq"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
        session=session,
    )
    return (result or {}).get("seq", 1)


def payment_reference(transaction_id: int) -> str:
    return PAYMENT_REFERENCE_FORMAT.format(seq=transaction_id)
