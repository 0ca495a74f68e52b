"""
Idempotent seed: default plans, payment methods and an optional test ADMIN.

Plans and payment methods are inserted with $setOnInsert so admin edits made
through the API survive restarts. Runs on every startup (database.connect)
and can be run by hand: `python seed.py`.
"""
import asyncio
import os
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).resolve().parent / ".env")

# Test ADMIN (for local/dev); override with SEED_ADMIN_EMAIL / SEED_ADMIN_PASSWORD
SEED_ADMIN_EMAIL = os.environ.get("SEED_ADMIN_EMAIL", "admin@financetracker.ao")
SEED_ADMIN_PASSWORD = os.environ.get("SEED_ADMIN_PASSWORD", "Admin123!")

BANK_TRANSFER_INSTRUCTIONS = (
    "Transfer {{amount}} AOA to one of the accounts below. "
    "Use {{reference}} as the transfer description, then upload the receipt."
)

DEFAULT_PAYMENT_METHODS = [
    {
        "name": "gateway_card",
        "family": "automated",
        "gateway": "stripe",
        "display_name": "Credit / debit card",
        "description": "Visa and Mastercard through a secure hosted checkout",
        "processing_time": "Instant",
        "fees": None,
        "display_order": 1,
        "is_active": True,
    },
    {
        "name": "multicaixa_express",
        "family": "manual",
        "display_name": "Multicaixa Express",
        "description": "Pay from the Multicaixa Express app",
        "instructions": (
            "In Multicaixa Express choose Payments > Services, enter reference {{reference}} "
            "and amount {{amount}} AOA. Upload the confirmation screenshot."
        ),
        "processing_time": "Up to 24 hours after proof",
        "fees": None,
        "requires_phone_number": True,
        "display_order": 2,
        "is_active": True,
    },
    {
        "name": "unitel_money",
        "family": "manual",
        "display_name": "Unitel Money",
        "description": "Mobile money transfer",
        "instructions": "Send {{amount}} AOA with Unitel Money using the description {{reference}}.",
        "processing_time": "Up to 24 hours after proof",
        "fees": None,
        "requires_phone_number": True,
        "display_order": 3,
        "is_active": True,
    },
    {
        "name": "afrimoney",
        "family": "manual",
        "display_name": "Afrimoney",
        "description": "Mobile money transfer",
        "instructions": "Send {{amount}} AOA with Afrimoney using the description {{reference}}.",
        "processing_time": "Up to 24 hours after proof",
        "fees": None,
        "requires_phone_number": True,
        "display_order": 4,
        "is_active": True,
    },
    {
        "name": "bank_transfer",
        "family": "manual",
        "display_name": "Bank transfer",
        "description": "Transfer to one of our bank accounts",
        "instructions": BANK_TRANSFER_INSTRUCTIONS,
        "bank_accounts": [
            {"bank": "BAI", "account_holder": "Finance Tracker Lda", "iban": "AO06 0040 0000 1234 5678 1015 1"},
            {"bank": "BFA", "account_holder": "Finance Tracker Lda", "iban": "AO06 0006 0000 8765 4321 3017 2"},
            {"bank": "BIC", "account_holder": "Finance Tracker Lda", "iban": "AO06 0051 0000 1122 3344 5516 3"},
        ],
        "processing_time": "1-2 business days after proof",
        "fees": "Bank fees may apply",
        "requires_phone_number": False,
        "display_order": 5,
        "is_active": True,
    },
]


async def seed_defaults(db) -> None:
    """Insert plans and payment methods that do not exist yet."""
    import logging
    from services.plan_catalog import PLAN_DEFINITIONS

    logger = logging.getLogger(__name__)
    now = datetime.now(timezone.utc)
    for definition in PLAN_DEFINITIONS.values():
        await db.plans.update_one(
            {"plan_type": definition["plan_type"]},
            {"$setOnInsert": {**definition, "created_at": now, "updated_at": now}},
            upsert=True,
        )
    for method in DEFAULT_PAYMENT_METHODS:
        await db.payment_methods.update_one(
            {"name": method["name"]},
            {"$setOnInsert": {**method, "created_at": now, "updated_at": now}},
            upsert=True,
        )
    logger.info("Plans and payment methods seeded/verified")


async def seed_database():
    from motor.motor_asyncio import AsyncIOMotorClient
    from auth import hash_password

    client = AsyncIOMotorClient(os.environ["MONGO_URL"], tz_aware=True)
    db = client[os.environ["DB_NAME"]]

    print("Seeding database (idempotent)...")
    await seed_defaults(db)
    print("  Plans and payment methods: ok")

    admin_exists = await db.admin_users.find_one({"email": SEED_ADMIN_EMAIL})
    if not admin_exists:
        await db.admin_users.insert_one({
            "admin_id": "admin-001",
            "email": SEED_ADMIN_EMAIL,
            "password_hash": hash_password(SEED_ADMIN_PASSWORD),
            "role": "ROLE_ADMIN",
            "status": "ACTIVE",
            "created_at": datetime.now(timezone.utc),
        })
        print(f"  ADMIN created: {SEED_ADMIN_EMAIL}")
    else:
        print(f"  ADMIN already exists: {SEED_ADMIN_EMAIL}")

    print("Seed complete.")
    client.close()


if __name__ == "__main__":
    asyncio.run(seed_database())
