from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path
from contextlib import asynccontextmanager

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so expiry comparisons never mix naive and aware datetimes
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")

            await self._create_indexes()

            from seed import seed_defaults
            await seed_defaults(self.db)
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_db(self):
        return self.db

    @asynccontextmanager
    async def transaction(self):
        """Multi-document transaction; aborts on any exception.

        Requires a replica set. Pass the yielded session to every read and
        write that must be part of the atomic unit.
        """
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def _create_indexes(self):
        """Create MongoDB indexes for lookups and uniqueness guarantees."""
        try:
            await self.db.plans.create_index("plan_type", unique=True)
            await self.db.payment_methods.create_index("name", unique=True)

            # Subscribers
            await self.db.subscribers.create_index("subscriber_id", unique=True)
            await self.db.subscribers.create_index("email", unique=True)
            await self.db.subscribers.create_index([("subscription_status", 1), ("trial_ends_at", 1)])
            await self.db.admin_users.create_index("email", unique=True)

            # Usage counting
            await self.db.accounts.create_index("subscriber_id")
            await self.db.transactions.create_index([("subscriber_id", 1), ("created_at", 1)])

            # Campaigns - one campaign per coupon code
            await self.db.campaigns.create_index("coupon_code", unique=True)
            await self.db.campaigns.create_index("campaign_id", unique=True)
            await self.db.coupon_redemptions.create_index("transaction_id", unique=True)
            await self.db.coupon_redemptions.create_index("campaign_id")

            # Payments
            await self.db.payment_transactions.create_index("transaction_id", unique=True)
            await self.db.payment_transactions.create_index([("subscriber_id", 1), ("created_at", -1)])
            await self.db.payment_transactions.create_index([("status", 1), ("created_at", 1)])
            await self.db.payment_transactions.create_index("external_reference", sparse=True)
            await self.db.payment_transactions.create_index([("campaign_id", 1), ("status", 1)], sparse=True)
            await self.db.payment_proofs.create_index("transaction_id", unique=True)

            # Gateway webhook idempotency - duplicate event_id must not process twice
            await self.db.gateway_events.create_index("event_id", unique=True)

            # Audit / messages
            await self.db.audit_logs.create_index([("subscriber_id", 1), ("timestamp", -1)])
            await self.db.audit_logs.create_index([("action", 1), ("timestamp", -1)])
            await self.db.message_logs.create_index([("created_at", -1)])
            logger.info("MongoDB indexes created/verified")
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

@asynccontextmanager
async def get_db_context():
    """Context manager for standalone scripts to access the database.

    Usage in scripts:
        async with get_db_context() as db:
            await db.subscribers.find_one(...)
    """
    client = None
    try:
        mongo_url = os.environ['MONGO_URL']
        db_name = os.environ['DB_NAME']
        client = AsyncIOMotorClient(mongo_url, tz_aware=True)
        db = client[db_name]
        await db.command("ping")
        logger.info(f"Script connected to MongoDB: {db_name}")
        database.client = client
        database.db = db
        yield db
    finally:
        if client:
            client.close()
            logger.info("Script MongoDB connection closed")
