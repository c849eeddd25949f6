from motor.motor_asyncio import AsyncIOMotorClient
from dotenv import load_dotenv
import os
import logging
from pathlib import Path

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from services.subscription_store import MongoSubscriptionStore

logger = logging.getLogger(__name__)

class Database:
    client: AsyncIOMotorClient = None
    db = None
    store: MongoSubscriptionStore = None

    async def connect(self):
        try:
            mongo_url = os.environ['MONGO_URL']
            # tz_aware so datetimes read back compare with datetime.now(timezone.utc)
            self.client = AsyncIOMotorClient(mongo_url, tz_aware=True)
            self.db = self.client[os.environ['DB_NAME']]
            # Verify connection
            await self.db.command("ping")
            logger.info(f"Connected to MongoDB: {os.environ['DB_NAME']}")
            self.store = MongoSubscriptionStore(self.client, self.db)

            await self._create_indexes()
        except Exception as e:
            logger.error(f"Failed to connect to MongoDB: {e}")
            raise

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def get_store(self) -> MongoSubscriptionStore:
        if self.store is None:
            raise RuntimeError("Database not connected")
        return self.store

    async def _create_indexes(self):
        try:
            await self.store.create_indexes()
        except Exception as e:
            # Indexes may already exist with different options, log but don't fail
            logger.warning(f"Index creation note: {e}")

# Global database instance
database = Database()

