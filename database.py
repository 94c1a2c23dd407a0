"""
MongoDB connection for the Tours API.

The client is created once at import from environment variables. When
DATABASE_URL is not set ``db`` stays ``None`` and every route answers with a
StorageError, so the app can still boot for health checks.
"""
import logging
import os
from typing import Optional

from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient
from pymongo.database import Database

from errors import StorageError, storage_errors

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "tours")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "5000"))

client: Optional[MongoClient] = None
db: Optional[Database] = None

if DATABASE_URL:
    client = MongoClient(
        DATABASE_URL,
        serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
        connectTimeoutMS=MONGO_TIMEOUT_MS,
        socketTimeoutMS=MONGO_TIMEOUT_MS,
    )
    db = client[DATABASE_NAME]
else:
    logger.warning("DATABASE_URL is not set, database access is disabled")


def get_db() -> Database:
    """FastAPI dependency returning the configured database."""
    if db is None:
        raise StorageError("Database not configured")
    return db


def ensure_indexes(database: Database) -> None:
    """Create the unique and geo indexes the schemas rely on."""
    with storage_errors():
        database["tour"].create_index([("name", ASCENDING)], unique=True)
        database["tour"].create_index([("price", ASCENDING), ("ratings_average", DESCENDING)])
        database["tour"].create_index([("slug", ASCENDING)])
        database["tour"].create_index([("start_location", GEOSPHERE)])
        database["user"].create_index([("email", ASCENDING)], unique=True)
        # one review per user per tour
        database["review"].create_index([("tour", ASCENDING), ("user", ASCENDING)], unique=True)
    logger.info("Indexes ensured on %s", database.name)
