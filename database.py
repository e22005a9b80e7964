"""
MongoDB access for the tours service.

Collections:
- tours: tour documents, carrying the derived ratingsAverage/ratingsQuantity
- reviews: one review per (tour, user)
- users: accounts, soft-deleted through the `active` flag
"""

from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, GEOSPHERE, MongoClient
from pymongo.database import Database

from config import DATABASE_NAME, DATABASE_URL
from logging_config import get_logger

logger = get_logger(__name__)

TOURS = "tours"
REVIEWS = "reviews"
USERS = "users"

client = MongoClient(DATABASE_URL, tz_aware=True)
db = client[DATABASE_NAME]


def get_db() -> Database:
    return db


def to_object_id(value: Any) -> Optional[ObjectId]:
    """Return an ObjectId for `value`, or None when it is not a valid id."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        return None


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    """Rename `_id` to `id` and turn ObjectIds into strings, recursively."""
    if doc is None:
        return doc
    d = {}
    for key, value in doc.items():
        if key == "_id":
            key = "id"
        d[key] = _plain(value)
    return d


def _plain(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return sanitize(value)
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


# Indexes

def create_unique_indexes(database: Database) -> None:
    database[REVIEWS].create_index([("tour", ASCENDING), ("user", ASCENDING)], unique=True)
    database[USERS].create_index("email", unique=True)
    database[TOURS].create_index("name", unique=True)


def create_query_indexes(database: Database) -> None:
    database[TOURS].create_index([("price", ASCENDING), ("ratingsAverage", DESCENDING)])
    database[TOURS].create_index("slug")
    database[TOURS].create_index([("startLocation", GEOSPHERE)])


def init_indexes(database: Database) -> None:
    create_unique_indexes(database)
    create_query_indexes(database)
    logger.info("indexes_ready", database=database.name)
