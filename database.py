"""
Database Helper Functions

MongoDB access for the API. The client is created from DATABASE_URL and
DATABASE_NAME; endpoints receive the database through the ``get_db``
dependency so tests can swap in an in-memory one.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from bson import ObjectId
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database
from pydantic import BaseModel

from config import Settings
from errors import ValidationFailed

_settings = Settings.from_env()
_client = None
db: Optional[Database] = None

if _settings.database_url and _settings.database_name:
    _client = MongoClient(_settings.database_url)
    db = _client[_settings.database_name]


def utcnow() -> datetime:
    # naive UTC, the form pymongo hands back by default
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Database:
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL and DATABASE_NAME environment variables.")
    return db


def object_id(value: Any, label: str = "id") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not value or not ObjectId.is_valid(str(value)):
        raise ValidationFailed(f"Invalid {label}")
    return ObjectId(str(value))


def to_str_id(doc: Dict[str, Any]):
    if not doc:
        return doc
    doc["id"] = str(doc.get("_id"))
    doc.pop("_id", None)
    return doc


def create_document(database: Database, collection_name: str, data: Union[BaseModel, dict], _id: ObjectId = None) -> str:
    if isinstance(data, BaseModel):
        data_dict = data.model_dump()
    else:
        data_dict = dict(data)
    if _id is not None:
        data_dict["_id"] = _id
    now = utcnow()
    data_dict["created_at"] = now
    data_dict["updated_at"] = now
    result = database[collection_name].insert_one(data_dict)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    database["bookcopy"].create_index([("book_id", ASCENDING), ("copy_number", ASCENDING)], unique=True)
    database["bookcopy"].create_index("copy_code", unique=True)
    database["bookcopy"].create_index([("book_id", ASCENDING), ("status", ASCENDING)])
    database["loan"].create_index([("user.id", ASCENDING), ("return_date", ASCENDING)])
    # at most one open loan per user and book
    database["loan"].create_index(
        [("user.id", ASCENDING), ("book_id", ASCENDING)],
        unique=True,
        partialFilterExpression={"return_date": None},
        name="one_open_loan_per_book",
    )
    database["loan"].create_index("payment.transaction_id", sparse=True)
    database["user"].create_index("email", unique=True)
