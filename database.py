"""
MongoDB access for the Campus Bus API.

Each Pydantic model in schemas.py corresponds to a collection whose name is
the lowercase of the class name (User -> "user", BusRequest -> "busrequest").
"""
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

from config import settings
from logging_config import get_logger

logger = get_logger("database")

client: Optional[MongoClient] = None
db: Optional[Database] = None

if settings.DATABASE_URL:
    client = MongoClient(settings.DATABASE_URL, serverSelectionTimeoutMS=5000)
    db = client[settings.DATABASE_NAME]


def get_db() -> Database:
    """FastAPI dependency; tests override it with an in-memory database."""
    if db is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, dict], database: Optional[Database] = None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id"""
    target = database if database is not None else get_db()
    doc = data.model_dump() if isinstance(data, BaseModel) else dict(data)
    now = utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(collection_name: str, filter_dict: Optional[dict] = None, limit: Optional[int] = None,
                  database: Optional[Database] = None) -> List[dict]:
    target = database if database is not None else get_db()
    cursor = target[collection_name].find(filter_dict or {})
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def oid(value: Any) -> Optional[ObjectId]:
    """ObjectId for a string id, or None when the string is not one"""
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str) and ObjectId.is_valid(value):
        return ObjectId(value)
    return None


def bus_filter(bus_ref: str) -> dict:
    """Match a bus either by its document id or by its busId business key"""
    object_id = oid(bus_ref)
    if object_id is not None:
        return {"$or": [{"_id": object_id}, {"busId": bus_ref}]}
    return {"busId": bus_ref}


def serialize_doc(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if doc is None:
        return None
    out = {}
    for k, v in doc.items():
        if k == "_id":
            out["id"] = str(v)
        elif isinstance(v, ObjectId):
            out[k] = str(v)
        elif isinstance(v, (datetime, date)):
            out[k] = v.isoformat()
        elif isinstance(v, dict):
            out[k] = serialize_doc(v)
        elif isinstance(v, list):
            out[k] = [serialize_doc(x) if isinstance(x, dict) else x for x in v]
        else:
            out[k] = v
    out.pop("password", None)
    out.pop("pin", None)
    return out


def ensure_indexes(database: Database) -> None:
    database["user"].create_index("email", unique=True)
    database["bus"].create_index("busId", unique=True)
    # At most one pending request per (student, bus)
    database["busrequest"].create_index(
        [("student", ASCENDING), ("bus", ASCENDING)],
        unique=True,
        partialFilterExpression={"status": "pending"},
        name="one_pending_per_student_bus",
    )
    database["busrequest"].create_index([("bus", ASCENDING), ("status", ASCENDING)])
    database["busrequest"].create_index([("driver", ASCENDING), ("status", ASCENDING)])
    logger.info("MongoDB indexes ensured")


def check_connection() -> None:
    """Ping the server; raises if it is unreachable"""
    if client is None:
        logger.warning("DATABASE_URL not set - running without a database")
        return
    client.admin.command("ping")
    logger.info(f"MongoDB connected: {settings.DATABASE_NAME}")
