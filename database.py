"""
MongoDB access for the No-Due service.

One client per process. Routes receive the database through the
`get_db` dependency so tests can swap in another instance.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from fastapi import HTTPException
from pydantic import BaseModel
from pymongo import ASCENDING, MongoClient
from pymongo.database import Database

import config
from errors import ValidationError

logger = logging.getLogger(__name__)

# Collections
USERS = "users"
PROFILES = "profiles"
STAFF_PROFILES = "staff_profiles"
USER_ROLES = "user_roles"
APPLICATIONS = "applications"
APPLICATION_SUBJECT_FACULTY = "application_subject_faculty"
NOTIFICATIONS = "notifications"
BATCHES = "batches"
SUBJECTS = "subjects"
GLOBAL_SUBMISSION_SETTINGS = "global_submission_settings"
BATCH_SUBMISSION_SETTINGS = "batch_submission_settings"
AUDIT_LOGS = "audit_logs"

db: Optional[Database] = None

try:
    if config.DATABASE_URL and config.DATABASE_NAME:
        _client = MongoClient(config.DATABASE_URL, serverSelectionTimeoutMS=5000)
        db = _client[config.DATABASE_NAME]
except Exception as e:
    logger.error(f"Could not create MongoDB client: {e}")
    db = None


def get_db() -> Database:
    if db is None:
        raise HTTPException(status_code=500, detail="Database not available")
    return db


def ensure_indexes(database: Database) -> None:
    """Indexes backing the uniqueness rules the workflow relies on"""
    database[USERS].create_index([("email", ASCENDING)], unique=True)
    database[USER_ROLES].create_index([("user_id", ASCENDING), ("role", ASCENDING)], unique=True)
    database[APPLICATIONS].create_index(
        [("student_id", ASCENDING), ("semester", ASCENDING), ("batch", ASCENDING)], unique=True
    )
    database[APPLICATIONS].create_index([("current_stage", ASCENDING)])
    database[APPLICATION_SUBJECT_FACULTY].create_index([("application_id", ASCENDING)])
    database[APPLICATION_SUBJECT_FACULTY].create_index([("faculty_id", ASCENDING)])
    database[NOTIFICATIONS].create_index([("user_id", ASCENDING), ("read", ASCENDING)])
    database[BATCHES].create_index([("name", ASCENDING)], unique=True)
    database[BATCH_SUBMISSION_SETTINGS].create_index([("batch_name", ASCENDING)], unique=True)


def is_object_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value)


def parse_object_id(value: str, label: str = "id") -> ObjectId:
    if not is_object_id(value):
        raise ValidationError(f"Invalid {label}")
    return ObjectId(value)


def to_document(data: Union[BaseModel, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return dict(data)


def create_document(database: Database, collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert one document stamped with created_at/updated_at, return its id"""
    doc = to_document(data)
    now = datetime.utcnow()
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = database[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(database: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None) -> List[dict]:
    cursor = database[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)


def find_by_id(database: Database, collection_name: str, doc_id: str, label: str = "id") -> Optional[dict]:
    return database[collection_name].find_one({"_id": parse_object_id(doc_id, label)})
