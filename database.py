"""
MongoDB access for the evaluation service.

The `Store` is created by whoever owns the process lifecycle (the FastAPI
lifespan, a test fixture, a script) and handed to the service functions.
"""

import logging
import math
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.collection import Collection

from errors import NotFoundError

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "evaluations")

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


def collection_name(model_cls) -> str:
    return model_cls.__name__.lower()


def to_object_id(value: Any, entity: str) -> ObjectId:
    """Parse a document id; malformed ids cannot exist so they raise NotFoundError."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise NotFoundError(entity, value)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for k, v in list(d.items()):
        if isinstance(v, datetime):
            d[k] = v.isoformat()
        elif isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def serialize_list(docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


class Store:
    def __init__(self, client: MongoClient, name: str):
        self.client = client
        self.db = client[name]

    @classmethod
    def open(cls, url: str = DATABASE_URL, name: str = DATABASE_NAME) -> "Store":
        logger.info("Connecting to database %s", name)
        store = cls(MongoClient(url), name)
        store.ensure_indexes()
        return store

    def close(self) -> None:
        self.client.close()

    def __getitem__(self, name: str) -> Collection:
        return self.db[name]

    def ensure_indexes(self) -> None:
        self.db["student"].create_index([("student_number", ASCENDING)], unique=True)
        self.db["evaluation"].create_index([("form", ASCENDING), ("created_at", DESCENDING)])

    # -------------------- Documents -------------------- #

    def create_document(self, collection: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
        if isinstance(data, BaseModel):
            data_dict = data.model_dump()
        else:
            data_dict = dict(data)
        now = datetime.utcnow()
        data_dict["created_at"] = now
        data_dict["updated_at"] = now
        result = self.db[collection].insert_one(data_dict)
        return str(result.inserted_id)

    def get_documents(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        cursor = self.db[collection].find(filter_dict or {})
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def get_document(self, collection: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        try:
            oid = to_object_id(doc_id, collection)
        except NotFoundError:
            return None
        return self.db[collection].find_one({"_id": oid})

    def require_document(self, collection: str, doc_id: Any) -> Dict[str, Any]:
        doc = self.get_document(collection, doc_id)
        if doc is None:
            raise NotFoundError(collection, doc_id)
        return doc

    def update_document(self, collection: str, doc_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        oid = to_object_id(doc_id, collection)
        res = self.db[collection].update_one(
            {"_id": oid}, {"$set": {**fields, "updated_at": datetime.utcnow()}}
        )
        if res.matched_count == 0:
            raise NotFoundError(collection, doc_id)
        return self.db[collection].find_one({"_id": oid})

    def delete_document(self, collection: str, doc_id: Any) -> Dict[str, Any]:
        oid = to_object_id(doc_id, collection)
        doc = self.db[collection].find_one_and_delete({"_id": oid})
        if doc is None:
            raise NotFoundError(collection, doc_id)
        return doc

    def paginate(self, collection: str, filter_dict: Optional[Dict[str, Any]] = None, page: int = DEFAULT_PAGE, limit: int = DEFAULT_LIMIT) -> Dict[str, Any]:
        """Most-recent-first page of documents plus the pagination envelope."""
        page = page if page and page >= 1 else DEFAULT_PAGE
        limit = limit if limit and limit >= 1 else DEFAULT_LIMIT
        filt = filter_dict or {}
        coll = self.db[collection]
        total = coll.count_documents(filt)
        items = list(
            coll.find(filt)
            .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
            .skip((page - 1) * limit)
            .limit(limit)
        )
        pages = math.ceil(total / limit)
        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": pages,
                "hasNextPage": page < pages,
                "hasPrevPage": page > 1,
            },
        }
