"""
MongoDB access helpers.

Collections are named after the lowercase schema class in schemas.py
(Game -> "game", Bet -> "bet", UnmatchedPayment -> "unmatched_payment").
"""

from datetime import datetime, timezone
from typing import Optional

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import Settings


def connect(settings: Settings) -> Optional[Database]:
    if not settings.database_url:
        return None
    client = MongoClient(settings.database_url, serverSelectionTimeoutMS=5000, tz_aware=True)
    return client[settings.database_name]


def ensure_indexes(db: Database) -> None:
    # One bet per Mercado Pago payment, however many times the webhook fires
    db["bet"].create_index([("payment_id", ASCENDING)], unique=True, name="uniq_payment_id")
    db["bet"].create_index([("selections.game_id", ASCENDING), ("payment_status", ASCENDING)])
    db["bet"].create_index([("bettor.pix", ASCENDING), ("placed_at", DESCENDING)])
    db["game"].create_index([("status", ASCENDING)])
    db["unmatched_payment"].create_index([("payment_id", ASCENDING)], unique=True, name="uniq_unmatched_payment_id")


def create_document(db: Database, collection_name: str, data: dict) -> str:
    doc = dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = db[collection_name].insert_one(doc)
    return str(result.inserted_id)


def get_documents(db: Database, collection_name: str, filter_dict: Optional[dict] = None,
                  limit: Optional[int] = None, sort: Optional[list] = None) -> list:
    cursor = db[collection_name].find(filter_dict or {})
    if sort:
        cursor = cursor.sort(sort)
    if limit:
        cursor = cursor.limit(limit)
    return list(cursor)
