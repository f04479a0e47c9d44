from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from bson import ObjectId

from database import ensure_indexes
from pricing import validate_product

ADDRESS = {
    "full_name": "Ayesha Khan",
    "address_line1": "12 Mall Road",
    "city": "Lahore",
    "state": "Punjab",
    "postal_code": "54000",
    "country": "Pakistan",
    "phone": "+92 3001234567",
}


@pytest.fixture
def db():
    database = mongomock.MongoClient()["storefront_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def user_id(db):
    return str(db["user"].insert_one({
        "username": "ayesha",
        "email": "ayesha@example.com",
        "password_hash": "x",
        "role": "customer",
        "addresses": [],
    }).inserted_id)


def add_product(db, **fields) -> str:
    data = {"title": "Test Product", "brand": "Acme", "category_id": "cat-1"}
    data.update(fields)
    return str(db["product"].insert_one(validate_product(data)).inserted_id)


def add_discount(db, **fields) -> str:
    start = datetime.now(timezone.utc) - timedelta(days=1)
    doc = {
        "code": "SAVE20",
        "type": "fixed",
        "value": 20,
        "applicable_to": "all",
        "product_ids": [],
        "category_ids": [],
        "min_order_amount": 0,
        "start_date": start,
        "end_date": start + timedelta(days=30),
        "usage_limit": 0,
        "used_count": 0,
        "is_active": True,
    }
    doc.update(fields)
    doc["code_key"] = doc["code"].upper()
    return str(db["discount"].insert_one(doc).inserted_id)


def product(db, product_id: str) -> dict:
    return db["product"].find_one({"_id": ObjectId(product_id)})


class DatabaseOverlay:
    """A database whose named collections are replaced by stand-ins."""

    def __init__(self, db, **collections):
        self._db = db
        self._collections = collections

    def __getitem__(self, name):
        if name in self._collections:
            return self._collections[name]
        return self._db[name]
