"""
Discount code evaluation.

Codes are stored as supplied and looked up through ``code_key`` (the
upper-cased code), so matching is case-insensitive. Every reason a code can be
refused collapses into the same ``DiscountError`` message.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, now, to_object_id
from errors import DiscountError, NotFoundError, ValidationError
from pricing import format_errors
from schemas import Discount, DiscountUpdate

logger = logging.getLogger(__name__)


@dataclass
class DiscountResult:
    discount_amount: float
    discount_ref: str
    code: str
    type: str
    value: float


def code_key(code: str) -> str:
    return (code or "").strip().upper()


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _category_ids(db, product_ids: Iterable[str]) -> set:
    oids = [oid for oid in (to_object_id(pid) for pid in product_ids) if oid is not None]
    if not oids:
        return set()
    return {
        str(doc["category_id"])
        for doc in db["product"].find({"_id": {"$in": oids}}, {"category_id": 1})
        if doc.get("category_id") is not None
    }


def _scope_matches(db, discount: dict, product_ids: List[str]) -> bool:
    scope = discount.get("applicable_to")
    if scope in ("all", "orders"):
        return True
    if scope == "products":
        eligible = {str(pid) for pid in discount.get("product_ids") or []}
        return bool(eligible.intersection(str(pid) for pid in product_ids))
    if scope == "categories":
        eligible = {str(cid) for cid in discount.get("category_ids") or []}
        return bool(eligible.intersection(_category_ids(db, product_ids)))
    return False


def _has_uses_left(discount: dict) -> bool:
    limit = discount.get("usage_limit", 0) or 0
    return limit == 0 or discount.get("used_count", 0) < limit


def compute_amount(discount: dict, order_total: float) -> float:
    if discount["type"] == "percentage":
        amount = discount["value"] / 100 * order_total
    else:
        amount = min(discount["value"], order_total)
    return round(max(amount, 0.0), 2)


def evaluate(db, code: str, order_total: float, candidate_items: Iterable[str],
             as_of: Optional[datetime] = None) -> DiscountResult:
    """Check ``code`` against an order and return the deduction it grants.

    ``candidate_items`` are the product ids on the order. Nothing is written;
    use ``claim_usage`` once the order is being placed.
    """
    as_of = _aware(as_of or now())
    product_ids = [str(pid) for pid in candidate_items]

    discount = db["discount"].find_one({"code_key": code_key(code)})
    eligible = (
        discount is not None
        and discount.get("is_active", False)
        and _aware(discount["start_date"]) <= as_of <= _aware(discount["end_date"])
        and _scope_matches(db, discount, product_ids)
        and (discount.get("min_order_amount", 0) or 0) <= order_total
        and _has_uses_left(discount)
    )
    if not eligible:
        logger.info("Discount code %r refused", code)
        raise DiscountError()

    return DiscountResult(
        discount_amount=compute_amount(discount, order_total),
        discount_ref=str(discount["_id"]),
        code=discount["code"],
        type=discount["type"],
        value=discount["value"],
    )


def claim_usage(db, discount_ref: str) -> None:
    """Count one use of the discount, never going past its usage limit.

    The increment is conditional on the limit read and on ``used_count`` being
    below it, so concurrent claims never lose to each other while uses are
    left. The loop only repeats when an admin changed the limit in between.
    """
    oid = to_object_id(discount_ref)
    while True:
        discount = db["discount"].find_one({"_id": oid})
        if discount is None or not _has_uses_left(discount):
            raise DiscountError()
        limit = discount.get("usage_limit")
        query = {"_id": oid, "usage_limit": limit}
        if limit:
            query["used_count"] = {"$lt": limit}
        result = db["discount"].update_one(query, {"$inc": {"used_count": 1}, "$set": {"updated_at": now()}})
        if result.modified_count:
            return
        logger.info("Usage claim on discount %s did not match, re-reading", discount_ref)


def release_usage(db, discount_ref: str) -> None:
    """Undo a ``claim_usage`` for an order that was not persisted."""
    db["discount"].update_one(
        {"_id": to_object_id(discount_ref), "used_count": {"$gt": 0}},
        {"$inc": {"used_count": -1}, "$set": {"updated_at": now()}},
    )


def create_discount(db, payload: Discount) -> dict:
    doc = payload.model_dump()
    doc["code_key"] = code_key(payload.code)
    doc["used_count"] = 0
    try:
        discount_id = create_document("discount", doc, database=db)
    except DuplicateKeyError:
        raise ValidationError("Discount code already exists")
    return db["discount"].find_one({"_id": to_object_id(discount_id)})


def get_discount(db, discount_id: str) -> dict:
    oid = to_object_id(discount_id)
    discount = db["discount"].find_one({"_id": oid}) if oid is not None else None
    if discount is None:
        raise NotFoundError("Discount not found")
    return discount


def update_discount(db, discount_id: str, payload: DiscountUpdate) -> dict:
    """Apply a partial update, re-checking the merged discount as a whole.

    ``used_count`` is never written here so claims racing the update are kept.
    """
    existing = get_discount(db, discount_id)
    merged = {k: v for k, v in existing.items() if k in Discount.model_fields}
    merged.update(payload.model_dump(exclude_unset=True))
    try:
        discount = Discount.model_validate(merged)
    except SchemaError as exc:
        raise ValidationError(format_errors(exc))

    key = code_key(discount.code)
    if db["discount"].find_one({"code_key": key, "_id": {"$ne": existing["_id"]}}):
        raise ValidationError("Discount code already exists")
    changes = discount.model_dump(exclude={"used_count"})
    changes["code_key"] = key
    changes["updated_at"] = now()
    try:
        return db["discount"].find_one_and_update(
            {"_id": existing["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
        )
    except DuplicateKeyError:
        raise ValidationError("Discount code already exists")


def delete_discount(db, discount_id: str) -> None:
    oid = to_object_id(discount_id)
    result = db["discount"].delete_one({"_id": oid}) if oid is not None else None
    if result is None or result.deleted_count == 0:
        raise NotFoundError("Discount not found")


def list_discounts(db, is_active: Optional[bool] = None, page: int = 1, limit: int = 10) -> dict:
    query = {}
    if is_active is not None:
        query["is_active"] = is_active
    skip = (page - 1) * limit
    docs = list(db["discount"].find(query).sort("created_at", -1).skip(skip).limit(limit))
    total = db["discount"].count_documents(query)
    return {"discounts": docs, "total": total, "page": page, "limit": limit, "total_pages": -(-total // limit)}
