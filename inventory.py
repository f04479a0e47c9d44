"""
Stock operations.

Each decrement is a single conditional update on the product document: the
stock counter is only decremented if it still holds at least the requested
quantity, so two concurrent checkouts cannot both take the last unit.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from pymongo.errors import PyMongoError

from database import now, to_object_id
from errors import InsufficientStockError, NotFoundError, ValidationError
from pricing import product_name, resolve_effective_price, sellable_units

logger = logging.getLogger(__name__)


@dataclass
class StockLine:
    product_id: str
    quantity: int
    variant_id: Optional[str] = None
    option: Optional[str] = None


def _load_product(db, product_id: str) -> dict:
    oid = to_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid is not None else None
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def decrement(db, product_id: str, variant_id: Optional[str] = None, option_key: Optional[str] = None,
              quantity: int = 1) -> None:
    product = _load_product(db, product_id)
    quote = resolve_effective_price(product, variant_id, option_key)
    if quote.stock < quantity:
        raise InsufficientStockError(product_name(product))

    query = {"_id": product["_id"], quote.stock_path: {"$gte": quantity}}
    query.update(quote.match)
    result = db["product"].update_one(query, {"$inc": {quote.stock_path: -quantity}, "$set": {"updated_at": now()}})
    if result.modified_count == 0:
        # stock moved (or the variant was edited) since it was read
        raise InsufficientStockError(product_name(product))


def increment(db, product_id: str, variant_id: Optional[str] = None, option_key: Optional[str] = None,
              quantity: int = 1) -> None:
    product = _load_product(db, product_id)
    quote = resolve_effective_price(product, variant_id, option_key)
    query = {"_id": product["_id"]}
    query.update(quote.match)
    result = db["product"].update_one(query, {"$inc": {quote.stock_path: quantity}, "$set": {"updated_at": now()}})
    if result.modified_count == 0:
        raise NotFoundError(f"Variant not found for product: {product_name(product)}")


def reserve_lines(db, lines: Iterable[StockLine]) -> List[StockLine]:
    """Decrement every line, or none of them.

    On the first failing line the lines already decremented are restored
    before the error is re-raised.
    """
    reserved = []
    try:
        for line in lines:
            decrement(db, line.product_id, line.variant_id, line.option, line.quantity)
            reserved.append(line)
    except Exception:
        release_lines(db, reserved)
        raise
    return reserved


def release_lines(db, lines: Iterable[StockLine]) -> List[StockLine]:
    """Give stock back line by line; returns the lines that could not be restored."""
    unrestored = []
    for line in lines:
        try:
            increment(db, line.product_id, line.variant_id, line.option, line.quantity)
        except (NotFoundError, ValidationError, PyMongoError) as exc:
            unrestored.append(line)
            logger.error("Could not restore %d unit(s) of product %s (variant %s, option %s): %s",
                         line.quantity, line.product_id, line.variant_id, line.option, exc)
    return unrestored


def low_stock(db, threshold: int) -> list:
    """Every sellable unit whose stock is below ``threshold``."""
    low = []
    for product in db["product"].find({}):
        for label, quote in sellable_units(product):
            if quote.stock < threshold:
                low.append({
                    "product_id": str(product["_id"]),
                    "title": product.get("title"),
                    "variant_id": quote.variant_id,
                    "color": quote.color,
                    "option": label,
                    "sku": quote.sku,
                    "stock": quote.stock,
                })
    return low
