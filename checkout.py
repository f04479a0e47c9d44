"""
Cart and checkout.

Orders are placed either from a client-supplied item list or from the user's
saved cart. Every line is priced and stock-checked before anything is
written; the discount claim, the stock decrements and the order insert then
either all take effect or are all undone.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union
from uuid import uuid4

from pymongo.errors import PyMongoError

from config import FREE_SHIPPING_THRESHOLD
from database import now, to_object_id
from discounts import DiscountResult, claim_usage, evaluate, release_usage
from errors import EmptyOrderError, InsufficientStockError, NotFoundError, ValidationError
from events import AuditLog, Notifier
from inventory import StockLine, release_lines, reserve_lines
from pricing import normalize_label, product_name, resolve_effective_price
from schemas import Cart, CartItem, Order, OrderItem, ShippingAddress

logger = logging.getLogger(__name__)


@dataclass
class OrderDraft:
    items: List[OrderItem] = field(default_factory=list)
    stock_lines: List[StockLine] = field(default_factory=list)
    product_ids: List[str] = field(default_factory=list)
    subtotal: float = 0.0
    shipping: float = 0.0
    total_quantity: int = 0


def generate_order_id() -> str:
    return f"ORD-{uuid4().hex[:8].upper()}"


def _as_cart_item(item: Union[CartItem, dict]) -> CartItem:
    if isinstance(item, CartItem):
        return item
    return CartItem.model_validate(item)


def _load_product(db, product_id: str) -> dict:
    oid = to_object_id(product_id)
    product = db["product"].find_one({"_id": oid}) if oid is not None else None
    if product is None:
        raise NotFoundError(f"Product not found: {product_id}")
    return product


def build_draft(db, lines: List[CartItem]) -> OrderDraft:
    """Price every line against the live catalog and check stock.

    Shipping is charged once per distinct product, whatever the number of
    lines or variants referencing it.
    """
    draft = OrderDraft()
    shipping_by_product: Dict[str, float] = {}
    requested: Dict[tuple, int] = {}

    for line in lines:
        product = _load_product(db, line.product_id)
        quote = resolve_effective_price(product, line.variant_id, line.option)

        unit_key = (line.product_id, quote.stock_path)
        requested[unit_key] = requested.get(unit_key, 0) + line.quantity
        if requested[unit_key] > quote.stock:
            raise InsufficientStockError(product_name(product))

        draft.items.append(OrderItem(
            product_id=line.product_id,
            variant_id=quote.variant_id,
            option=quote.option,
            variant_type=quote.variant_type,
            item_name=product_name(product),
            color=quote.color,
            quantity=line.quantity,
            price=quote.unit_price,
            sku=quote.sku,
        ))
        draft.stock_lines.append(StockLine(line.product_id, line.quantity, quote.variant_id, quote.option))
        draft.subtotal += quote.unit_price * line.quantity
        draft.total_quantity += line.quantity
        if line.product_id not in shipping_by_product:
            shipping_by_product[line.product_id] = product.get("shipping_cost", 0) or 0
            draft.product_ids.append(line.product_id)

    draft.subtotal = round(draft.subtotal, 2)
    draft.shipping = round(sum(shipping_by_product.values()), 2)
    return draft


def shipping_waived(total_price: float, total_quantity: int) -> bool:
    # TODO: confirm with the business whether the unit-count threshold was meant to differ from the price one
    return total_price >= FREE_SHIPPING_THRESHOLD or total_quantity >= FREE_SHIPPING_THRESHOLD


def _commit(db, order_doc: dict, stock_lines: List[StockLine], discount: Optional[DiscountResult]) -> None:
    if discount is not None:
        claim_usage(db, discount.discount_ref)
    try:
        reserve_lines(db, stock_lines)
    except Exception:
        if discount is not None:
            release_usage(db, discount.discount_ref)
        raise
    try:
        db["order"].insert_one(order_doc)
    except PyMongoError:
        logger.exception("Order %s could not be saved, restoring stock", order_doc["order_id"])
        release_lines(db, stock_lines)
        if discount is not None:
            release_usage(db, discount.discount_ref)
        raise


def _address_key(address: dict) -> tuple:
    return tuple(
        (address.get(name) or "").strip().lower()
        for name in ("address_line1", "city", "postal_code", "country")
    )


def save_shipping_address(db, user_id: str, address: dict) -> bool:
    """Add ``address`` to the user's saved addresses unless it is already there.

    Runs after the order is stored, so a database failure is logged and
    reported as ``False`` rather than raised.
    """
    oid = to_object_id(user_id)
    try:
        user = db["user"].find_one({"_id": oid}) if oid is not None else None
        if user is None:
            logger.warning("Cannot save address: user %s not found", user_id)
            return False
        key = _address_key(address)
        if any(_address_key(saved) == key for saved in user.get("addresses") or []):
            return False
        db["user"].update_one({"_id": oid}, {"$push": {"addresses": dict(address)}, "$set": {"updated_at": now()}})
    except PyMongoError:
        logger.exception("Could not save shipping address for user %s", user_id)
        return False
    return True


def _announce(order_doc: dict, notifier: Optional[Notifier], audit: Optional[AuditLog]) -> None:
    if audit is not None:
        audit.record("ORDER_CREATE", f"Order created: {order_doc['order_id']}", order_doc["user_id"])
    if notifier is not None:
        payload = {
            "event": "order.created",
            "order_id": order_doc["order_id"],
            "user_id": order_doc["user_id"],
            "total_amount": order_doc["total_amount"],
            "created_at": order_doc["created_at"],
        }
        notifier.notify("admin", payload)
        notifier.notify(f"user:{order_doc['user_id']}", payload)


def _commit_order(db, user_id: str, items: list, shipping_address: Union[ShippingAddress, dict],
                  discount_code: Optional[str]) -> dict:
    lines = [_as_cart_item(item) for item in items or []]
    if not lines:
        raise EmptyOrderError()
    if isinstance(shipping_address, dict):
        shipping_address = ShippingAddress.model_validate(shipping_address)

    draft = build_draft(db, lines)

    discount = None
    total_price = draft.subtotal
    if discount_code:
        discount = evaluate(db, discount_code, draft.subtotal, draft.product_ids)
        total_price = round(total_price - discount.discount_amount, 2)

    shipping = 0.0 if shipping_waived(total_price, draft.total_quantity) else draft.shipping

    order = Order(
        order_id=generate_order_id(),
        user_id=str(user_id),
        items=draft.items,
        subtotal=draft.subtotal,
        discount_id=discount.discount_ref if discount else None,
        discount_amount=discount.discount_amount if discount else 0,
        total_price=total_price,
        total_shipping_cost=shipping,
        total_amount=round(total_price + shipping, 2),
        shipping_address=shipping_address,
    )
    order_doc = order.model_dump()
    order_doc["created_at"] = now()
    order_doc["updated_at"] = now()

    _commit(db, order_doc, draft.stock_lines, discount)
    logger.info("Order %s placed by user %s (%d line(s), total %.2f)",
                order.order_id, user_id, len(draft.items), order.total_amount)
    return order_doc


def _after_placed(db, order_doc: dict, save_address: bool, notifier: Optional[Notifier],
                  audit: Optional[AuditLog]) -> None:
    # the order is stored at this point; nothing here may fail the request
    if save_address:
        save_shipping_address(db, order_doc["user_id"], order_doc["shipping_address"])
    _announce(order_doc, notifier, audit)


def place_order(db, user_id: str, items: list, shipping_address: Union[ShippingAddress, dict],
                discount_code: Optional[str] = None, save_address: bool = False,
                notifier: Optional[Notifier] = None, audit: Optional[AuditLog] = None) -> dict:
    order_doc = _commit_order(db, user_id, items, shipping_address, discount_code)
    _after_placed(db, order_doc, save_address, notifier, audit)
    return order_doc


def place_order_from_cart(db, user_id: str, shipping_address: Union[ShippingAddress, dict],
                          discount_code: Optional[str] = None, save_address: bool = False,
                          notifier: Optional[Notifier] = None, audit: Optional[AuditLog] = None) -> dict:
    cart = db["cart"].find_one({"user_id": str(user_id)})
    if not cart or not cart.get("items"):
        raise EmptyOrderError("Cart is empty")
    order_doc = _commit_order(db, user_id, cart["items"], shipping_address, discount_code)
    try:
        clear_cart(db, user_id)
    except PyMongoError:
        logger.exception("Order %s placed but the cart of user %s was not cleared", order_doc["order_id"], user_id)
    _after_placed(db, order_doc, save_address, notifier, audit)
    return order_doc


# ----- Cart -----

def _same_line(line: dict, product_id: str, variant_id: Optional[str], option: Optional[str]) -> bool:
    return (
        line.get("product_id") == product_id
        and line.get("variant_id") == variant_id
        and normalize_label(line.get("option")) == normalize_label(option)
    )


def add_to_cart(db, user_id: str, item: Union[CartItem, dict]) -> dict:
    """Add a line to the user's cart, or set the quantity of an identical line."""
    item = _as_cart_item(item)
    product = _load_product(db, item.product_id)
    quote = resolve_effective_price(product, item.variant_id, item.option)
    if quote.stock < item.quantity:
        raise InsufficientStockError(product_name(product))

    line = {
        "product_id": item.product_id,
        "variant_id": quote.variant_id,
        "option": quote.option,
        "quantity": item.quantity,
    }
    # the upsert and the unique user_id index keep one cart per user
    fresh = Cart(cart_id=f"CART-{uuid4().hex[:8]}", user_id=str(user_id))
    db["cart"].update_one(
        {"user_id": fresh.user_id},
        {"$setOnInsert": dict(fresh.model_dump(exclude={"user_id"}), created_at=now())},
        upsert=True,
    )
    cart = db["cart"].find_one({"user_id": fresh.user_id})
    items = list(cart.get("items") or [])
    for existing in items:
        if _same_line(existing, line["product_id"], line["variant_id"], line["option"]):
            existing["quantity"] = item.quantity
            break
    else:
        items.append(line)
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now()}})
    return get_cart(db, user_id)


def remove_from_cart(db, user_id: str, product_id: str, variant_id: Optional[str] = None,
                     option: Optional[str] = None) -> dict:
    cart = db["cart"].find_one({"user_id": str(user_id)})
    if cart is None:
        raise NotFoundError("Cart not found")
    if variant_id is None:
        items = [line for line in cart.get("items") or [] if line.get("product_id") != product_id]
    else:
        items = [line for line in cart.get("items") or [] if not _same_line(line, product_id, variant_id, option)]
    db["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": items, "updated_at": now()}})
    return get_cart(db, user_id)


def clear_cart(db, user_id: str) -> None:
    db["cart"].update_one({"user_id": str(user_id)}, {"$set": {"items": [], "updated_at": now()}})


def get_cart(db, user_id: str) -> Optional[dict]:
    """The user's cart with every line priced from the live catalog."""
    cart = db["cart"].find_one({"user_id": str(user_id)})
    if cart is None:
        return None
    lines = []
    subtotal = 0.0
    for line in cart.get("items") or []:
        priced = dict(line)
        oid = to_object_id(line.get("product_id"))
        product = db["product"].find_one({"_id": oid}) if oid is not None else None
        if product is None:
            priced["available"] = False
            lines.append(priced)
            continue
        try:
            quote = resolve_effective_price(product, line.get("variant_id"), line.get("option"))
        except (NotFoundError, ValidationError) as exc:
            logger.info("Cart line for product %s no longer resolves: %s", line.get("product_id"), exc)
            priced["available"] = False
            lines.append(priced)
            continue
        priced.update(
            title=product_name(product),
            price=quote.price,
            discount_price=quote.discount_price,
            unit_price=quote.unit_price,
            sku=quote.sku,
            color=quote.color,
            available=quote.stock >= line.get("quantity", 0),
        )
        subtotal += quote.unit_price * line.get("quantity", 0)
        lines.append(priced)
    return {
        "cart_id": cart.get("cart_id"),
        "user_id": cart.get("user_id"),
        "items": lines,
        "subtotal": round(subtotal, 2),
    }
