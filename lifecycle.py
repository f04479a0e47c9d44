"""
Order status transitions.

    pending -> processing -> shipped -> delivered
    pending -> cancelled

Cancelling restores stock for every line; it is only possible while the
order is pending. Other moves are forward-only and have no side effects.
"""
import logging
from typing import Optional

from pymongo import ReturnDocument

from database import now
from errors import InvalidTransitionError, NotFoundError, ValidationError
from events import AuditLog, Notifier
from inventory import StockLine, release_lines
from schemas import ORDER_STATUSES

logger = logging.getLogger(__name__)

FORWARD_FLOW = ("pending", "processing", "shipped", "delivered")
TERMINAL = ("delivered", "cancelled")


def can_transition(current: str, new: str) -> bool:
    if current in TERMINAL or current == new:
        return False
    if new == "cancelled":
        return current == "pending"
    if current not in FORWARD_FLOW or new not in FORWARD_FLOW:
        return False
    return FORWARD_FLOW.index(new) > FORWARD_FLOW.index(current)


def _announce(order: dict, notifier: Optional[Notifier], audit: Optional[AuditLog], actor: Optional[str]) -> None:
    if audit is not None:
        audit.record("ORDER_STATUS_UPDATE", f"Order {order['order_id']} is now {order['status']}", actor)
    if notifier is not None:
        payload = {
            "event": "order.status_changed",
            "order_id": order["order_id"],
            "status": order["status"],
            "updated_at": order["updated_at"],
        }
        notifier.notify(f"user:{order['user_id']}", payload)
        notifier.notify("admin", payload)


def _restore_stock(db, order: dict) -> None:
    lines = [
        StockLine(item["product_id"], item["quantity"], item.get("variant_id"), item.get("option"))
        for item in order.get("items") or []
    ]
    unrestored = release_lines(db, lines)
    if unrestored:
        logger.error("Order %s cancelled but %d line(s) were not restocked: %s", order["order_id"], len(unrestored),
                     ", ".join(f"{line.product_id}/{line.variant_id}/{line.option} x{line.quantity}" for line in unrestored))


def _cancel(db, query: dict) -> dict:
    # only one caller can move the order out of pending
    order = db["order"].find_one_and_update(
        dict(query, status="pending"),
        {"$set": {"status": "cancelled", "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        existing = db["order"].find_one(query)
        if existing is None:
            raise NotFoundError("Order not found")
        raise InvalidTransitionError(f"Cannot cancel an order that is {existing['status']}")
    _restore_stock(db, order)
    logger.info("Order %s cancelled, stock restored for %d line(s)", order["order_id"], len(order.get("items") or []))
    return order


def cancel_order(db, user_id: str, order_id: str, notifier: Optional[Notifier] = None,
                 audit: Optional[AuditLog] = None) -> dict:
    """Cancel one of the user's own pending orders."""
    order = _cancel(db, {"order_id": order_id, "user_id": str(user_id)})
    _announce(order, notifier, audit, str(user_id))
    return order


def update_order_status(db, order_id: str, new_status: str, notifier: Optional[Notifier] = None,
                        audit: Optional[AuditLog] = None, actor: Optional[str] = None) -> dict:
    """Admin status change. ``cancelled`` goes through the stock-restoring path."""
    if new_status not in ORDER_STATUSES:
        raise ValidationError(f"Unknown order status: {new_status}")

    if new_status == "cancelled":
        order = _cancel(db, {"order_id": order_id})
        _announce(order, notifier, audit, actor)
        return order

    current = db["order"].find_one({"order_id": order_id})
    if current is None:
        raise NotFoundError("Order not found")
    if not can_transition(current["status"], new_status):
        raise InvalidTransitionError(f"Cannot change order status from {current['status']} to {new_status}")

    order = db["order"].find_one_and_update(
        {"order_id": order_id, "status": current["status"]},
        {"$set": {"status": new_status, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        raise InvalidTransitionError("Order status changed concurrently, please retry")
    logger.info("Order %s moved from %s to %s", order_id, current["status"], new_status)
    _announce(order, notifier, audit, actor)
    return order


def get_order(db, order_id: str, user_id: Optional[str] = None) -> dict:
    query = {"order_id": order_id}
    if user_id is not None:
        query["user_id"] = str(user_id)
    order = db["order"].find_one(query)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def list_orders(db, user_id: Optional[str] = None, status: Optional[str] = None, page: int = 1,
                limit: int = 10) -> dict:
    query = {}
    if user_id is not None:
        query["user_id"] = str(user_id)
    if status:
        query["status"] = status
    skip = (page - 1) * limit
    orders = list(db["order"].find(query).sort("created_at", -1).skip(skip).limit(limit))
    total = db["order"].count_documents(query)
    return {"orders": orders, "total": total, "page": page, "limit": limit, "total_pages": -(-total // limit)}
