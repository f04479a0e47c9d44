"""Order placement from item lists and from the saved cart."""
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError, PyMongoError

import inventory
from checkout import add_to_cart, get_cart, place_order, place_order_from_cart, remove_from_cart
from conftest import ADDRESS, DatabaseOverlay, add_discount, add_product, product
from errors import DiscountError, EmptyOrderError, InsufficientStockError, NotFoundError
from events import AuditLog, Notifier


@pytest.fixture
def phone(db):
    return add_product(db, title="Phone Case", shipping_cost=50, variants=[
        {"variant_id": "red", "color": "Red", "price": 30, "stock": 10},
        {"variant_id": "blue", "color": "Blue", "price": 35, "stock": 10},
    ])


def _used_count(db, ref):
    return db["discount"].find_one({"_id": ObjectId(ref)})["used_count"]


def test_discount_price_and_fixed_code(db, user_id):
    pid = add_product(db, price=100, discount_price=80, stock=5)
    add_discount(db, code="TWENTY", value=20)
    order = place_order(db, user_id, [{"product_id": pid, "quantity": 2}], ADDRESS, discount_code="twenty")
    assert order["subtotal"] == 160
    assert order["discount_amount"] == 20
    assert order["total_price"] == 140
    assert order["status"] == "pending"
    assert order["items"][0]["price"] == 80
    assert order["order_id"].startswith("ORD-")
    assert product(db, pid)["stock"] == 3
    assert db["order"].count_documents({}) == 1


def test_shipping_charged_once_per_product(db, user_id, phone):
    order = place_order(db, user_id, [
        {"product_id": phone, "variant_id": "red", "quantity": 1},
        {"product_id": phone, "variant_id": "blue", "quantity": 2},
    ], ADDRESS)
    assert order["total_shipping_cost"] == 50
    assert order["total_price"] == 100
    assert order["total_amount"] == 150
    variants = product(db, phone)["variants"]
    assert variants[0]["stock"] == 9
    assert variants[1]["stock"] == 8


def test_shipping_summed_across_products(db, user_id, phone):
    other = add_product(db, title="Charger", price=20, stock=5, shipping_cost=15)
    order = place_order(db, user_id, [
        {"product_id": phone, "variant_id": "red", "quantity": 1},
        {"product_id": other, "quantity": 1},
    ], ADDRESS)
    assert order["total_shipping_cost"] == 65


def test_shipping_waived_for_large_orders(db, user_id):
    pid = add_product(db, price=1250, stock=5, shipping_cost=40)
    order = place_order(db, user_id, [{"product_id": pid, "quantity": 2}], ADDRESS)
    assert order["total_shipping_cost"] == 0


def test_shipping_waived_on_unit_count(db, user_id):
    pid = add_product(db, price=0.5, stock=3000, shipping_cost=40)
    order = place_order(db, user_id, [{"product_id": pid, "quantity": 2500}], ADDRESS)
    assert order["total_price"] == 1250
    assert order["total_shipping_cost"] == 0


def test_size_option_line_is_frozen(db, user_id):
    pid = add_product(db, title="Hoodie", variants=[
        {"variant_id": "grey", "color": "Grey", "size_options": [{"size": "M", "price": 40, "stock": 3, "sku": "HD-M"}]},
    ])
    order = place_order(db, user_id, [{"product_id": pid, "variant_id": "grey", "option": "m", "quantity": 1}], ADDRESS)
    item = order["items"][0]
    assert item["variant_type"] == "size"
    assert item["option"] == "M"
    assert item["color"] == "Grey"
    assert item["sku"] == "HD-M"
    assert item["price"] == 40


def test_insufficient_stock_rejects_whole_order(db, user_id, phone):
    base = add_product(db, title="Charger", price=20, stock=5)
    ref = add_discount(db)
    with pytest.raises(InsufficientStockError, match="Phone Case"):
        place_order(db, user_id, [
            {"product_id": base, "quantity": 1},
            {"product_id": phone, "variant_id": "red", "quantity": 11},
        ], ADDRESS, discount_code="SAVE20")
    assert product(db, base)["stock"] == 5
    assert db["order"].count_documents({}) == 0
    assert _used_count(db, ref) == 0


def test_repeated_unit_counts_against_one_stock(db, user_id, phone):
    with pytest.raises(InsufficientStockError):
        place_order(db, user_id, [
            {"product_id": phone, "variant_id": "red", "quantity": 6},
            {"product_id": phone, "variant_id": "red", "quantity": 5},
        ], ADDRESS)


def test_failed_decrement_rolls_back_earlier_lines(db, user_id, phone, monkeypatch):
    base = add_product(db, title="Charger", price=20, stock=5)
    ref = add_discount(db)
    real_decrement = inventory.decrement

    def flaky(db_, product_id, variant_id=None, option_key=None, quantity=1):
        if product_id == phone:
            raise InsufficientStockError("Phone Case")
        real_decrement(db_, product_id, variant_id, option_key, quantity)

    monkeypatch.setattr(inventory, "decrement", flaky)
    with pytest.raises(InsufficientStockError):
        place_order(db, user_id, [
            {"product_id": base, "quantity": 2},
            {"product_id": phone, "variant_id": "red", "quantity": 1},
        ], ADDRESS, discount_code="SAVE20")
    assert product(db, base)["stock"] == 5
    assert db["order"].count_documents({}) == 0
    assert _used_count(db, ref) == 0


class _BrokenOrders:
    def insert_one(self, doc):
        raise PyMongoError("write failed")


class _ReadOnlyUsers:
    def __init__(self, users):
        self._users = users

    def find_one(self, *args, **kwargs):
        return self._users.find_one(*args, **kwargs)

    def update_one(self, *args, **kwargs):
        raise PyMongoError("write failed")


def test_failed_order_write_restores_stock_and_discount(db, user_id):
    pid = add_product(db, price=10, stock=4)
    ref = add_discount(db, usage_limit=5)
    with pytest.raises(PyMongoError):
        place_order(DatabaseOverlay(db, order=_BrokenOrders()), user_id, [{"product_id": pid, "quantity": 3}],
                    ADDRESS, discount_code="SAVE20")
    assert product(db, pid)["stock"] == 4
    assert _used_count(db, ref) == 0


def test_discount_usage_counted_on_success(db, user_id):
    pid = add_product(db, price=100, stock=5)
    ref = add_discount(db, usage_limit=2)
    place_order(db, user_id, [{"product_id": pid, "quantity": 1}], ADDRESS, discount_code="SAVE20")
    assert _used_count(db, ref) == 1


def test_invalid_discount_aborts_before_any_write(db, user_id):
    pid = add_product(db, price=100, stock=5)
    with pytest.raises(DiscountError):
        place_order(db, user_id, [{"product_id": pid, "quantity": 1}], ADDRESS, discount_code="MISSING")
    assert product(db, pid)["stock"] == 5


def test_empty_order(db, user_id):
    with pytest.raises(EmptyOrderError):
        place_order(db, user_id, [], ADDRESS)


def test_unknown_product(db, user_id):
    with pytest.raises(NotFoundError):
        place_order(db, user_id, [{"product_id": str(ObjectId()), "quantity": 1}], ADDRESS)


def test_unknown_variant(db, user_id, phone):
    with pytest.raises(NotFoundError):
        place_order(db, user_id, [{"product_id": phone, "variant_id": "green", "quantity": 1}], ADDRESS)


def test_saved_address_is_not_duplicated(db, user_id):
    pid = add_product(db, price=10, stock=10)
    place_order(db, user_id, [{"product_id": pid, "quantity": 1}], ADDRESS, save_address=True)
    shouty = dict(ADDRESS, address_line1=" 12 MALL ROAD ", city="lahore")
    place_order(db, user_id, [{"product_id": pid, "quantity": 1}], shouty, save_address=True)
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    assert len(user["addresses"]) == 1


def test_order_created_is_announced(db, user_id):
    pid = add_product(db, price=10, stock=10)
    received = []
    notifier = Notifier()
    notifier.subscribe(lambda topic, payload: received.append((topic, payload["event"])))
    order = place_order(db, user_id, [{"product_id": pid, "quantity": 1}], ADDRESS,
                        notifier=notifier, audit=AuditLog(db))
    assert ("admin", "order.created") in received
    assert (f"user:{user_id}", "order.created") in received
    assert db["auditlog"].find_one({"action": "ORDER_CREATE"})["details"].endswith(order["order_id"])


def test_failing_subscriber_does_not_fail_order(db, user_id):
    pid = add_product(db, price=10, stock=10)
    notifier = Notifier()

    def broken(topic, payload):
        raise RuntimeError("socket closed")

    notifier.subscribe(broken)
    place_order(db, user_id, [{"product_id": pid, "quantity": 1}], ADDRESS, notifier=notifier)
    assert db["order"].count_documents({}) == 1


# ----- Cart -----

def test_cart_checkout_clears_cart(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 2})
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "blue", "quantity": 1})
    order = place_order_from_cart(db, user_id, ADDRESS)
    assert len(order["items"]) == 2
    assert order["total_price"] == 95
    assert order["total_shipping_cost"] == 50
    assert get_cart(db, user_id)["items"] == []


def test_failed_cart_checkout_keeps_cart(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 2})
    db["product"].update_one({"_id": ObjectId(phone)}, {"$set": {"variants.0.stock": 1}})
    with pytest.raises(InsufficientStockError):
        place_order_from_cart(db, user_id, ADDRESS)
    assert len(get_cart(db, user_id)["items"]) == 1


def test_empty_cart_checkout(db, user_id):
    with pytest.raises(EmptyOrderError, match="Cart is empty"):
        place_order_from_cart(db, user_id, ADDRESS)


def test_cart_prices_are_read_live(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 2})
    assert get_cart(db, user_id)["subtotal"] == 60
    db["product"].update_one({"_id": ObjectId(phone)}, {"$set": {"variants.0.price": 40}})
    cart = get_cart(db, user_id)
    assert cart["subtotal"] == 80
    assert cart["items"][0]["unit_price"] == 40


def test_adding_same_line_sets_quantity(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 2})
    cart = add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 5})
    assert len(cart["items"]) == 1
    assert cart["items"][0]["quantity"] == 5


def test_add_to_cart_checks_stock(db, user_id, phone):
    with pytest.raises(InsufficientStockError):
        add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 11})


def test_remove_from_cart(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 1})
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "blue", "quantity": 1})
    cart = remove_from_cart(db, user_id, phone, "red")
    assert [line["variant_id"] for line in cart["items"]] == ["blue"]


def test_address_save_failure_does_not_undo_cart_checkout(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 2})
    flaky_db = DatabaseOverlay(db, user=_ReadOnlyUsers(db["user"]))
    order = place_order_from_cart(flaky_db, user_id, ADDRESS, save_address=True)
    assert db["order"].count_documents({"order_id": order["order_id"]}) == 1
    assert product(db, phone)["variants"][0]["stock"] == 8
    assert get_cart(db, user_id)["items"] == []


def test_one_cart_per_user(db, user_id, phone):
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "red", "quantity": 1})
    add_to_cart(db, user_id, {"product_id": phone, "variant_id": "blue", "quantity": 1})
    assert db["cart"].count_documents({"user_id": user_id}) == 1
    with pytest.raises(DuplicateKeyError):
        db["cart"].insert_one({"user_id": user_id, "items": []})
