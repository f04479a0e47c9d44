"""Stock decrement/increment and all-or-nothing reservations."""
import pytest
from pymongo.errors import PyMongoError

import inventory
from conftest import add_product, product
from errors import InsufficientStockError, NotFoundError
from inventory import StockLine, decrement, increment, low_stock, release_lines, reserve_lines
from pricing import PriceQuote


@pytest.fixture
def tee(db):
    return add_product(db, title="Crew Tee", variants=[
        {"variant_id": "white", "color": "White", "size_options": [
            {"size": "S", "price": 15, "stock": 4},
            {"size": "M", "price": 15, "stock": 10},
        ]},
        {"variant_id": "black", "color": "Black", "price": 18, "stock": 3},
    ])


def test_decrement_base_product(db):
    pid = add_product(db, price=10, stock=7)
    decrement(db, pid, quantity=3)
    assert product(db, pid)["stock"] == 4


def test_decrement_size_option(db, tee):
    decrement(db, tee, "white", "m", 4)
    sizes = product(db, tee)["variants"][0]["size_options"]
    assert sizes[1]["stock"] == 6
    assert sizes[0]["stock"] == 4


def test_decrement_direct_variant(db, tee):
    decrement(db, tee, "black", quantity=3)
    assert product(db, tee)["variants"][1]["stock"] == 0


def test_insufficient_stock_leaves_stock_unchanged(db, tee):
    with pytest.raises(InsufficientStockError) as excinfo:
        decrement(db, tee, "black", quantity=4)
    assert "Crew Tee" in str(excinfo.value)
    assert "3" not in str(excinfo.value)
    assert product(db, tee)["variants"][1]["stock"] == 3


def test_decrement_is_conditional_on_current_stock(db, monkeypatch):
    pid = add_product(db, title="Last One", price=10, stock=1)

    def stale_quote(prod, variant_id=None, option_key=None):
        return PriceQuote(price=10, stock=5, source="base", variant_type="simple", stock_path="stock")

    monkeypatch.setattr(inventory, "resolve_effective_price", stale_quote)
    with pytest.raises(InsufficientStockError):
        decrement(db, pid, quantity=2)
    assert product(db, pid)["stock"] == 1


def test_increment_has_no_upper_bound(db, tee):
    increment(db, tee, "white", "S", 100)
    assert product(db, tee)["variants"][0]["size_options"][0]["stock"] == 104


def test_unknown_product(db):
    with pytest.raises(NotFoundError):
        decrement(db, "not-an-id", quantity=1)


def test_reserve_lines_is_all_or_nothing(db, tee):
    base = add_product(db, title="Case", price=5, stock=10)
    lines = [
        StockLine(base, 2),
        StockLine(tee, 1, "white", "S"),
        StockLine(tee, 5, "black"),
    ]
    with pytest.raises(InsufficientStockError):
        reserve_lines(db, lines)
    assert product(db, base)["stock"] == 10
    assert product(db, tee)["variants"][0]["size_options"][0]["stock"] == 4
    assert product(db, tee)["variants"][1]["stock"] == 3


def test_reserve_and_release(db, tee):
    lines = [StockLine(tee, 2, "white", "S"), StockLine(tee, 1, "black")]
    reserve_lines(db, lines)
    assert product(db, tee)["variants"][0]["size_options"][0]["stock"] == 2
    release_lines(db, lines)
    assert product(db, tee)["variants"][0]["size_options"][0]["stock"] == 4
    assert product(db, tee)["variants"][1]["stock"] == 3


def test_release_continues_past_a_failed_write(db, tee, monkeypatch):
    base = add_product(db, title="Case", price=5, stock=10)
    real_increment = inventory.increment

    def flaky(db_, product_id, variant_id=None, option_key=None, quantity=1):
        if product_id == base:
            raise PyMongoError("connection reset")
        real_increment(db_, product_id, variant_id, option_key, quantity)

    monkeypatch.setattr(inventory, "increment", flaky)
    failed = StockLine(base, 2)
    unrestored = release_lines(db, [failed, StockLine(tee, 1, "black")])
    assert unrestored == [failed]
    assert product(db, base)["stock"] == 10
    assert product(db, tee)["variants"][1]["stock"] == 4


def test_low_stock_lists_every_unit(db, tee):
    add_product(db, title="Plenty", price=5, stock=100)
    low = low_stock(db, threshold=5)
    assert {(item["title"], item["option"], item["stock"]) for item in low} == {
        ("Crew Tee", "S", 4),
        ("Crew Tee", None, 3),
    }
