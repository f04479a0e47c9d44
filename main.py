import logging
import os
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import BaseModel, EmailStr

import checkout
import discounts
import inventory
import lifecycle
from auth import create_access_token, current_user_id, get_current_user, get_password_hash, require_admin, verify_password
from config import LOG_LEVEL, LOW_STOCK_THRESHOLD, PORT
from database import create_document, ensure_indexes, get_db, get_documents, now, to_object_id, to_str_id
from errors import ConflictError, NotFoundError, StoreError
from events import AuditLog, log_notification, notifier
from pricing import assign_skus, dump_variant, validate_product, validate_product_variants
from schemas import (CartCheckoutIn, CartItem, Discount, DiscountApplyIn, DiscountUpdate, PlaceOrderIn, ProductIn,
                     ProductUpdate, StatusUpdateIn, User, VariantIn)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


notifier.subscribe(log_notification)


@app.on_event("startup")
def create_indexes():
    ensure_indexes()


@app.exception_handler(StoreError)
def store_error_handler(request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# Utility models
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: str


class UserOut(BaseModel):
    id: str
    username: str
    email: EmailStr
    role: str


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API is running"}


@app.get("/test")
def test_database(db=Depends(get_db)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }

    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"

    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    response["database_name"] = "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set"

    return response


# Auth endpoints
@app.post("/auth/register", response_model=UserOut)
def register(payload: UserCreate, db=Depends(get_db)):
    if db["user"].find_one({"$or": [{"username": payload.username}, {"email": payload.email}]}):
        raise HTTPException(status_code=400, detail="Username or email already exists")

    user = User(username=payload.username, email=payload.email, password_hash=get_password_hash(payload.password))
    user_id = create_document("user", user, database=db)
    return {"id": user_id, "username": user.username, "email": user.email, "role": user.role}


@app.post("/auth/login", response_model=Token)
def login(form_data: OAuth2PasswordRequestForm = Depends(), db=Depends(get_db)):
    user = db["user"].find_one({"username": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    access_token = create_access_token({"sub": str(user["_id"])})
    return {"access_token": access_token, "token_type": "bearer"}


@app.get("/me/addresses")
def list_addresses(user=Depends(get_current_user)):
    return user.get("addresses") or []


# Product endpoints
def _load_product(db, product_id: str) -> dict:
    oid = to_object_id(product_id)
    doc = db["product"].find_one({"_id": oid}) if oid is not None else None
    if not doc:
        raise NotFoundError("Product not found")
    return doc


@app.post("/products", status_code=201)
def create_product(payload: ProductIn, admin=Depends(require_admin), db=Depends(get_db)):
    doc = assign_skus(db, validate_product(payload))
    pid = create_document("product", doc, database=db)
    AuditLog(db).record("PRODUCT_CREATE", f"Product created: {pid}", str(admin["_id"]))
    return to_str_id(db["product"].find_one({"_id": to_object_id(pid)}))


@app.post("/products/variants/validate", dependencies=[Depends(require_admin)])
def validate_variants(payload: List[VariantIn]):
    return [dump_variant(v) for v in validate_product_variants(payload)]


@app.get("/products")
def list_products(q: Optional[str] = None, category_id: Optional[str] = None, db=Depends(get_db)):
    filter_q = {}
    if q:
        filter_q["title"] = {"$regex": q, "$options": "i"}
    if category_id:
        filter_q["category_id"] = category_id
    return [to_str_id(it) for it in get_documents("product", filter_q, 100, database=db)]


@app.get("/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    return to_str_id(_load_product(db, product_id))


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    existing = _load_product(db, product_id)

    # the merged product is validated as a whole before anything is written
    merged = {k: v for k, v in existing.items() if k in ProductIn.model_fields}
    merged.update(payload.model_dump(exclude_unset=True))
    doc = assign_skus(db, validate_product(merged), product_id=existing["_id"])
    unset = {name: "" for name in ("price", "stock", "discount_price") if name in existing and name not in doc}

    update = {"$set": dict(doc, updated_at=now())}
    if unset:
        update["$unset"] = unset
    # stock moves also bump updated_at, so a checkout since the read makes this miss
    result = db["product"].update_one({"_id": existing["_id"], "updated_at": existing.get("updated_at")}, update)
    if result.matched_count == 0:
        raise ConflictError("Product was modified while it was being edited, reload and try again")
    AuditLog(db).record("PRODUCT_UPDATE", f"Product updated: {product_id}", str(admin["_id"]))
    return to_str_id(db["product"].find_one({"_id": existing["_id"]}))


# Cart endpoints (per-user)
@app.get("/cart")
def get_cart(user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return checkout.get_cart(db, user_id)


@app.post("/cart")
def add_to_cart(payload: CartItem, user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return checkout.add_to_cart(db, user_id, payload)


@app.delete("/cart/{product_id}")
def remove_from_cart(product_id: str, variant_id: Optional[str] = None, option: Optional[str] = None,
                     user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return checkout.remove_from_cart(db, user_id, product_id, variant_id, option)


@app.delete("/cart")
def clear_cart(user_id: str = Depends(current_user_id), db=Depends(get_db)):
    checkout.clear_cart(db, user_id)
    return {"status": "cleared"}


# Checkout / Orders
def _placed(place, *args, **kwargs):
    try:
        return to_str_id(place(*args, **kwargs))
    except StoreError:
        raise
    except Exception:
        logger.exception("Order placement failed")
        raise HTTPException(status_code=500, detail="Failed to place order")


@app.post("/orders", status_code=201)
def place_order(payload: PlaceOrderIn, user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return _placed(
        checkout.place_order, db, user_id, payload.items, payload.shipping_address,
        discount_code=payload.discount_code, save_address=payload.save_address,
        notifier=notifier, audit=AuditLog(db),
    )


@app.post("/orders/from-cart", status_code=201)
def place_order_from_cart(payload: CartCheckoutIn, user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return _placed(
        checkout.place_order_from_cart, db, user_id, payload.shipping_address,
        discount_code=payload.discount_code, save_address=payload.save_address,
        notifier=notifier, audit=AuditLog(db),
    )


@app.get("/orders")
def list_orders(status: Optional[str] = None, page: int = 1, limit: int = 10, user=Depends(get_current_user),
                db=Depends(get_db)):
    owner = None if user.get("role") == "admin" else str(user["_id"])
    result = lifecycle.list_orders(db, owner, status, max(page, 1), max(min(limit, 100), 1))
    result["orders"] = [to_str_id(o) for o in result["orders"]]
    return result


@app.get("/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), db=Depends(get_db)):
    owner = None if user.get("role") == "admin" else str(user["_id"])
    return to_str_id(lifecycle.get_order(db, order_id, owner))


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user_id: str = Depends(current_user_id), db=Depends(get_db)):
    return to_str_id(lifecycle.cancel_order(db, user_id, order_id, notifier=notifier, audit=AuditLog(db)))


@app.patch("/admin/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdateIn, admin=Depends(require_admin), db=Depends(get_db)):
    order = lifecycle.update_order_status(
        db, order_id, payload.status, notifier=notifier, audit=AuditLog(db), actor=str(admin["_id"]),
    )
    return to_str_id(order)


# Discounts
@app.post("/discounts", status_code=201)
def create_discount(payload: Discount, admin=Depends(require_admin), db=Depends(get_db)):
    doc = discounts.create_discount(db, payload)
    AuditLog(db).record("DISCOUNT_CREATE", f"Discount created: {doc['_id']}", str(admin["_id"]))
    return to_str_id(doc)


@app.get("/discounts", dependencies=[Depends(require_admin)])
def list_discounts(is_active: Optional[bool] = None, page: int = 1, limit: int = 10, db=Depends(get_db)):
    result = discounts.list_discounts(db, is_active, max(page, 1), max(min(limit, 100), 1))
    result["discounts"] = [to_str_id(d) for d in result["discounts"]]
    return result


@app.get("/discounts/{discount_id}", dependencies=[Depends(require_admin)])
def get_discount(discount_id: str, db=Depends(get_db)):
    return to_str_id(discounts.get_discount(db, discount_id))


@app.put("/discounts/{discount_id}")
def update_discount(discount_id: str, payload: DiscountUpdate, admin=Depends(require_admin), db=Depends(get_db)):
    doc = discounts.update_discount(db, discount_id, payload)
    AuditLog(db).record("DISCOUNT_UPDATE", f"Discount updated: {discount_id}", str(admin["_id"]))
    return to_str_id(doc)


@app.delete("/discounts/{discount_id}")
def delete_discount(discount_id: str, admin=Depends(require_admin), db=Depends(get_db)):
    discounts.delete_discount(db, discount_id)
    AuditLog(db).record("DISCOUNT_DELETE", f"Discount deleted: {discount_id}", str(admin["_id"]))
    return {"status": "deleted"}


@app.post("/discounts/apply", dependencies=[Depends(get_current_user)])
def apply_discount(payload: DiscountApplyIn, db=Depends(get_db)):
    result = discounts.evaluate(db, payload.code, payload.order_total, payload.product_ids)
    return {
        "discount": {
            "id": result.discount_ref,
            "code": result.code,
            "type": result.type,
            "value": result.value,
            "discount_amount": result.discount_amount,
        }
    }


# Inventory
@app.get("/admin/inventory/low-stock", dependencies=[Depends(require_admin)])
def low_stock(threshold: int = LOW_STOCK_THRESHOLD, db=Depends(get_db)):
    return inventory.low_stock(db, threshold)


# Simple seed endpoint to create sample products (admin only)
@app.post("/seed", dependencies=[Depends(require_admin)])
def seed(db=Depends(get_db)):
    sample_products = [
        {"title": "Anker PowerCore 10000", "brand": "Anker", "category_id": "accessories", "price": 29.99,
         "stock": 40, "shipping_cost": 5},
        {"title": "Galaxy S24", "brand": "Samsung", "category_id": "phones", "shipping_cost": 10, "variants": [
            {"color": "Onyx Black", "storage_options": [
                {"capacity": "128GB", "price": 799, "stock": 10},
                {"capacity": "256GB", "price": 859, "discount_price": 829, "stock": 6},
            ]},
            {"color": "Cobalt Violet", "storage_options": [{"capacity": "256gb", "price": 859, "stock": 4}]},
        ]},
        {"title": "Classic Crew Tee", "brand": "Basics", "category_id": "apparel", "shipping_cost": 3, "variants": [
            {"color": "White", "size_options": [
                {"size": "s", "price": 15, "stock": 20},
                {"size": "m", "price": 15, "stock": 25},
                {"size": "l", "price": 16, "stock": 12},
            ]},
        ]},
        {"title": "AirPods Case", "brand": "Spigen", "category_id": "accessories", "variants": [
            {"color": "Black", "price": 12.99, "stock": 30},
            {"color": "Red", "price": 12.99, "discount_price": 9.99, "stock": 8},
        ]},
    ]

    created = 0
    for p in sample_products:
        if not db["product"].find_one({"title": p["title"]}):
            create_document("product", assign_skus(db, validate_product(p)), database=db)
            created += 1

    return {"status": "ok", "created": created}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
