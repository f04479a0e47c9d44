"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB collection or to an embedded
document inside one. Collection name is the lowercase class name.
"""
from datetime import datetime, timezone
from typing import Annotated, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")

DISCOUNT_CODE_PATTERN = r"^[A-Za-z0-9-]+$"
PHONE_PATTERN = r"^\+\d{1,4}\s\d{6,14}$"


def _clean_sku(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip().upper()
    return value or None


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["customer", "admin"] = "customer"
    addresses: List[dict] = Field(default_factory=list)


# ----- Product variants -----

class Color(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, value):
        return value.strip() if isinstance(value, str) else value


class PricedUnit(BaseModel):
    """Price, stock and optional sale price of one sellable unit."""
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None

    @field_validator("sku")
    @classmethod
    def clean_sku(cls, value):
        return _clean_sku(value)

    @model_validator(mode="after")
    def check_discount_price(self):
        if self.discount_price is not None and self.discount_price >= self.price:
            raise ValueError("discount price must be less than the price")
        return self


class StorageOption(PricedUnit):
    capacity: str = Field(..., min_length=1)

    @field_validator("capacity", mode="before")
    @classmethod
    def normalize_capacity(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class SizeOption(PricedUnit):
    size: str = Field(..., min_length=1)

    @field_validator("size", mode="before")
    @classmethod
    def normalize_size(cls, value):
        return value.strip().upper() if isinstance(value, str) else value


class VariantBase(BaseModel):
    variant_id: str = Field(default_factory=lambda: uuid4().hex)
    color: Color
    images: List[dict] = Field(default_factory=list)


class DirectVariant(PricedUnit, VariantBase):
    pricing: Literal["direct"] = "direct"


class StorageVariant(VariantBase):
    pricing: Literal["storage"] = "storage"
    storage_options: List[StorageOption] = Field(..., min_length=1)


class SizeVariant(VariantBase):
    pricing: Literal["size"] = "size"
    size_options: List[SizeOption] = Field(..., min_length=1)


Variant = Annotated[Union[DirectVariant, StorageVariant, SizeVariant], Field(discriminator="pricing")]


class VariantIn(BaseModel):
    """A variant as submitted by the admin form, before classification."""
    model_config = ConfigDict(extra="ignore")

    variant_id: Optional[str] = None
    color: Optional[Union[str, dict]] = None
    price: Optional[float] = None
    stock: Optional[float] = None
    discount_price: Optional[float] = None
    sku: Optional[str] = None
    storage_options: Optional[List[dict]] = None
    size_options: Optional[List[dict]] = None
    images: List[dict] = Field(default_factory=list)


# ----- Products -----

class ProductIn(BaseModel):
    title: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=3000)
    brand: str = Field(..., min_length=2, max_length=50)
    category_id: str
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    shipping_cost: float = Field(0, ge=0)
    sku: Optional[str] = None
    color: Optional[Color] = None
    variants: List[VariantIn] = Field(default_factory=list)
    specifications: List[dict] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)
    is_featured: bool = False


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=100)
    description: Optional[str] = Field(None, max_length=3000)
    brand: Optional[str] = Field(None, min_length=2, max_length=50)
    category_id: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    shipping_cost: Optional[float] = Field(None, ge=0)
    sku: Optional[str] = None
    variants: Optional[List[VariantIn]] = None
    specifications: Optional[List[dict]] = None
    features: Optional[List[str]] = None
    is_featured: Optional[bool] = None


# ----- Cart -----

class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    option: Optional[str] = Field(None, description="Selected size or storage capacity")
    quantity: int = Field(..., ge=1)


class Cart(BaseModel):
    cart_id: str
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


# ----- Orders -----

class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)
    phone: str = Field(..., pattern=PHONE_PATTERN)

    @field_validator("full_name", "address_line1", "address_line2", "city", "state", "postal_code", "country",
                     "phone", mode="before")
    @classmethod
    def strip(cls, value):
        return value.strip() if isinstance(value, str) else value


class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    option: Optional[str] = None
    variant_type: Literal["simple", "color", "storage", "size"]
    item_name: str
    color: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price charged")
    sku: Optional[str] = None


class Order(BaseModel):
    order_id: str
    user_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    discount_id: Optional[str] = None
    discount_amount: float = Field(0, ge=0)
    total_price: float = Field(..., ge=0)
    total_shipping_cost: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_method: Literal["credit_card", "paypal", "bank_transfer", "cash_on_delivery", "other"] = "cash_on_delivery"
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled"] = "pending"


class PlaceOrderIn(BaseModel):
    items: List[CartItem] = Field(default_factory=list)
    shipping_address: ShippingAddress
    discount_code: Optional[str] = Field(None, pattern=DISCOUNT_CODE_PATTERN)
    save_address: bool = False


class CartCheckoutIn(BaseModel):
    shipping_address: ShippingAddress
    discount_code: Optional[str] = Field(None, pattern=DISCOUNT_CODE_PATTERN)
    save_address: bool = False


class StatusUpdateIn(BaseModel):
    status: Literal["pending", "processing", "shipped", "delivered", "cancelled"]


# ----- Discounts -----

class Discount(BaseModel):
    code: str = Field(..., pattern=DISCOUNT_CODE_PATTERN)
    description: Optional[str] = None
    type: Literal["percentage", "fixed"]
    value: float = Field(..., ge=0)
    applicable_to: Literal["all", "products", "categories", "orders"]
    product_ids: List[str] = Field(default_factory=list)
    category_ids: List[str] = Field(default_factory=list)
    min_order_amount: float = Field(0, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: int = Field(0, ge=0, description="0 means unlimited")
    used_count: int = Field(0, ge=0)
    is_active: bool = True

    @field_validator("code", mode="before")
    @classmethod
    def strip_code(cls, value):
        return value.strip() if isinstance(value, str) else value

    @model_validator(mode="after")
    def check_rules(self):
        # stored dates come back naive from some drivers; compare as UTC
        start, end = (d if d.tzinfo else d.replace(tzinfo=timezone.utc) for d in (self.start_date, self.end_date))
        if end < start:
            raise ValueError("end date must not be before start date")
        if self.type == "percentage" and self.value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class DiscountUpdate(BaseModel):
    code: Optional[str] = Field(None, pattern=DISCOUNT_CODE_PATTERN)
    description: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = Field(None, ge=0)
    applicable_to: Optional[Literal["all", "products", "categories", "orders"]] = None
    product_ids: Optional[List[str]] = None
    category_ids: Optional[List[str]] = None
    min_order_amount: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None


class DiscountApplyIn(BaseModel):
    code: str = Field(..., pattern=DISCOUNT_CODE_PATTERN)
    order_total: float = Field(..., ge=0)
    product_ids: List[str] = Field(default_factory=list)
