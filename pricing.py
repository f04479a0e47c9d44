"""
Variant pricing model.

A product is priced in exactly one of two ways: base ``price``/``stock`` on the
product itself, or a list of color variants. Each variant is in turn priced in
exactly one of three ways:

* ``direct``  - price/stock on the variant
* ``storage`` - a list of capacity options, each with its own price/stock
* ``size``    - a list of size options, each with its own price/stock

Raw admin input is classified here into the tagged models of ``schemas`` and
order lines are priced with ``resolve_effective_price``.
"""
import re
import time
from dataclasses import dataclass, field
from typing import List, Optional, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as SchemaError

from errors import NotFoundError, ValidationError
from schemas import DirectVariant, ProductIn, SizeOption, SizeVariant, StorageOption, StorageVariant, Variant, VariantIn

_variant_adapter = TypeAdapter(Variant)


@dataclass
class PriceQuote:
    """Price and stock of the unit an order line resolves to.

    ``stock_path`` is the dotted path of the stock counter inside the product
    document and ``match`` pins the array positions in that path to the
    variant/option they held when the quote was made.
    """
    price: float
    stock: int
    source: str
    variant_type: str
    stock_path: str
    discount_price: Optional[float] = None
    sku: Optional[str] = None
    variant_id: Optional[str] = None
    color: Optional[str] = None
    option: Optional[str] = None
    match: dict = field(default_factory=dict)

    @property
    def unit_price(self) -> float:
        # a zero sale price counts as "no sale price"
        return self.discount_price or self.price


def _supplied(value) -> bool:
    return value is not None


def format_errors(exc: SchemaError) -> str:
    parts = []
    for err in exc.errors():
        path = []
        for part in err.get("loc", ()):
            if part == "__root__":
                continue
            # list positions under variants are reported 1-based like the rest of the messages
            if isinstance(part, int) and path and path[-1] == "variants":
                part += 1
            path.append(part)
        loc = ".".join(str(p) for p in path)
        msg = err.get("msg", "invalid value")
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)


def _color_name(color) -> str:
    if isinstance(color, dict):
        color = color.get("name")
    if not isinstance(color, str) or not color.strip():
        return ""
    return color.strip()


def _validate_options(model, entries: List[dict], kind: str, position: int) -> list:
    options = []
    for index, entry in enumerate(entries, start=1):
        try:
            options.append(model.model_validate(entry))
        except SchemaError as exc:
            raise ValidationError(f"Variant {position}, {kind} option {index}: {format_errors(exc)}")
    return options


def validate_and_normalize_variant(raw: Union[VariantIn, dict], position: int = 1) -> Union[DirectVariant, StorageVariant, SizeVariant]:
    """Classify one raw variant and return it in its normalized, tagged form.

    ``position`` is the 1-based index of the variant on the product and is
    used in every error message.
    """
    if isinstance(raw, dict):
        try:
            raw = VariantIn.model_validate(raw)
        except SchemaError as exc:
            raise ValidationError(f"Variant {position}: {format_errors(exc)}")

    color = _color_name(raw.color)
    if not color:
        raise ValidationError(f"Variant {position}: color name is required")

    has_direct = _supplied(raw.price) or _supplied(raw.stock)
    has_storage = bool(raw.storage_options)
    has_size = bool(raw.size_options)

    storage_options = _validate_options(StorageOption, raw.storage_options, "storage", position) if has_storage else None
    size_options = _validate_options(SizeOption, raw.size_options, "size", position) if has_size else None

    shapes = sum([has_direct, has_storage, has_size])
    if shapes == 0:
        raise ValidationError(
            f"Variant {position} must have either direct pricing (price & stock) or storage options or size options"
        )
    if has_direct and (has_storage or has_size):
        raise ValidationError(f"Variant {position} cannot have both direct pricing and storage/size options")
    if has_storage and has_size:
        raise ValidationError(f"Variant {position} cannot have both storage options and size options")

    data = {"color": {"name": color}, "images": raw.images}
    if raw.variant_id:
        data["variant_id"] = raw.variant_id

    if has_direct:
        if not (_supplied(raw.price) and _supplied(raw.stock)):
            raise ValidationError(f"Variant {position}: direct pricing requires both price and stock")
        data.update(pricing="direct", price=raw.price, stock=raw.stock, discount_price=raw.discount_price, sku=raw.sku)
    elif has_storage:
        data.update(pricing="storage", storage_options=storage_options)
    else:
        data.update(pricing="size", size_options=size_options)

    try:
        return _variant_adapter.validate_python(data)
    except SchemaError as exc:
        raise ValidationError(f"Variant {position}: {format_errors(exc)}")


def validate_product_variants(raw_variants: List[Union[VariantIn, dict]]) -> list:
    variants = [validate_and_normalize_variant(raw, position) for position, raw in enumerate(raw_variants, start=1)]
    seen = set()
    for position, variant in enumerate(variants, start=1):
        if variant.variant_id in seen:
            raise ValidationError(f"Variant {position}: duplicate variant id")
        seen.add(variant.variant_id)
    return variants


def dump_variant(variant) -> dict:
    """Document form of a normalized variant; unused pricing shapes are left out."""
    return variant.model_dump(exclude_none=True)


def validate_product(payload: Union[ProductIn, dict]) -> dict:
    """Validate a full product and return the document to persist.

    Base pricing and variants are mutually exclusive and one of them is
    required.
    """
    if isinstance(payload, dict):
        try:
            payload = ProductIn.model_validate(payload)
        except SchemaError as exc:
            raise ValidationError(format_errors(exc))

    has_base = payload.price is not None or payload.stock is not None
    has_variants = len(payload.variants) > 0

    if has_base and has_variants:
        raise ValidationError("Product cannot have both base-level pricing and variants")
    if not has_base and not has_variants:
        raise ValidationError("Product must have either base-level pricing (price & stock) or variants")

    doc = payload.model_dump(exclude={"variants", "price", "stock", "discount_price"}, exclude_none=True)
    doc["title"] = payload.title.strip()
    doc["brand"] = payload.brand.strip()
    if doc.get("sku"):
        doc["sku"] = doc["sku"].strip().upper()

    if has_base:
        if payload.price is None or payload.stock is None:
            raise ValidationError("Base pricing requires both price and stock")
        if payload.discount_price is not None and payload.discount_price >= payload.price:
            raise ValidationError("Discount price must be less than the base price")
        doc["price"] = payload.price
        doc["stock"] = payload.stock
        if payload.discount_price is not None:
            doc["discount_price"] = payload.discount_price
        doc["variants"] = []
    else:
        if payload.discount_price is not None:
            raise ValidationError("Discount price can only be set together with base pricing")
        doc["variants"] = [dump_variant(v) for v in validate_product_variants(payload.variants)]
    return doc


# ----- Price resolution -----

def normalize_label(label) -> str:
    return label.strip().upper() if isinstance(label, str) else ""


def _has_base_pricing(product: dict) -> bool:
    return product.get("price") is not None and product.get("stock") is not None


def _has_direct_pricing(variant: dict) -> bool:
    return variant.get("price") is not None and variant.get("stock") is not None


def product_name(product: dict) -> str:
    return product.get("title") or str(product.get("_id"))


def find_variant(product: dict, variant_id: str):
    for index, variant in enumerate(product.get("variants") or []):
        if variant.get("variant_id") == variant_id:
            return index, variant
    return None, None


def _option_quote(option: dict, kind: str, label_field: str, v_index: int, o_index: int, variant: dict) -> PriceQuote:
    prefix = f"variants.{v_index}.{kind}_options.{o_index}"
    return PriceQuote(
        price=option["price"],
        stock=option.get("stock", 0),
        discount_price=option.get("discount_price"),
        sku=option.get("sku"),
        source=f"{kind}_option",
        variant_type=kind,
        stock_path=f"{prefix}.stock",
        variant_id=variant.get("variant_id"),
        color=(variant.get("color") or {}).get("name"),
        option=option.get(label_field),
        match={
            f"variants.{v_index}.variant_id": variant.get("variant_id"),
            f"{prefix}.{label_field}": option.get(label_field),
        },
    )


def resolve_effective_price(product: dict, variant_id: Optional[str] = None, option_key: Optional[str] = None) -> PriceQuote:
    """Resolve the price and stock an order line for ``product`` is charged from.

    Priority: size option > storage option > direct-priced variant > base
    product.
    """
    name = product_name(product)

    if variant_id:
        v_index, variant = find_variant(product, variant_id)
        if variant is None:
            raise NotFoundError(f"Variant not found for product: {name}")

        key = normalize_label(option_key)
        if key:
            for o_index, option in enumerate(variant.get("size_options") or []):
                if normalize_label(option.get("size")) == key:
                    return _option_quote(option, "size", "size", v_index, o_index, variant)
            for o_index, option in enumerate(variant.get("storage_options") or []):
                if normalize_label(option.get("capacity")) == key:
                    return _option_quote(option, "storage", "capacity", v_index, o_index, variant)
            raise NotFoundError(f"Option {option_key} not found for product: {name}")

        if _has_direct_pricing(variant):
            return PriceQuote(
                price=variant["price"],
                stock=variant["stock"],
                discount_price=variant.get("discount_price"),
                sku=variant.get("sku"),
                source="variant",
                variant_type="color",
                stock_path=f"variants.{v_index}.stock",
                variant_id=variant_id,
                color=(variant.get("color") or {}).get("name"),
                match={f"variants.{v_index}.variant_id": variant_id},
            )
        if variant.get("size_options") or variant.get("storage_options"):
            raise ValidationError(f"Select a size or storage option for product: {name}")
        # a color-only variant is sold at the product's base price
        if not _has_base_pricing(product):
            raise ValidationError(f"No price is set for the selected variant of product: {name}")
        quote = _base_quote(product)
        quote.variant_id = variant_id
        quote.color = (variant.get("color") or {}).get("name")
        return quote

    if option_key:
        raise ValidationError(f"Select a variant before choosing an option for product: {name}")
    if not _has_base_pricing(product):
        if product.get("variants"):
            raise ValidationError(f"Select a variant for product: {name}")
        raise ValidationError(f"No price is set for product: {name}")
    return _base_quote(product)


def _base_quote(product: dict) -> PriceQuote:
    return PriceQuote(
        price=product["price"],
        stock=product["stock"],
        discount_price=product.get("discount_price"),
        sku=product.get("sku"),
        source="base",
        variant_type="simple",
        stock_path="stock",
    )


def sellable_units(product: dict):
    """Yield (label, PriceQuote) for every unit of a product that carries its own stock."""
    if _has_base_pricing(product):
        yield None, _base_quote(product)
    for variant in product.get("variants") or []:
        variant_id = variant.get("variant_id")
        for option in variant.get("size_options") or []:
            yield option.get("size"), resolve_effective_price(product, variant_id, option.get("size"))
        for option in variant.get("storage_options") or []:
            yield option.get("capacity"), resolve_effective_price(product, variant_id, option.get("capacity"))
        if _has_direct_pricing(variant):
            yield None, resolve_effective_price(product, variant_id)


# ----- SKU generation -----

def _code(text: str, length: int) -> str:
    return re.sub(r"[^a-zA-Z0-9]", "", text or "").upper()[:length]


def generate_sku(brand: str, title: str, suffix: str = "") -> str:
    timestamp = str(int(time.time() * 1000))[-4:]
    sku = f"{_code(brand, 3)}-{_code(title, 3)}-{timestamp}"
    if suffix:
        sku += f"-{suffix}"
    return sku


def _sku_taken(db, sku: str, product_id, reserved: set) -> bool:
    if sku in reserved:
        return True
    query = {
        "$or": [
            {"sku": sku},
            {"variants.sku": sku},
            {"variants.storage_options.sku": sku},
            {"variants.size_options.sku": sku},
        ]
    }
    if product_id is not None:
        query["_id"] = {"$ne": product_id}
    return db["product"].find_one(query) is not None


def _unique_sku(db, brand: str, title: str, code: str, product_id, reserved: set) -> str:
    sku = generate_sku(brand, title, code)
    counter = 1
    while _sku_taken(db, sku, product_id, reserved):
        sku = generate_sku(brand, title, f"{code}{counter}")
        counter += 1
    reserved.add(sku)
    return sku


def assign_skus(db, doc: dict, product_id=None) -> dict:
    """Fill in any missing product, variant and option SKUs on ``doc`` in place."""
    brand, title = doc.get("brand", ""), doc.get("title", "")
    reserved = set()
    for unit in _sku_bearing_units(doc):
        if unit.get("sku"):
            reserved.add(unit["sku"])

    if not doc.get("sku"):
        doc["sku"] = _unique_sku(db, brand, title, "", product_id, reserved)
    for variant in doc.get("variants") or []:
        if _has_direct_pricing(variant) and not variant.get("sku"):
            code = _code((variant.get("color") or {}).get("name", ""), 3)
            variant["sku"] = _unique_sku(db, brand, title, code, product_id, reserved)
        for option in variant.get("storage_options") or []:
            if not option.get("sku"):
                option["sku"] = _unique_sku(db, brand, title, _code(option["capacity"], 4), product_id, reserved)
        for option in variant.get("size_options") or []:
            if not option.get("sku"):
                option["sku"] = _unique_sku(db, brand, title, _code(option["size"], 3), product_id, reserved)
    return doc


def _sku_bearing_units(doc: dict):
    yield doc
    for variant in doc.get("variants") or []:
        yield variant
        yield from variant.get("storage_options") or []
        yield from variant.get("size_options") or []
