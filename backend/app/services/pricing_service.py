"""Pricing service - server-side cart pricing

Every monetary value is a ``Decimal`` rounded to cents (half away from zero)
at each step. Integer cents are produced only at the provider boundary via
``to_cents``.
"""
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional
import logging

from app.core.config import settings
from app.core.errors import ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Stripe caps a single amount at eight digits of minor units
MAX_AMOUNT = Decimal("999999.99")

TIP_LINE_NAME = "Tip (Support our Farmers)"
SHIPPING_LINE_NAME = "Shipping"
TAX_LINE_NAME = "Tax"
SURCHARGE_LINE_NAMES = (TIP_LINE_NAME, SHIPPING_LINE_NAME, TAX_LINE_NAME)

DEFAULT_ITEM_NAME = "Item"


def round2(value) -> Decimal:
    """Round to cents, half away from zero"""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(amount) -> int:
    """Convert a decimal amount to non-negative integer minor units"""
    cents = (round2(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP)
    return max(0, int(cents))


def from_cents(cents) -> Optional[Decimal]:
    if cents is None:
        return None
    return round2(Decimal(int(cents)) / 100)


def _to_decimal(value: Any, label: str, default: Decimal = ZERO) -> Decimal:
    """Coerce a client number (int, float or numeric string) to Decimal, rejecting junk"""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be a number")
    if not number.is_finite():
        raise ValidationError(f"{label} must be a finite number")
    if number < 0:
        raise ValidationError(f"{label} cannot be negative")
    if number > MAX_AMOUNT:
        raise ValidationError(f"{label} exceeds the maximum of {MAX_AMOUNT}")
    return number


def _to_quantity(value: Any, label: str) -> int:
    quantity = _to_decimal(value, label, default=Decimal(1))
    return max(1, int(quantity))


def normalize_discount_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def normalize_image_url(image: Any, base_url: Optional[str] = None) -> Optional[str]:
    """
    Make a product image URL usable by the provider.

    Relative paths ("/images/x.png") are resolved against the storefront URL,
    absolute http(s) URLs pass through, anything else is dropped.
    """
    if not image or not isinstance(image, str):
        return None
    image = image.strip()
    if image.startswith("https://") or image.startswith("http://"):
        return image
    if image.startswith("/"):
        base = (base_url if base_url is not None else settings.FRONTEND_URL).rstrip("/")
        return f"{base}{image}"
    return None


@dataclass(frozen=True)
class LineItem:
    """One line submitted to a payment provider"""
    name: str
    unit_amount: Decimal
    quantity: int
    image: Optional[str] = None

    @property
    def unit_amount_cents(self) -> int:
        return to_cents(self.unit_amount)


@dataclass(frozen=True)
class PricedItem:
    name: str
    quantity: int
    unit_price: Decimal
    discounted_unit_price: Decimal
    line_total: Decimal
    image: Optional[str] = None

    def to_ledger(self) -> Dict[str, Any]:
        """Snapshot stored in the order's items column (charged unit price)"""
        item = {
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": float(self.discounted_unit_price),
        }
        if self.image:
            item["image"] = self.image
        return item


@dataclass(frozen=True)
class PricedCart:
    items: List[PricedItem]
    subtotal: Decimal
    discount_code: Optional[str]
    discount_amount: Decimal
    discount_ratio: Decimal
    shipping: Decimal
    tax: Decimal
    tip_amount: Decimal
    total: Decimal
    client_total: Optional[Decimal] = None
    location: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def provider_line_items(self) -> List[LineItem]:
        """Cart items, then tip, shipping and tax (each only when > 0)"""
        lines = [
            LineItem(name=item.name, unit_amount=item.discounted_unit_price,
                     quantity=item.quantity, image=item.image)
            for item in self.items
        ]
        for name, amount in (
            (TIP_LINE_NAME, self.tip_amount),
            (SHIPPING_LINE_NAME, self.shipping),
            (TAX_LINE_NAME, self.tax),
        ):
            if amount > 0:
                lines.append(LineItem(name=name, unit_amount=amount, quantity=1))
        return lines

    def ledger_items(self) -> List[Dict[str, Any]]:
        return [item.to_ledger() for item in self.items]

    def breakdown(self) -> Dict[str, Any]:
        """Pricing snapshot columns for the order ledger"""
        return {
            "location": self.location,
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "tax": self.tax,
            "discount_code": self.discount_code,
            "discount_amount": self.discount_amount,
            "tip_amount": self.tip_amount,
        }

    def metadata(self) -> Dict[str, str]:
        """String-only metadata carried on the provider session"""
        return {
            "location": self.location or "",
            "discount_code": self.discount_code or "",
            "subtotal": str(self.subtotal),
            "discount_amount": str(self.discount_amount),
            "shipping": str(self.shipping),
            "tax": str(self.tax),
            "tip_amount": str(self.tip_amount),
            "total": str(self.total),
            "client_total": str(self.client_total) if self.client_total is not None else "",
        }


def price_cart(
    items: Iterable[Mapping[str, Any]],
    subtotal: Any = None,
    discount_code: Optional[str] = None,
    discount_amount: Any = 0,
    shipping: Any = 0,
    tax: Any = 0,
    tip_amount: Any = 0,
    total: Any = None,
    location: Optional[str] = None,
    allowed_codes: Optional[Iterable[str]] = None,
    image_base_url: Optional[str] = None,
) -> PricedCart:
    """
    Compute the authoritative breakdown for a cart.

    The discount is applied as a ratio to every unit price rather than as a
    separate negative line. The subtotal is always the sum of the items; a
    client ``subtotal`` that disagrees is only logged. The client ``total``
    is recorded but never charged.

    Raises:
        ValidationError: empty cart, a non-numeric or negative amount, or an
            amount or total above ``MAX_AMOUNT``
    """
    items = list(items or [])
    if not items:
        raise ValidationError("Items array is required")

    codes = {normalize_discount_code(c) for c in (allowed_codes if allowed_codes is not None else settings.discount_codes)}

    parsed = []
    for index, item in enumerate(items):
        label = f"items[{index}]"
        unit_price = round2(_to_decimal(item.get("price"), f"{label}.price"))
        quantity = _to_quantity(item.get("quantity"), f"{label}.quantity")
        name = str(item.get("name") or DEFAULT_ITEM_NAME)
        image = normalize_image_url(item.get("image"), image_base_url)
        parsed.append((name, quantity, unit_price, image))

    subtotal_value = round2(sum((price * qty for _, qty, price, _ in parsed), ZERO))
    warnings = []
    if subtotal is not None and subtotal != "":
        client_subtotal = round2(_to_decimal(subtotal, "subtotal"))
        if client_subtotal != subtotal_value:
            message = f"Client subtotal {client_subtotal} differs from item subtotal {subtotal_value}"
            logger.warning(message)
            warnings.append(message)

    code = normalize_discount_code(discount_code)
    if code and code in codes:
        requested = round2(_to_decimal(discount_amount, "discount_amount"))
        applied_code = code
    else:
        if code:
            logger.info(f"Ignoring discount code not on allow-list: {code}")
        requested = ZERO
        applied_code = None
    clamped = min(requested, subtotal_value)
    ratio = clamped / subtotal_value if subtotal_value > 0 else Decimal(0)

    priced_items = []
    for name, quantity, unit_price, image in parsed:
        discounted = round2(unit_price * (1 - ratio))
        priced_items.append(PricedItem(
            name=name,
            quantity=quantity,
            unit_price=unit_price,
            discounted_unit_price=discounted,
            line_total=round2(discounted * quantity),
            image=image,
        ))

    shipping_value = round2(_to_decimal(shipping, "shipping"))
    tax_value = round2(_to_decimal(tax, "tax"))
    tip_value = round2(_to_decimal(tip_amount, "tip_amount"))

    computed_total = round2(
        sum((item.line_total for item in priced_items), ZERO) + shipping_value + tax_value + tip_value
    )
    if computed_total > MAX_AMOUNT:
        raise ValidationError(f"Order total exceeds the maximum of {MAX_AMOUNT}")

    client_total = None
    if total is not None and total != "":
        client_total = round2(_to_decimal(total, "total"))
        if client_total != computed_total:
            message = f"Client total {client_total} differs from computed total {computed_total}"
            logger.warning(message)
            warnings.append(message)

    return PricedCart(
        items=priced_items,
        subtotal=subtotal_value,
        discount_code=applied_code,
        discount_amount=clamped,
        discount_ratio=ratio,
        shipping=shipping_value,
        tax=tax_value,
        tip_amount=tip_value,
        total=computed_total,
        client_total=client_total,
        location=location or None,
        warnings=warnings,
    )
