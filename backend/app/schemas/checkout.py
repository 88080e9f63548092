"""Pydantic schemas for checkout"""
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

Amount = Optional[Union[int, float, str]]


def _alias(*names: str):
    return Field(None, validation_alias=AliasChoices(*names))


class CartItem(BaseModel):
    name: Optional[str] = None
    price: Amount = None
    quantity: Amount = 1
    image: Optional[str] = None


class CheckoutRequest(BaseModel):
    """Checkout body; camelCase and snake_case keys are both accepted"""
    model_config = ConfigDict(str_strip_whitespace=True)

    items: List[CartItem] = Field(default_factory=list)
    location: Optional[str] = None
    email: Optional[str] = None
    subtotal: Amount = None
    shipping: Amount = 0
    tax: Amount = 0
    total: Amount = None
    discount_code: Optional[str] = _alias("discountCode", "discount_code")
    discount_amount: Amount = _alias("discountAmount", "discount_amount")
    tip_amount: Amount = _alias("tipAmount", "tip_amount")

    def pricing_kwargs(self) -> Dict[str, Any]:
        """Arguments for ``pricing_service.price_cart``"""
        return {
            "items": [item.model_dump() for item in self.items],
            "subtotal": self.subtotal,
            "discount_code": self.discount_code,
            "discount_amount": self.discount_amount,
            "shipping": self.shipping,
            "tax": self.tax,
            "tip_amount": self.tip_amount,
            "total": self.total,
            "location": self.location,
        }


class CheckoutResponse(BaseModel):
    url: str
    session_id: str
    sessionId: str
