"""Payment API Pydantic schemas."""

from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

# ---------- Session initiation ----------


class CartItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)


class CustomerIn(BaseModel):
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class ShippingAddressIn(BaseModel):
    street: str | None = None
    city: str | None = None
    state: str = Field(min_length=1)
    zipCode: str | None = None
    country: str | None = None


class SessionCreateRequest(BaseModel):
    items: list[CartItemIn] = Field(min_length=1)
    shipping_charge: Decimal = Decimal("0")
    shipping_address: ShippingAddressIn
    customer: CustomerIn | None = None
    currency: str = "INR"
    description: str = Field(min_length=1)
    reference_number: str | None = None
    invoice_number: str | None = None


class SessionCreateResponse(BaseModel):
    success: bool = True
    payments_session_id: str
    subtotal: float
    shipping: float
    total: float


# ---------- Client verification ----------


class VerifyRequest(BaseModel):
    order_id: int
    payment_id: str | None = None
    payments_session_id: str | None = None

    @model_validator(mode="after")
    def _require_payment_reference(self):
        if not self.payment_id and not self.payments_session_id:
            raise ValueError("payment_id or payments_session_id is required")
        return self


class PaymentInfo(BaseModel):
    id: str | None
    status: str | None
    amount: float | None = None
    session_id: str | None = None
    reference_number: str | None = None
    payment_method: str | None = None


class VerifyResponse(BaseModel):
    success: bool = True
    order_id: int
    is_success: bool
    is_failed: bool
    payment_completed: bool
    order_status: str
    payment_status: str
    payment: PaymentInfo | None = None


# ---------- Webhook ----------


class WebhookResponse(BaseModel):
    success: bool = True
    message: str
    order_id: int | None = None
    status: str | None = None
