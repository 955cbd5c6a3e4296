"""Pydantic request/response schemas for the Ordering API.

These are external contracts (anti-corruption layer), kept separate from
internal Protean commands. All amounts are integers in minor currency units.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class AddressSchema(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    phone: str = Field(min_length=1, max_length=20)
    line1: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)


class CartItemSchema(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(ge=1)


class OrderLineSchema(BaseModel):
    product_id: str
    name: str
    unit_price: int
    quantity: int
    line_total: int


class PricingSchema(BaseModel):
    subtotal: int
    discount: int
    shipping_cost: int
    tax: int
    processing_fee: int
    total: int


class StatusChangeSchema(BaseModel):
    status: str
    timestamp: datetime
    note: str | None = None
    actor: str | None = None


# ---------------------------------------------------------------------------
# Order Request Schemas
# ---------------------------------------------------------------------------
class PlaceOrderRequest(BaseModel):
    items: list[CartItemSchema] = Field(min_length=1)
    shipping_address: AddressSchema
    payment_method: Literal["card", "upi", "netbanking", "wallet", "cod"]
    coupon_code: str | None = None
    notes: str | None = Field(default=None, max_length=1000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [{"product_id": "P1", "quantity": 2}],
                    "shipping_address": {
                        "name": "Asha Rao",
                        "phone": "9876543210",
                        "line1": "12 MG Road",
                        "city": "Bengaluru",
                        "state": "Karnataka",
                        "postal_code": "560001",
                    },
                    "payment_method": "card",
                    "coupon_code": "SAVE50",
                }
            ]
        }
    }


class CancelOrderRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class UpdateStatusRequest(BaseModel):
    status: str
    note: str | None = Field(default=None, max_length=500)
    tracking_number: str | None = Field(default=None, max_length=255)


# ---------------------------------------------------------------------------
# Payment / Coupon Request Schemas
# ---------------------------------------------------------------------------
class PaymentWebhookRequest(BaseModel):
    transaction_id: str | None = None
    order_id: str | None = None
    outcome: Literal["success", "failure"]
    failure_reason: str | None = None
    metadata: dict = Field(default_factory=dict)


class ValidateCouponRequest(BaseModel):
    code: str = Field(min_length=1)
    order_total: int = Field(ge=0)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------
class PlaceOrderResponse(BaseModel):
    order_id: str
    order_number: str
    total: int
    status: str
    payment_status: str
    transaction_id: str | None = None
    client_secret: str | None = None


class OrderResponse(BaseModel):
    order_id: str
    order_number: str
    user_id: str
    items: list[OrderLineSchema]
    pricing: PricingSchema
    status: str
    payment_status: str
    payment_method: str
    currency: str
    coupon_code: str | None = None
    shipping_address: AddressSchema | None = None
    tracking_number: str | None = None
    notes: str | None = None
    estimated_delivery: datetime | None = None
    cancellation_reason: str | None = None
    status_history: list[StatusChangeSchema]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class OrderSummary(BaseModel):
    order_id: str
    order_number: str
    user_id: str | None = None
    total: int
    status: str
    payment_status: str
    item_count: int
    created_at: datetime | None = None


class OrderListResponse(BaseModel):
    orders: list[OrderSummary]
    page: int
    limit: int
    total: int
    pages: int


class TrackingResponse(BaseModel):
    order_id: str
    order_number: str
    status: str
    tracking_number: str | None = None
    estimated_delivery: datetime | None = None
    status_history: list[StatusChangeSchema]


class PaymentRetryResponse(BaseModel):
    order_id: str
    status: str
    payment_status: str
    transaction_id: str | None = None
    client_secret: str | None = None
    failure_reason: str | None = None


class PaymentStatusResponse(BaseModel):
    transaction_id: str
    order_id: str
    order_number: str
    amount: int
    currency: str
    payment_method: str
    payment_status: str
    order_status: str
    payment_attempts: int = 0
    updated_at: datetime | None = None


class WebhookAckResponse(BaseModel):
    status: str
    order_id: str | None = None
    reason: str | None = None


class CouponPreviewResponse(BaseModel):
    code: str
    coupon_type: str
    discount: int
    final_amount: int
    description: str | None = None


class CouponStatsResponse(BaseModel):
    code: str
    used_count: int
    usage_limit: int | None = None
    unique_users: int
    total_orders: int
    total_discount: int
    average_discount: int
