"""
models.py — Data Models for Checkout, Pricing and Orders

This module defines the data structures exchanged with clients, the payment
gateway and the document store. It uses Pydantic models to ensure type safety
and automatic validation of incoming data.

Models:
    - CartItem: A single untrusted line item (product id + quantity).
    - Address: Shipping address attached to an order.
    - CreatePaymentOrderRequest / VerifyPaymentRequest: Online checkout payloads.
    - CodValidateRequest / CodPlaceOrderRequest: Cash-on-delivery payloads.
    - WebhookEvent: Signed event pushed by the payment gateway.
    - Coupon: Coupon document as stored in the `coupons` collection.
    - ResolvedLineItem / VerifiedPricing: Server-computed pricing.
    - PaymentOrder: Gateway-side order created for a verified amount.
    - CheckoutSession: Trusted pricing persisted between initiation and settlement.
    - Order / OrderItem: A committed order.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    field_validator,
    model_validator,
)

MIN_QUANTITY = 1
MAX_QUANTITY = 100


# --- Requests ---


class CartItem(BaseModel):
    """
    Represents a single product line in a client cart.

    Only the identifier and the quantity are read. Any other field the client
    sends (price, name, total) is ignored.

    Attributes:
        id (str): Product identifier; `productId` is accepted as an alias.
        quantity (int): Requested quantity. Its range is checked during pricing.
    """
    id: str = Field(..., min_length=1, max_length=100, validation_alias=AliasChoices("id", "productId"))
    quantity: int


class Address(BaseModel):
    """Shipping address. Unknown fields are rejected."""
    model_config = ConfigDict(extra="forbid")

    fullName: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., pattern=r"^[6-9]\d{9}$")
    email: Optional[EmailStr] = None
    addressLine1: str = Field(..., min_length=1, max_length=200)
    addressLine2: Optional[str] = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str = Field(..., min_length=1, max_length=100)
    pincode: str = Field(..., pattern=r"^[1-9]\d{5}$")


class CreatePaymentOrderRequest(BaseModel):
    """
    Body of `POST /checkout/online/create-order`.

    Attributes:
        cartItems (List[CartItem]): 1 to 50 line items.
        receipt (str, optional): Merchant receipt reference, at most 40 characters.
        notes (Dict[str, str], optional): Free-form notes forwarded to the gateway.
        couponCode (str, optional): Coupon to apply; case-insensitive.
        address (Address, optional): Shipping address copied onto the order.
    """
    cartItems: List[CartItem] = Field(..., min_length=1, max_length=50)
    receipt: Optional[str] = Field(None, max_length=40)
    notes: Optional[Dict[str, str]] = None
    couponCode: Optional[str] = Field(None, max_length=50)
    address: Optional[Address] = None

    @field_validator("notes")
    @classmethod
    def limit_notes(cls, notes):
        # The gateway accepts 15 notes; 5 are reserved for audit metadata.
        if notes is not None and len(notes) > 10:
            raise ValueError("At most 10 notes are allowed")
        return notes


class VerifyPaymentRequest(BaseModel):
    """Gateway callback forwarded by the client after the payment step."""
    razorpay_order_id: str = Field(..., pattern=r"^order_[a-zA-Z0-9]+$")
    razorpay_payment_id: str = Field(..., pattern=r"^pay_[a-zA-Z0-9]+$")
    razorpay_signature: str = Field(..., pattern=r"^[0-9a-fA-F]{64}$")


class CodValidateRequest(BaseModel):
    cartItems: List[CartItem] = Field(..., min_length=1, max_length=50)
    couponCode: Optional[str] = Field(None, max_length=50)


class CodPlaceOrderRequest(BaseModel):
    """
    Body of `POST /checkout/cod/place-order`.

    Attributes:
        submissionId (str): Client-generated id for this submission. Resending the
            same id returns the order created the first time.
    """
    cartItems: List[CartItem] = Field(..., min_length=1, max_length=50)
    couponCode: Optional[str] = Field(None, max_length=50)
    address: Address
    submissionId: str = Field(..., min_length=8, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")


class _Entity(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str


class PaymentEntity(_Entity):
    amount: int = Field(..., gt=0, le=1_000_000_000)
    status: str
    order_id: Optional[str] = None


class RefundEntity(_Entity):
    payment_id: Optional[str] = None


class _EntityWrapper(BaseModel):
    entity: Dict[str, Any]


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    payment: Optional[_EntityWrapper] = None
    order: Optional[_EntityWrapper] = None
    refund: Optional[_EntityWrapper] = None

    def payment_entity(self) -> Optional[PaymentEntity]:
        return PaymentEntity.model_validate(self.payment.entity) if self.payment else None

    def refund_entity(self) -> Optional[RefundEntity]:
        return RefundEntity.model_validate(self.refund.entity) if self.refund else None

    def order_entity(self) -> Optional[_Entity]:
        return _Entity.model_validate(self.order.entity) if self.order else None


class WebhookEvent(BaseModel):
    """Signed event pushed by the payment gateway. Extra gateway fields are kept."""
    model_config = ConfigDict(extra="allow")

    id: str = Field(..., pattern=r"^evt_[a-zA-Z0-9]+$")
    event: Literal[
        "payment.authorized",
        "payment.captured",
        "payment.failed",
        "order.paid",
        "refund.created",
    ]
    payload: WebhookPayload


# --- Stored records ---


class Coupon(BaseModel):
    """
    Coupon document from the `coupons` collection.

    `type` "fixed" is read as "flat". A missing `expiryDate` never expires.
    """
    code: str
    type: Literal["percentage", "flat"]
    value: float
    isActive: bool = True
    expiryDate: Optional[datetime] = None
    usageLimit: int
    usageCount: int = 0
    minOrderAmount: int = 0

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        if isinstance(value, str) and value.lower() == "fixed":
            return "flat"
        return value


class ResolvedLineItem(BaseModel):
    """A line item priced from the product document. `unitPrice` is whole rupees."""
    model_config = ConfigDict(frozen=True)

    productId: str
    quantity: int
    unitPrice: int
    lineTotal: int
    name: Optional[str] = None


class VerifiedPricing(BaseModel):
    """
    The authoritative price of a cart. This is the only amount ever charged
    or recorded on an order.
    """
    model_config = ConfigDict(frozen=True)

    verifiedSubtotal: int
    discount: int
    finalTotal: int
    resolvedItems: List[ResolvedLineItem]
    couponCode: Optional[str] = None

    @model_validator(mode="after")
    def check_totals(self):
        if not 0 <= self.discount <= self.verifiedSubtotal:
            raise ValueError("discount must be between 0 and the subtotal")
        if self.finalTotal != self.verifiedSubtotal - self.discount:
            raise ValueError("finalTotal must equal verifiedSubtotal - discount")
        return self

    def verification_details(self) -> List[Dict[str, Any]]:
        return [
            {
                "productId": item.productId,
                "quantity": item.quantity,
                "unitPrice": item.unitPrice,
                "itemTotal": item.lineTotal,
            }
            for item in self.resolvedItems
        ]


class PaymentOrder(BaseModel):
    """Gateway-side order. `amount` is in minor units (paise)."""
    gatewayOrderId: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    notes: Dict[str, str] = Field(default_factory=dict)
    status: Optional[str] = None


class CheckoutSession(BaseModel):
    """Verified pricing bound to one gateway order, stored in `checkouts`."""
    userId: str
    pricing: VerifiedPricing
    amount: int
    currency: str
    receipt: Optional[str] = None
    address: Optional[Address] = None
    status: Literal["created", "committed", "payment_failed"] = "created"
    orderId: Optional[str] = None
    createdAt: Optional[datetime] = None


class OrderItem(BaseModel):
    productId: str
    name: Optional[str] = None
    quantity: int
    unitPrice: int
    lineTotal: int


class Order(BaseModel):
    """A committed order, stored in `orders`."""
    id: str
    userId: str
    items: List[OrderItem]
    subtotal: int
    discount: int
    total: int
    currency: str = "INR"
    couponCode: Optional[str] = None
    address: Optional[Address] = None
    paymentMethod: Literal["online", "cod"]
    paymentId: Optional[str] = None
    gatewayOrderId: Optional[str] = None
    paymentStatus: str
    status: str = "processing"
    statusMessage: str = ""
    createdAt: Optional[datetime] = None


class AuthenticatedUser(BaseModel):
    uid: str
    email: Optional[str] = None
    emailVerified: bool = False


# --- Responses ---


class VerificationDetail(BaseModel):
    productId: str
    quantity: int
    unitPrice: int
    itemTotal: int


class CreatePaymentOrderResponse(BaseModel):
    orderId: str
    amount: int
    currency: str
    verifiedTotal: int
    discount: int
    finalTotal: int
    verificationDetails: List[VerificationDetail]


class VerifyPaymentResponse(BaseModel):
    verified: bool = True
    already_processed: bool
    payment_id: str
    order_id: str
    gateway_order_id: str
    total: int


class CodValidateResponse(BaseModel):
    verified: bool = True
    verifiedTotal: int
    discount: int
    finalTotal: int
    verificationDetails: List[VerificationDetail]


class CodPlaceOrderResponse(BaseModel):
    already_processed: bool
    order_id: str
    verifiedTotal: int
    discount: int
    finalTotal: int


class OrderListResponse(BaseModel):
    orders: List[Order]
    count: int
