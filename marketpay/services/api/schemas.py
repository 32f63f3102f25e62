"""Request/response schemas for the public order and payment endpoints.

Required fields are declared optional here and checked in the handlers, so a
missing field produces the same `{"error": ...}` body as every other 400.
"""

from pydantic import BaseModel, ConfigDict, Field


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class CheckoutItem(CamelModel):
    listing_id: str | None = Field(default=None, alias="listingId")
    quantity: int | None = None


class SellerCheckoutRequest(CamelModel):
    """Seller rings up items for a buyer at the stall."""

    seller_session_id: str | None = Field(default=None, alias="sellerSessionId")
    items: list[CheckoutItem] | None = None
    customer_id: str | None = Field(default=None, alias="customerId")


class SellerCheckoutResponse(CamelModel):
    order_id: str = Field(serialization_alias="orderId")
    total_cents: int = Field(serialization_alias="totalCents")
    expires_at: str | None = Field(serialization_alias="expiresAt")
    pay_url: str = Field(serialization_alias="payUrl")


class CreateCheckoutSessionRequest(CamelModel):
    order_id: str | None = Field(default=None, alias="orderId")
    email: str | None = None


class PayCashRequest(CamelModel):
    order_id: str | None = Field(default=None, alias="orderId")
    cash_received_cents: int | None = Field(default=None, alias="cashReceivedCents")


class CompleteNativePaymentRequest(CamelModel):
    order_id: str | None = Field(default=None, alias="orderId")
    square_payment_id: str | None = Field(default=None, alias="squarePaymentId")


class OrderRequest(CamelModel):
    """Body carrying just an order id (complete, terminal checkout)."""

    order_id: str | None = Field(default=None, alias="orderId")


class TerminalPairRequest(CamelModel):
    seller_id: str | None = Field(default=None, alias="sellerId")
