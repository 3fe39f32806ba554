"""
Pydantic schemas for API request/response models.
"""
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator


class WebhookResponse(BaseModel):
    """Acknowledgement returned to Stripe once the signature is verified."""

    received: bool = Field(default=True, description="Event was accepted")


class FileEntry(BaseModel):
    name: str = Field(..., description="File name")
    size: Optional[int] = Field(default=None, description="Size in bytes")


class ProductInfo(BaseModel):
    name: str = Field(..., description="Product name")
    catalog_number: Optional[str] = Field(default=None, description="Catalog number")


class DownloadListingResponse(BaseModel):
    """What a download token grants."""

    product: ProductInfo
    files: List[FileEntry]
    downloads_remaining: int = Field(..., ge=0, description="Downloads left on the token")
    expires_at: str = Field(..., description="Expiry timestamp (ISO 8601)")


class RefundRequest(BaseModel):
    """Request schema for refunding an order."""

    order_id: Optional[UUID] = Field(default=None, description="Local order id")
    payment_reference: Optional[str] = Field(
        default=None, min_length=1, description="Checkout session id (cs_...)"
    )
    amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Partial refund amount (full refund if not specified)",
    )
    reason: Optional[Literal["duplicate", "fraudulent", "requested_by_customer"]] = Field(
        default=None, description="Refund reason"
    )

    @model_validator(mode="after")
    def require_target(self) -> "RefundRequest":
        """Either the order id or the payment reference is needed."""
        if self.order_id is None and not self.payment_reference:
            raise ValueError("order_id or payment_reference is required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"payment_reference": "cs_test_a1b2c3", "reason": "requested_by_customer"},
                {"order_id": "123e4567-e89b-12d3-a456-426614174000", "amount": "5.00"},
            ]
        }
    }


class RevocationResponse(BaseModel):
    outcome: str = Field(..., description="full_refund, partial_refund, already_refunded or target_missing")
    order_id: Optional[str] = None
    status: Optional[str] = None
    tokens_revoked: int = 0


class RefundResponse(BaseModel):
    """Response schema for refund."""

    refund_id: Optional[str] = Field(default=None, description="Stripe Refund ID")
    refund_status: Optional[str] = Field(default=None, description="Stripe refund status")
    amount: Decimal = Field(..., description="Amount of this refund")
    total_refunded: Decimal = Field(..., description="Cumulative refunded amount")
    revocation: RevocationResponse


class ImportRequest(BaseModel):
    """Backfill one orphaned provider transaction."""

    transaction_id: str = Field(..., min_length=1, description="Checkout session id (cs_...)")


class ImportResponse(BaseModel):
    order_id: str
    created: bool = Field(..., description="False when the order already existed")
    items: int
    tokens_issued: int
    unresolved_items: int


class LedgerTotals(BaseModel):
    count: int
    total: Decimal


class OrphanedTransactionResponse(BaseModel):
    id: str
    payment_intent: Optional[str] = None
    amount: Decimal
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    created: str
    item_count: int


class ReconciliationResponse(BaseModel):
    """Response schema for a reconciliation report."""

    model_config = ConfigDict(populate_by_name=True)

    window_start: str = Field(..., alias="from")
    window_end: str = Field(..., alias="to")
    provider: LedgerTotals
    local: LedgerTotals
    amount_difference: Decimal
    divergent: bool
    orphaned: List[OrphanedTransactionResponse]


class UnresolvedItemResponse(BaseModel):
    """An order item waiting for an operator to match it to a product."""

    order_item_id: str
    order_id: str
    payment_reference: str
    product_name_snapshot: str
    unit_price_snapshot: Decimal
    quantity: int
    customer_email: Optional[str] = None
    created_at: str


class WebhookFailureResponse(BaseModel):
    id: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    error: str
    created_at: str


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
