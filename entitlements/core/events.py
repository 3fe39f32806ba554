"""
Typed payment events.

Stripe payloads are loosely shaped JSON; they are validated into these models
at the ingestion boundary so the rest of the core never reads raw metadata.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Union

import structlog
from pydantic import BaseModel, Field, field_validator

logger = structlog.get_logger(__name__)

CENTS = Decimal("0.01")
MAX_PRODUCT_ID_LENGTH = 64

PAYMENT_COMPLETED_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)
REFUND_ISSUED_TYPES = ("charge.refunded",)
SETTLED_PAYMENT_STATUSES = ("paid", "no_payment_required")


def cents_to_decimal(cents: Optional[int]) -> Decimal:
    """Convert a Stripe minor-unit amount to a two-place Decimal."""
    return (Decimal(int(cents or 0)) / 100).quantize(CENTS)


def _is_plain_token(value: str) -> bool:
    return len(value) <= MAX_PRODUCT_ID_LENGTH and not any(ch.isspace() for ch in value)


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        return value.get("id")
    return getattr(value, "id", None)


class PurchasedLineItem(BaseModel):
    """
    One purchased line as reported by the provider.

    ``product_id`` is the internal catalog id stamped into the Stripe product
    metadata when the checkout session was created.
    """

    name: str = Field(..., description="Display name at purchase time")
    unit_amount: Decimal = Field(..., ge=0, description="Price per unit (major units)")
    quantity: int = Field(default=1, ge=1, description="Quantity purchased")
    product_id: Optional[str] = Field(default=None, description="Embedded catalog product id")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        return v or "Unnamed item"

    @field_validator("product_id", mode="before")
    @classmethod
    def validate_product_id(cls, v: Any) -> Optional[str]:
        """Blank ids count as absent; anything else must be a plain token."""
        if v is None:
            return None
        v = str(v).strip()
        if not v:
            return None
        if not _is_plain_token(v):
            raise ValueError("product_id must be a single token of at most 64 characters")
        return v

    @classmethod
    def from_stripe(cls, item: Dict[str, Any]) -> "PurchasedLineItem":
        """Build from a Stripe line item with ``price.product`` expanded."""
        price = item.get("price") or {}
        product = price.get("product")
        product_data = product if isinstance(product, dict) else {}

        product_id = (product_data.get("metadata") or {}).get("product_id")
        if not product_id:
            product_id = (price.get("metadata") or {}).get("product_id")
        if product_id is not None and not _is_plain_token(str(product_id).strip()):
            # Fall back to name matching; one bad id must not fail the order
            logger.warning(
                "embedded_product_id_invalid",
                product_id=str(product_id)[:128],
                item_name=item.get("description") or product_data.get("name"),
            )
            product_id = None

        quantity = int(item.get("quantity") or 1)
        if item.get("amount_total") is not None:
            unit_amount = (cents_to_decimal(item["amount_total"]) / quantity).quantize(CENTS)
        else:
            unit_amount = cents_to_decimal(price.get("unit_amount"))

        return cls(
            name=item.get("description") or product_data.get("name") or "",
            unit_amount=unit_amount,
            quantity=quantity,
            product_id=product_id,
        )


class PaymentCompleted(BaseModel):
    """A checkout session that settled and should become an Order."""

    kind: Literal["payment_completed"] = "payment_completed"
    event_id: Optional[str] = None
    payment_reference: str = Field(..., min_length=1)
    payment_intent_reference: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    user_ref: Optional[str] = None
    subtotal: Decimal
    total: Decimal
    currency: str = "eur"
    created_at: datetime = Field(..., description="When the provider created the checkout session")
    paid_at: datetime
    line_items: List[PurchasedLineItem] = Field(default_factory=list)

    @classmethod
    def from_checkout_session(
        cls,
        session: Dict[str, Any],
        line_items: List[Dict[str, Any]],
        paid_at: Optional[datetime] = None,
        event_id: Optional[str] = None,
    ) -> "PaymentCompleted":
        """
        Build from a Stripe checkout session and its line items.

        Args:
            session: Checkout session object
            line_items: Line items with ``price.product`` expanded
            paid_at: Settlement time; defaults to the session creation time
            event_id: Webhook event id, when the session came from a webhook
        """
        details = session.get("customer_details") or {}
        metadata = session.get("metadata") or {}
        created_at = datetime.fromtimestamp(int(session.get("created") or 0), tz=timezone.utc)
        if paid_at is None:
            paid_at = created_at

        return cls(
            event_id=event_id,
            payment_reference=session["id"],
            payment_intent_reference=_object_id(session.get("payment_intent")),
            customer_email=session.get("customer_email") or details.get("email"),
            customer_name=details.get("name"),
            user_ref=metadata.get("user_id") or None,
            subtotal=cents_to_decimal(session.get("amount_subtotal")),
            total=cents_to_decimal(session.get("amount_total")),
            currency=(session.get("currency") or "eur").lower(),
            created_at=created_at,
            paid_at=paid_at,
            line_items=[PurchasedLineItem.from_stripe(item) for item in line_items],
        )


class RefundIssued(BaseModel):
    """
    Money was returned for a charge.

    ``amount_refunded`` is cumulative across every refund of the charge.
    """

    kind: Literal["refund_issued"] = "refund_issued"
    event_id: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_intent_reference: Optional[str] = None
    amount_refunded: Decimal
    fully_refunded: bool = False

    @classmethod
    def from_charge(cls, charge: Dict[str, Any], event_id: Optional[str] = None) -> "RefundIssued":
        return cls(
            event_id=event_id,
            payment_intent_reference=_object_id(charge.get("payment_intent")),
            amount_refunded=cents_to_decimal(charge.get("amount_refunded")),
            fully_refunded=bool(charge.get("refunded")),
        )


class IgnoredEvent(BaseModel):
    """Any verified event this service has no use for."""

    kind: Literal["ignored"] = "ignored"
    event_id: Optional[str] = None
    event_type: str


PaymentEvent = Union[PaymentCompleted, RefundIssued, IgnoredEvent]
