"""
Refund handling.

A full refund revokes every download token of the order; a partial refund
only changes the order status. ``refunded`` is terminal.
"""
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.core.events import RefundIssued, cents_to_decimal
from entitlements.core.exceptions import OrderNotFound, ProviderRequestRejected
from entitlements.core.fulfillment import Clock
from entitlements.database.models import Order, utcnow
from entitlements.database.store import EntitlementStore
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class RevocationOutcome(str, Enum):
    FULL_REFUND = "full_refund"
    PARTIAL_REFUND = "partial_refund"
    ALREADY_REFUNDED = "already_refunded"
    TARGET_MISSING = "target_missing"


@dataclass
class RevocationResult:
    outcome: RevocationOutcome
    order_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    tokens_revoked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "order_id": str(self.order_id) if self.order_id else None,
            "status": self.status,
            "tokens_revoked": self.tokens_revoked,
        }


class RevocationHandler:
    """Applies refund events to orders and their download tokens."""

    def __init__(self, session: AsyncSession, clock: Clock = utcnow) -> None:
        self.session = session
        self.store = EntitlementStore(session)
        self.clock = clock

    async def _find_order(self, event: RefundIssued) -> Optional[Order]:
        if event.payment_reference:
            order = await self.store.get_order_by_payment_reference(event.payment_reference)
            if order is not None:
                return order
        if event.payment_intent_reference:
            return await self.store.get_order_by_payment_intent(event.payment_intent_reference)
        return None

    async def apply(self, event: RefundIssued) -> RevocationResult:
        """
        Apply a refund to the ledger.

        A refund that arrives before its order exists is logged and reported
        as ``TARGET_MISSING``; nothing is written.

        Args:
            event: Refund with the cumulative refunded amount

        Returns:
            RevocationResult: What changed
        """
        try:
            result = await self._apply(event)
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        metrics.record_refund_event(result.outcome.value, result.tokens_revoked)
        return result

    async def _apply(self, event: RefundIssued) -> RevocationResult:
        order = await self._find_order(event)
        if order is None:
            logger.warning(
                "refund_target_missing",
                event_id=event.event_id,
                payment_reference=event.payment_reference,
                payment_intent_reference=event.payment_intent_reference,
                amount_refunded=str(event.amount_refunded),
            )
            return RevocationResult(outcome=RevocationOutcome.TARGET_MISSING)

        if order.status == "refunded":
            logger.info("refund_already_applied", order_id=str(order.id))
            return RevocationResult(
                outcome=RevocationOutcome.ALREADY_REFUNDED,
                order_id=order.id,
                status=order.status,
            )

        now = self.clock()
        if event.fully_refunded or event.amount_refunded >= order.total:
            await self.store.set_order_status(order, "refunded", now)
            revoked = await self.store.revoke_tokens_for_order(order.id)
            logger.info(
                "order_fully_refunded",
                order_id=str(order.id),
                amount_refunded=str(event.amount_refunded),
                tokens_revoked=revoked,
            )
            return RevocationResult(
                outcome=RevocationOutcome.FULL_REFUND,
                order_id=order.id,
                status=order.status,
                tokens_revoked=revoked,
            )

        await self.store.set_order_status(order, "partially_refunded", now)
        logger.info(
            "order_partially_refunded",
            order_id=str(order.id),
            amount_refunded=str(event.amount_refunded),
            order_total=str(order.total),
        )
        return RevocationResult(
            outcome=RevocationOutcome.PARTIAL_REFUND,
            order_id=order.id,
            status=order.status,
        )


class RefundService:
    """Operator-initiated refunds: refund at Stripe, then revoke locally."""

    def __init__(self, session: AsyncSession, provider: Any, clock: Clock = utcnow) -> None:
        self.session = session
        self.store = EntitlementStore(session)
        self.provider = provider
        self.handler = RevocationHandler(session, clock=clock)

    async def refund_order(
        self,
        order_id: Optional[uuid.UUID] = None,
        payment_reference: Optional[str] = None,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Refund an order in full or in part.

        Args:
            order_id: Local order id
            payment_reference: Checkout session id, when the order id is not known
            amount: Partial amount in major units; None refunds the rest
            reason: Stripe refund reason
            idempotency_key: Key forwarded to Stripe

        Returns:
            Dict[str, Any]: Refund id, status, cumulative refunded amount and
            the revocation result

        Raises:
            OrderNotFound: If no order matches
            ProviderRequestRejected: If the order has no payment intent or Stripe refuses
            RemoteServiceUnavailable: If Stripe cannot be reached
        """
        order = None
        if order_id is not None:
            order = await self.store.get_order(order_id)
        if order is None and payment_reference:
            order = await self.store.get_order_by_payment_reference(payment_reference)
        if order is None:
            raise OrderNotFound(f"No order for id={order_id} payment_reference={payment_reference}")
        if not order.payment_intent_reference:
            raise ProviderRequestRejected(f"Order {order.id} has no payment intent to refund")

        local_order_id = order.id
        payment_intent = order.payment_intent_reference
        payment_reference = order.payment_reference
        # Release the read transaction before the remote call
        await self.session.commit()

        amount_cents = int((amount * 100).to_integral_value()) if amount is not None else None
        refund = await self.provider.create_refund(
            payment_intent_id=payment_intent,
            amount_cents=amount_cents,
            reason=reason,
            idempotency_key=idempotency_key or f"refund:{local_order_id}:{uuid.uuid4().hex}",
            metadata={"order_id": str(local_order_id)},
        )

        refunds = await self.provider.list_refunds(payment_intent)
        refunded_cents = sum(
            r.get("amount", 0) for r in refunds if r.get("status") in ("succeeded", "pending")
        )
        if refund.get("id") not in {r.get("id") for r in refunds}:
            refunded_cents += refund.get("amount", 0)

        result = await self.handler.apply(
            RefundIssued(
                payment_reference=payment_reference,
                payment_intent_reference=payment_intent,
                amount_refunded=cents_to_decimal(refunded_cents),
            )
        )

        logger.info(
            "admin_refund_completed",
            order_id=str(local_order_id),
            refund_id=refund.get("id"),
            total_refunded_cents=refunded_cents,
            outcome=result.outcome.value,
        )

        return {
            "refund_id": refund.get("id"),
            "refund_status": refund.get("status"),
            "amount": cents_to_decimal(refund.get("amount")),
            "total_refunded": cents_to_decimal(refunded_cents),
            "revocation": result.to_dict(),
        }
