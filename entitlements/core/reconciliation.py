"""
Reconciliation auditor for comparing Stripe's ledger with local orders.

Detects:
- Paid checkout sessions with no local order (orphans)
- Differences between provider and local totals

Read-only apart from ``import_transaction``, which backfills one orphan
through the regular fulfillment path.
"""
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.core.events import PaymentCompleted, _object_id, cents_to_decimal
from entitlements.core.exceptions import (
    InvalidReconciliationWindow,
    ProviderRequestRejected,
    ReconciliationError,
    RemoteServiceUnavailable,
    TransactionNotSettled,
)
from entitlements.core.fulfillment import FulfillmentResult, OrderFulfillment
from entitlements.database.store import EntitlementStore
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SETTLED_STATUS = "paid"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class OrphanedTransaction:
    """A settled provider transaction with no local order."""

    id: str
    payment_intent: Optional[str]
    amount: Decimal
    customer_email: Optional[str]
    customer_name: Optional[str]
    created: datetime
    item_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "payment_intent": self.payment_intent,
            "amount": str(self.amount),
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "created": self.created.isoformat(),
            "item_count": self.item_count,
        }


@dataclass
class ReconciliationReport:
    window_start: datetime
    window_end: datetime
    provider_count: int
    provider_total: Decimal
    local_count: int
    local_total: Decimal
    orphaned: List[OrphanedTransaction] = field(default_factory=list)

    @property
    def amount_difference(self) -> Decimal:
        return abs(self.provider_total - self.local_total)

    @property
    def divergent(self) -> bool:
        return bool(self.orphaned) or self.amount_difference != 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.window_start.isoformat(),
            "to": self.window_end.isoformat(),
            "provider": {"count": self.provider_count, "total": str(self.provider_total)},
            "local": {"count": self.local_count, "total": str(self.local_total)},
            "amount_difference": str(self.amount_difference),
            "divergent": self.divergent,
            "orphaned": [orphan.to_dict() for orphan in self.orphaned],
        }


def _orphan_from_session(session: Dict[str, Any]) -> OrphanedTransaction:
    details = session.get("customer_details") or {}
    line_items = (session.get("line_items") or {}).get("data") or []
    return OrphanedTransaction(
        id=session["id"],
        payment_intent=_object_id(session.get("payment_intent")),
        amount=cents_to_decimal(session.get("amount_total")),
        customer_email=session.get("customer_email") or details.get("email"),
        customer_name=details.get("name"),
        created=datetime.fromtimestamp(int(session.get("created") or 0), tz=timezone.utc),
        item_count=len(line_items),
    )


class ReconciliationAuditor:
    """
    Compares Stripe checkout sessions with local orders.

    Both sides are keyed by the session creation time, which is also what
    local orders record as ``created_at``.
    """

    def __init__(
        self,
        session: AsyncSession,
        provider: Any,
        max_window_days: int = 90,
        fulfillment: Optional[OrderFulfillment] = None,
    ) -> None:
        """
        Initialize reconciliation auditor.

        Args:
            session: Database session
            provider: Payment provider client
            max_window_days: Largest accepted window
            fulfillment: Orchestrator used by ``import_transaction``
        """
        self.session = session
        self.store = EntitlementStore(session)
        self.provider = provider
        self.max_window = timedelta(days=max_window_days)
        self.fulfillment = fulfillment

    def _validate_window(self, start: datetime, end: datetime) -> None:
        if start >= end:
            raise InvalidReconciliationWindow("'from' must be earlier than 'to'")
        if end - start > self.max_window:
            raise InvalidReconciliationWindow(
                f"Window exceeds {self.max_window.days} days"
            )

    async def _settled_provider_sessions(
        self, start: datetime, end: datetime
    ) -> List[Dict[str, Any]]:
        try:
            sessions = await self.provider.list_checkout_sessions(
                created_gte=int(start.timestamp()),
                created_lt=int(end.timestamp()),
            )
        except (RemoteServiceUnavailable, ProviderRequestRejected) as e:
            logger.error("stripe_fetch_error", error=str(e))
            raise ReconciliationError(f"Failed to fetch Stripe data: {e}") from e
        return [s for s in sessions if s.get("payment_status") == SETTLED_STATUS]

    async def audit(self, start: datetime, end: datetime) -> ReconciliationReport:
        """
        Compare the ledgers over ``[start, end)``.

        Args:
            start: Window start (naive values are UTC)
            end: Window end, exclusive

        Returns:
            ReconciliationReport: Totals, orphans and divergence

        Raises:
            InvalidReconciliationWindow: If the window is empty or too large
            ReconciliationError: If Stripe cannot be read
        """
        start, end = as_utc(start), as_utc(end)
        self._validate_window(start, end)
        started = time.time()

        logger.info(
            "reconciliation_started", window_start=start.isoformat(), window_end=end.isoformat()
        )

        provider_sessions = await self._settled_provider_sessions(start, end)
        local = await self.store.paid_order_totals(start, end)

        known_refs = await self.store.known_payment_references(s["id"] for s in provider_sessions)
        candidates = [s for s in provider_sessions if s["id"] not in known_refs]
        orphans = [_orphan_from_session(s) for s in candidates]
        known_intents = await self.store.known_payment_intents(
            o.payment_intent for o in orphans if o.payment_intent
        )
        orphans = [o for o in orphans if o.payment_intent not in known_intents]
        await self.session.commit()

        report = ReconciliationReport(
            window_start=start,
            window_end=end,
            provider_count=len(provider_sessions),
            provider_total=sum(
                (cents_to_decimal(s.get("amount_total")) for s in provider_sessions),
                Decimal("0.00"),
            ),
            local_count=local["count"],
            local_total=local["total"],
            orphaned=orphans,
        )

        duration = time.time() - started
        metrics.set_reconciliation_metrics(
            len(report.orphaned), float(report.amount_difference), duration
        )

        log = logger.warning if report.divergent else logger.info
        log(
            "reconciliation_completed",
            window_start=start.isoformat(),
            window_end=end.isoformat(),
            provider_count=report.provider_count,
            local_count=report.local_count,
            amount_difference=str(report.amount_difference),
            orphaned=len(report.orphaned),
            divergent=report.divergent,
        )
        return report

    async def import_transaction(self, session_id: str) -> FulfillmentResult:
        """
        Backfill one provider transaction as if its webhook had just arrived.

        Safe to repeat: an existing order is returned unchanged.

        Raises:
            TransactionNotSettled: If the session is not paid
            RemoteServiceUnavailable, ProviderRequestRejected: From Stripe
        """
        if self.fulfillment is None:
            raise RuntimeError("import_transaction requires an OrderFulfillment")

        checkout = await self.provider.retrieve_checkout_session(session_id)
        if checkout.get("payment_status") != SETTLED_STATUS:
            raise TransactionNotSettled(
                f"Session {session_id} is {checkout.get('payment_status')!r}, not paid"
            )

        line_items = (checkout.get("line_items") or {}).get("data")
        if line_items is None or (checkout.get("line_items") or {}).get("has_more"):
            line_items = await self.provider.list_line_items(session_id)

        event = PaymentCompleted.from_checkout_session(checkout, line_items)
        result = await self.fulfillment.fulfill(event)

        logger.info(
            "transaction_imported",
            session_id=session_id,
            order_id=str(result.order.id),
            created=result.created,
        )
        return result
