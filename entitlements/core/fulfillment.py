"""
Order fulfillment orchestrator.

Turns one verified ``PaymentCompleted`` event into an Order, its OrderItems
and their DownloadTokens. Safe to run any number of times for the same
payment reference: only the first run writes anything.
"""
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from entitlements.config import Settings
from entitlements.core.catalog import CatalogResolver
from entitlements.core.events import PaymentCompleted
from entitlements.database.models import DownloadToken, Order, OrderItem, utcnow
from entitlements.database.store import CatalogRepository, EntitlementStore
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def new_download_token() -> str:
    """Opaque URL-safe token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


@dataclass
class FulfillmentResult:
    """
    Outcome of one fulfillment attempt.

    ``created`` is False when the order already existed; that is a successful
    no-op, not an error.
    """

    order: Order
    created: bool
    items: List[OrderItem] = field(default_factory=list)
    tokens: List[DownloadToken] = field(default_factory=list)

    @property
    def unresolved_items(self) -> List[OrderItem]:
        return [item for item in self.items if item.product_ref is None]


class OrderFulfillment:
    """
    Creates the purchase ledger for a completed payment.

    Steps:
    1. Insert the order unless its payment reference is already known
    2. Resolve each line item against the catalog
    3. Store each item with its name and price snapshot
    4. Issue a download token for each resolved item
    5. Commit (steps 1-4 are one transaction)
    6. Best effort: provision a guest account and link it
    7. Best effort: email the customer and the operator
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings,
        notifier: Optional[Any] = None,
        provisioner: Optional[Any] = None,
        clock: Clock = utcnow,
        token_factory: Callable[[], str] = new_download_token,
    ) -> None:
        """
        Initialize the orchestrator.

        Args:
            session: Database session; the orchestrator commits it
            settings: Application settings (token policy)
            notifier: Optional email notifier
            provisioner: Optional account provisioner
            clock: Returns the current aware UTC time
            token_factory: Produces new opaque token strings
        """
        self.session = session
        self.store = EntitlementStore(session)
        self.catalog = CatalogRepository(session)
        self.max_downloads = settings.download_max_downloads
        self.token_ttl = timedelta(days=settings.download_token_ttl_days)
        self.notifier = notifier
        self.provisioner = provisioner
        self.clock = clock
        self.token_factory = token_factory

    async def fulfill(self, event: PaymentCompleted) -> FulfillmentResult:
        """
        Process a completed payment.

        Args:
            event: Verified payment completion

        Returns:
            FulfillmentResult: The order and whether this call created it
        """
        log = logger.bind(payment_reference=event.payment_reference, event_id=event.event_id)

        try:
            result = await self._write_ledger(event)
        except Exception:
            await self.session.rollback()
            raise

        metrics.record_order_fulfilled(
            result.created, len(result.unresolved_items), len(result.tokens)
        )

        if not result.created:
            log.info("payment_event_duplicate", order_id=str(result.order.id))
            return result

        log.info(
            "order_fulfilled",
            order_id=str(result.order.id),
            total=str(result.order.total),
            items=len(result.items),
            tokens_issued=len(result.tokens),
            unresolved_items=len(result.unresolved_items),
        )

        if result.order.user_ref is None and result.order.customer_email:
            await self._provision_account(result)
        await self._notify(result)
        return result

    async def _write_ledger(self, event: PaymentCompleted) -> FulfillmentResult:
        now = self.clock()
        order, created = await self.store.insert_order_if_absent(
            {
                "payment_reference": event.payment_reference,
                "payment_intent_reference": event.payment_intent_reference,
                "user_ref": event.user_ref,
                "customer_email": event.customer_email,
                "customer_name": event.customer_name,
                "subtotal": event.subtotal,
                "total": event.total,
                "currency": event.currency,
                "status": "paid",
                "created_at": event.created_at,
                "paid_at": event.paid_at,
                "updated_at": now,
            }
        )

        if not created:
            items = await self.store.items_for_order(order.id)
            tokens = await self.store.tokens_for_order(order.id)
            await self.session.commit()
            return FulfillmentResult(order=order, created=False, items=items, tokens=tokens)

        resolver = await CatalogResolver.load(self.catalog)
        items: List[OrderItem] = []
        tokens: List[DownloadToken] = []

        for line in event.line_items:
            resolution = resolver.resolve(line)
            item = await self.store.add_item(
                order_id=order.id,
                product_ref=resolution.product_ref,
                name=line.name,
                unit_price=line.unit_amount,
                quantity=line.quantity,
                resolution=resolution.strategy.value,
            )
            items.append(item)

            if not resolution.resolved:
                logger.warning(
                    "order_item_unresolved",
                    payment_reference=event.payment_reference,
                    order_item_id=str(item.id),
                    item_name=line.name,
                )
                continue

            tokens.append(
                await self.store.issue_token(
                    item,
                    token=self.token_factory(),
                    user_ref=order.user_ref,
                    max_downloads=self.max_downloads,
                    expires_at=now + self.token_ttl,
                    now=now,
                )
            )

        await self.session.commit()
        return FulfillmentResult(order=order, created=True, items=items, tokens=tokens)

    async def _provision_account(self, result: FulfillmentResult) -> None:
        """Create a guest account and link it to the order. Never raises."""
        if self.provisioner is None:
            logger.info(
                "account_provisioning_skipped",
                order_id=str(result.order.id),
                reason="no_provisioner_configured",
            )
            return

        order = result.order
        order_id = order.id
        try:
            user_ref = await self.provisioner.provision(order.customer_email, order.customer_name)
        except Exception as e:
            metrics.record_side_effect_failure("provisioning")
            logger.warning(
                "account_provisioning_failed",
                order_id=str(order_id),
                error=str(e),
                error_type=type(e).__name__,
            )
            return

        try:
            linked = await self.store.link_user(order_id, user_ref, self.clock())
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.record_side_effect_failure("provisioning")
            logger.warning(
                "account_link_failed",
                order_id=str(order_id),
                user_ref=user_ref,
                error=str(e),
            )
            await self._reload(result, order_id)
            return

        # Mirror the bulk UPDATE in memory without marking the objects dirty
        set_committed_value(order, "user_ref", user_ref)
        for token in result.tokens:
            if token.user_ref is None:
                set_committed_value(token, "user_ref", user_ref)
        logger.info(
            "order_linked_to_account",
            order_id=str(order.id),
            user_ref=user_ref,
            tokens_linked=linked,
        )

    async def _reload(self, result: FulfillmentResult, order_id: uuid.UUID) -> None:
        """Re-read committed rows after a rollback expired them."""
        try:
            for obj in (result.order, *result.items, *result.tokens):
                await self.session.refresh(obj)
        except SQLAlchemyError as e:
            logger.error("fulfillment_reload_failed", order_id=str(order_id), error=str(e))

    async def _notify(self, result: FulfillmentResult) -> None:
        """Send order emails. Never raises."""
        if self.notifier is None:
            return

        # Independent sends: the operator notice flags unresolved items
        try:
            await self.notifier.send_order_confirmation(result.order, result.items, result.tokens)
        except Exception as e:
            metrics.record_side_effect_failure("notification")
            logger.warning(
                "order_confirmation_failed",
                order_id=str(result.order.id),
                error=str(e),
                error_type=type(e).__name__,
            )

        try:
            await self.notifier.send_operator_notification(result.order, result.items)
        except Exception as e:
            metrics.record_side_effect_failure("notification")
            logger.warning(
                "operator_notification_failed",
                order_id=str(result.order.id),
                error=str(e),
                error_type=type(e).__name__,
            )
