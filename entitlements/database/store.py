"""
Repository layer over orders, order items, download tokens and logs.

Every write that guards an invariant is a single conditional statement:

- order creation is an insert-if-absent keyed by ``payment_reference``
- download consumption is an UPDATE guarded by the limit, the expiry and
  the active flag, judged by its row count
- revocation is a bulk UPDATE that only touches active tokens
"""
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.database.models import (
    DownloadLog,
    DownloadToken,
    Order,
    OrderItem,
    Product,
    WebhookFailure,
)

logger = structlog.get_logger(__name__)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class EntitlementStore:
    """Data access for the purchase ledger, bound to one session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    def _dialect_insert(self, table: Any) -> Any:
        dialect = self.session.get_bind().dialect.name
        try:
            return _INSERT_BY_DIALECT[dialect](table)
        except KeyError:
            raise RuntimeError(f"Unsupported database dialect for conditional insert: {dialect}")

    # Orders

    async def insert_order_if_absent(self, values: Dict[str, Any]) -> Tuple[Order, bool]:
        """
        Create the order unless one already exists for its payment reference.

        Args:
            values: Column values; must contain ``payment_reference``

        Returns:
            Tuple[Order, bool]: The order and whether this call created it
        """
        values = dict(values)
        values.setdefault("id", uuid.uuid4())

        stmt = (
            self._dialect_insert(Order)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["payment_reference"])
            .returning(Order.id)
        )
        inserted_id = (await self.session.execute(stmt)).scalar_one_or_none()

        order = await self.get_order_by_payment_reference(values["payment_reference"])
        if order is None:
            raise RuntimeError(
                f"Order for {values['payment_reference']} neither inserted nor found"
            )
        return order, inserted_id is not None

    async def get_order(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self.session.get(Order, order_id)

    async def get_order_by_payment_reference(self, payment_reference: str) -> Optional[Order]:
        stmt = select(Order).where(Order.payment_reference == payment_reference)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def get_order_by_payment_intent(self, payment_intent_reference: str) -> Optional[Order]:
        stmt = (
            select(Order)
            .where(Order.payment_intent_reference == payment_intent_reference)
            .order_by(Order.created_at)
            .limit(1)
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def set_order_status(self, order: Order, status: str, now: datetime) -> Order:
        order.status = status
        order.updated_at = now
        await self.session.flush()
        return order

    async def link_user(self, order_id: uuid.UUID, user_ref: str, now: datetime) -> int:
        """
        Attach a user reference to an order and to its tokens.

        Only fills empty references; an order already owned by a user keeps it.

        Returns:
            int: Number of tokens linked
        """
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id, Order.user_ref.is_(None))
            .values(user_ref=user_ref, updated_at=now)
        )
        item_ids = select(OrderItem.id).where(OrderItem.order_id == order_id)
        result = await self.session.execute(
            update(DownloadToken)
            .where(DownloadToken.order_item_id.in_(item_ids), DownloadToken.user_ref.is_(None))
            .values(user_ref=user_ref)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # Items and tokens

    async def add_item(
        self,
        order_id: uuid.UUID,
        product_ref: Optional[str],
        name: str,
        unit_price: Decimal,
        quantity: int,
        resolution: str,
    ) -> OrderItem:
        item = OrderItem(
            id=uuid.uuid4(),
            order_id=order_id,
            product_ref=product_ref,
            product_name_snapshot=name,
            unit_price_snapshot=unit_price,
            quantity=quantity,
            resolution=resolution,
        )
        self.session.add(item)
        await self.session.flush()
        return item

    async def issue_token(
        self,
        item: OrderItem,
        token: str,
        user_ref: Optional[str],
        max_downloads: int,
        expires_at: datetime,
        now: datetime,
    ) -> DownloadToken:
        if item.product_ref is None:
            raise ValueError("Download tokens require a resolved product")
        download_token = DownloadToken(
            id=uuid.uuid4(),
            order_item_id=item.id,
            token=token,
            product_ref=item.product_ref,
            user_ref=user_ref,
            max_downloads=max_downloads,
            download_count=0,
            expires_at=expires_at,
            is_active=True,
            created_at=now,
        )
        self.session.add(download_token)
        await self.session.flush()
        return download_token

    async def items_for_order(self, order_id: uuid.UUID) -> List[OrderItem]:
        stmt = (
            select(OrderItem)
            .where(OrderItem.order_id == order_id)
            .order_by(OrderItem.created_at, OrderItem.id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def tokens_for_order(self, order_id: uuid.UUID) -> List[DownloadToken]:
        stmt = (
            select(DownloadToken)
            .join(OrderItem, OrderItem.id == DownloadToken.order_item_id)
            .where(OrderItem.order_id == order_id)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_token(self, token: str) -> Optional[DownloadToken]:
        stmt = select(DownloadToken).where(DownloadToken.token == token)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def refresh_token(self, download_token: DownloadToken) -> DownloadToken:
        await self.session.refresh(download_token)
        return download_token

    async def consume_download(self, token_id: uuid.UUID, now: datetime) -> bool:
        """
        Count one download against the token.

        The guard conditions are re-evaluated inside the UPDATE itself, so two
        concurrent requests that both passed the read-side checks cannot both
        take the last download.

        Returns:
            bool: True if the counter was incremented
        """
        stmt = (
            update(DownloadToken)
            .where(
                DownloadToken.id == token_id,
                DownloadToken.is_active.is_(True),
                DownloadToken.download_count < DownloadToken.max_downloads,
                DownloadToken.expires_at > now,
            )
            .values(
                download_count=DownloadToken.download_count + 1,
                last_download_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def revoke_tokens_for_order(self, order_id: uuid.UUID) -> int:
        """
        Deactivate every active token of every item of the order.

        Returns:
            int: Number of tokens that were active and are now revoked
        """
        item_ids = select(OrderItem.id).where(OrderItem.order_id == order_id)
        stmt = (
            update(DownloadToken)
            .where(DownloadToken.order_item_id.in_(item_ids), DownloadToken.is_active.is_(True))
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def append_download_log(
        self,
        download_token: DownloadToken,
        ip_address: Optional[str],
        user_agent: Optional[str],
        file_name: Optional[str],
        now: datetime,
    ) -> DownloadLog:
        log = DownloadLog(
            id=uuid.uuid4(),
            download_token_id=download_token.id,
            user_ref=download_token.user_ref,
            ip_address=ip_address,
            user_agent=user_agent[:512] if user_agent else None,
            file_name=file_name,
            created_at=now,
        )
        self.session.add(log)
        await self.session.flush()
        return log

    async def download_logs_for_token(self, token_id: uuid.UUID) -> List[DownloadLog]:
        stmt = (
            select(DownloadLog)
            .where(DownloadLog.download_token_id == token_id)
            .order_by(DownloadLog.created_at)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    # Reconciliation support

    async def paid_order_totals(self, start: datetime, end: datetime) -> Dict[str, Any]:
        """
        Count and sum of paid orders created in ``[start, end)``.

        Returns:
            Dict[str, Any]: ``count`` and ``total`` (Decimal)
        """
        stmt = select(
            func.count(Order.id).label("count"),
            func.sum(Order.total).label("total"),
        ).where(
            Order.created_at >= start,
            Order.created_at < end,
            Order.status == "paid",
        )
        row = (await self.session.execute(stmt)).first()
        total = row.total if row is not None and row.total is not None else 0
        return {
            "count": row.count if row is not None else 0,
            "total": Decimal(str(total)).quantize(Decimal("0.01")),
        }

    async def known_payment_references(self, references: Iterable[str]) -> Set[str]:
        refs = list(set(references))
        if not refs:
            return set()
        stmt = select(Order.payment_reference).where(Order.payment_reference.in_(refs))
        return set((await self.session.execute(stmt)).scalars().all())

    async def known_payment_intents(self, intents: Iterable[str]) -> Set[str]:
        ids = [i for i in set(intents) if i]
        if not ids:
            return set()
        stmt = select(Order.payment_intent_reference).where(
            Order.payment_intent_reference.in_(ids)
        )
        return set((await self.session.execute(stmt)).scalars().all())

    # Operator queues

    async def unresolved_items(self, limit: int = 100) -> List[Tuple[OrderItem, Order]]:
        stmt = (
            select(OrderItem, Order)
            .join(Order, Order.id == OrderItem.order_id)
            .where(OrderItem.product_ref.is_(None))
            .order_by(OrderItem.created_at.desc())
            .limit(limit)
        )
        return [(row[0], row[1]) for row in (await self.session.execute(stmt)).all()]

    async def record_webhook_failure(
        self, event_id: str, event_type: str, error: str
    ) -> WebhookFailure:
        failure = WebhookFailure(
            id=uuid.uuid4(),
            event_id=event_id,
            event_type=event_type,
            error=error[:4000],
        )
        self.session.add(failure)
        await self.session.flush()
        return failure

    async def webhook_failures(self, limit: int = 100) -> List[WebhookFailure]:
        stmt = select(WebhookFailure).order_by(WebhookFailure.created_at.desc()).limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())


class CatalogRepository:
    """Read-only access to the product catalog."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def list_products(self) -> List[Product]:
        stmt = select(Product).order_by(Product.name, Product.id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def get_product(self, product_id: str) -> Optional[Product]:
        return await self.session.get(Product, product_id)
