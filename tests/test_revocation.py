"""
Tests for refund handling and token revocation.
"""
from decimal import Decimal

import pytest
import pytest_asyncio

from entitlements.core.events import PurchasedLineItem, RefundIssued
from entitlements.core.exceptions import OrderNotFound, RemoteServiceUnavailable
from entitlements.core.fulfillment import OrderFulfillment
from entitlements.core.revocation import RefundService, RevocationHandler, RevocationOutcome
from entitlements.database.store import EntitlementStore

from fakes import stripe_checkout_session


@pytest_asyncio.fixture
async def three_item_order(database, test_settings, catalog, payment_event, clock):
    event = payment_event(
        payment_reference="cs_three",
        total="30.00",
        lines=[
            PurchasedLineItem(name="No More Trouble", unit_amount=Decimal("10.00"), product_id="p1"),
            PurchasedLineItem(name="Deep Cuts Vol. 2", unit_amount=Decimal("10.00"), product_id="p2"),
            PurchasedLineItem(name="Deep Cuts", unit_amount=Decimal("10.00"), product_id="p3"),
        ],
    )
    async with database.session() as session:
        result = await OrderFulfillment(session, test_settings, clock=clock).fulfill(event)
    assert len(result.tokens) == 3
    return result.order


async def _state(database, order_id):
    async with database.session() as session:
        store = EntitlementStore(session)
        order = await store.get_order(order_id)
        tokens = await store.tokens_for_order(order_id)
        return order.status, sorted(t.is_active for t in tokens)


class TestRevocationHandler:
    """Test suite for RevocationHandler."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_revokes_every_token(
        self, database, three_item_order, clock
    ) -> None:
        async with database.session() as session:
            result = await RevocationHandler(session, clock=clock).apply(
                RefundIssued(
                    payment_intent_reference="pi_cs_three",
                    amount_refunded=Decimal("30.00"),
                    fully_refunded=True,
                )
            )

        assert result.outcome is RevocationOutcome.FULL_REFUND
        assert result.tokens_revoked == 3
        assert result.order_id == three_item_order.id
        assert await _state(database, three_item_order.id) == ("refunded", [False, False, False])

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_keeps_tokens(self, database, three_item_order, clock) -> None:
        async with database.session() as session:
            result = await RevocationHandler(session, clock=clock).apply(
                RefundIssued(
                    payment_intent_reference="pi_cs_three",
                    amount_refunded=Decimal("10.00"),
                )
            )

        assert result.outcome is RevocationOutcome.PARTIAL_REFUND
        assert result.tokens_revoked == 0
        assert await _state(database, three_item_order.id) == (
            "partially_refunded",
            [True, True, True],
        )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cumulative_amount_reaching_total_is_full(
        self, database, three_item_order, clock
    ) -> None:
        for amount in ("10.00", "30.00"):
            async with database.session() as session:
                result = await RevocationHandler(session, clock=clock).apply(
                    RefundIssued(
                        payment_reference="cs_three", amount_refunded=Decimal(amount)
                    )
                )

        assert result.outcome is RevocationOutcome.FULL_REFUND
        assert result.tokens_revoked == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_is_already_refunded(self, database, three_item_order, clock) -> None:
        event = RefundIssued(
            payment_reference="cs_three", amount_refunded=Decimal("30.00"), fully_refunded=True
        )
        outcomes = []
        for _ in range(2):
            async with database.session() as session:
                outcomes.append(await RevocationHandler(session, clock=clock).apply(event))

        assert [o.outcome for o in outcomes] == [
            RevocationOutcome.FULL_REFUND,
            RevocationOutcome.ALREADY_REFUNDED,
        ]
        assert outcomes[1].tokens_revoked == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refunded_is_terminal(self, database, three_item_order, clock) -> None:
        async with database.session() as session:
            await RevocationHandler(session, clock=clock).apply(
                RefundIssued(payment_reference="cs_three", amount_refunded=Decimal("30.00"))
            )
        async with database.session() as session:
            result = await RevocationHandler(session, clock=clock).apply(
                RefundIssued(payment_reference="cs_three", amount_refunded=Decimal("5.00"))
            )

        assert result.outcome is RevocationOutcome.ALREADY_REFUNDED
        assert (await _state(database, three_item_order.id))[0] == "refunded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_target_writes_nothing(self, test_db, catalog, clock) -> None:
        result = await RevocationHandler(test_db, clock=clock).apply(
            RefundIssued(payment_intent_reference="pi_unknown", amount_refunded=Decimal("5.00"))
        )
        assert result.outcome is RevocationOutcome.TARGET_MISSING
        assert result.order_id is None
        assert result.to_dict()["outcome"] == "target_missing"

    @pytest.mark.unit
    def test_refund_from_charge(self) -> None:
        event = RefundIssued.from_charge(
            {
                "id": "ch_1",
                "payment_intent": {"id": "pi_cs_three"},
                "amount_refunded": 3000,
                "refunded": True,
            },
            event_id="evt_9",
        )
        assert event.payment_intent_reference == "pi_cs_three"
        assert event.amount_refunded == Decimal("30.00")
        assert event.fully_refunded is True


class TestRefundService:
    """Operator refunds go through Stripe and then revoke locally."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_full_refund_by_order_id(
        self, database, provider, three_item_order, clock
    ) -> None:
        provider.add_session(stripe_checkout_session("cs_three", 3000))

        async with database.session() as session:
            result = await RefundService(session, provider, clock=clock).refund_order(
                order_id=three_item_order.id, reason="requested_by_customer"
            )

        assert result["refund_id"] == "re_1"
        assert result["amount"] == Decimal("30.00")
        assert result["total_refunded"] == Decimal("30.00")
        assert result["revocation"]["outcome"] == "full_refund"
        assert result["revocation"]["tokens_revoked"] == 3
        assert provider.refunds[0]["reason"] == "requested_by_customer"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund_by_payment_reference(
        self, database, provider, three_item_order, clock
    ) -> None:
        provider.add_session(stripe_checkout_session("cs_three", 3000))

        async with database.session() as session:
            first = await RefundService(session, provider, clock=clock).refund_order(
                payment_reference="cs_three", amount=Decimal("10.00")
            )
        assert first["revocation"]["outcome"] == "partial_refund"
        assert provider.refunds[0]["amount"] == 1000

        async with database.session() as session:
            rest = await RefundService(session, provider, clock=clock).refund_order(
                payment_reference="cs_three"
            )
        assert provider.refunds[1]["amount"] == 2000
        assert rest["total_refunded"] == Decimal("30.00")
        assert rest["revocation"]["outcome"] == "full_refund"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order(self, test_db, provider, catalog) -> None:
        with pytest.raises(OrderNotFound):
            await RefundService(test_db, provider).refund_order(payment_reference="cs_nope")
        assert provider.refunds == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_provider_outage_leaves_order_untouched(
        self, database, provider, three_item_order, clock
    ) -> None:
        provider.unavailable = True
        async with database.session() as session:
            with pytest.raises(RemoteServiceUnavailable):
                await RefundService(session, provider, clock=clock).refund_order(
                    order_id=three_item_order.id
                )
        assert await _state(database, three_item_order.id) == ("paid", [True, True, True])
