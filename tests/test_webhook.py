"""
Tests for webhook verification, classification and the webhook endpoint.
"""
import json
from decimal import Decimal

import pytest
from sqlalchemy import select

from entitlements.core.events import (
    IgnoredEvent,
    PaymentCompleted,
    PurchasedLineItem,
    RefundIssued,
)
from entitlements.core.exceptions import SignatureInvalid
from entitlements.database.models import DownloadToken, Order, OrderItem, WebhookFailure
from entitlements.integrations.webhook_handler import WebhookHandler

from fakes import (
    ADMIN_KEY,
    PURCHASE_TIME,
    count_rows,
    sign_payload,
    stripe_checkout_session,
    stripe_line_item,
    webhook_event,
)


def _seed_checkout(provider, session_id="cs_abc", payment_status="paid"):
    checkout = stripe_checkout_session(session_id, 1598, payment_status=payment_status)
    provider.add_session(
        checkout,
        [
            stripe_line_item("No More Trouble", 799, product_id="p1"),
            stripe_line_item("Mystery Bootleg", 799),
        ],
    )
    return checkout


def _refund_charge(amount_refunded=1598, refunded=True, payment_intent="pi_cs_abc"):
    return {
        "id": "ch_1",
        "object": "charge",
        "payment_intent": payment_intent,
        "amount": 1598,
        "amount_refunded": amount_refunded,
        "refunded": refunded,
    }


async def _post(client, payload, signature=None):
    headers = {"Content-Type": "application/json"}
    if signature is not False:
        headers["Stripe-Signature"] = signature or sign_payload(payload)
    return await client.post("/webhooks/payment", content=payload, headers=headers)


class TestWebhookHandler:
    """Test suite for WebhookHandler."""

    @pytest.mark.unit
    def test_verify_valid_signature(self, test_settings, provider) -> None:
        payload = webhook_event("checkout.session.completed", {"id": "cs_abc"})
        event = WebhookHandler(test_settings, provider).verify_signature(
            payload, sign_payload(payload)
        )
        assert event["id"] == "evt_1"
        assert event["type"] == "checkout.session.completed"

    @pytest.mark.unit
    def test_wrong_secret(self, test_settings, provider) -> None:
        payload = webhook_event("checkout.session.completed", {"id": "cs_abc"})
        with pytest.raises(SignatureInvalid):
            WebhookHandler(test_settings, provider).verify_signature(
                payload, sign_payload(payload, secret="whsec_other")
            )

    @pytest.mark.unit
    def test_tampered_body(self, test_settings, provider) -> None:
        payload = webhook_event("checkout.session.completed", {"id": "cs_abc"})
        signature = sign_payload(payload)
        with pytest.raises(SignatureInvalid):
            WebhookHandler(test_settings, provider).verify_signature(
                payload.replace(b"cs_abc", b"cs_xyz"), signature
            )

    @pytest.mark.unit
    def test_stale_timestamp(self, test_settings, provider) -> None:
        payload = webhook_event("checkout.session.completed", {"id": "cs_abc"})
        with pytest.raises(SignatureInvalid):
            WebhookHandler(test_settings, provider).verify_signature(
                payload, sign_payload(payload, timestamp=1_000_000)
            )

    @pytest.mark.unit
    def test_missing_header(self, test_settings, provider) -> None:
        with pytest.raises(SignatureInvalid):
            WebhookHandler(test_settings, provider).verify_signature(b"{}", None)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_classify_completed_checkout(self, test_settings, provider) -> None:
        checkout = _seed_checkout(provider)
        event = json.loads(webhook_event("checkout.session.completed", checkout))

        typed = await WebhookHandler(test_settings, provider).classify(event)

        assert isinstance(typed, PaymentCompleted)
        assert typed.payment_reference == "cs_abc"
        assert typed.payment_intent_reference == "pi_cs_abc"
        assert typed.total == Decimal("15.98")
        assert typed.created_at == PURCHASE_TIME
        assert typed.paid_at.timestamp() == PURCHASE_TIME.timestamp() + 5
        assert [line.product_id for line in typed.line_items] == ["p1", None]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_classify_unsettled_checkout(self, test_settings, provider) -> None:
        checkout = _seed_checkout(provider, payment_status="unpaid")
        event = json.loads(webhook_event("checkout.session.completed", checkout))

        typed = await WebhookHandler(test_settings, provider).classify(event)

        assert isinstance(typed, IgnoredEvent)
        assert provider.calls == []

    @pytest.mark.unit
    @pytest.mark.parametrize("bad_id", ["legacy id 42", "x" * 65])
    def test_malformed_embedded_id_is_dropped(self, bad_id) -> None:
        item = PurchasedLineItem.from_stripe(
            stripe_line_item("Deep Cuts", 500, product_id=bad_id)
        )
        assert item.product_id is None
        assert item.name == "Deep Cuts"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_classify_refund(self, test_settings, provider) -> None:
        event = json.loads(webhook_event("charge.refunded", _refund_charge(799, False)))
        typed = await WebhookHandler(test_settings, provider).classify(event)

        assert isinstance(typed, RefundIssued)
        assert typed.amount_refunded == Decimal("7.99")
        assert typed.fully_refunded is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unhandled_kind_is_ignored(self, test_settings, provider) -> None:
        event = json.loads(webhook_event("customer.created", {"id": "cus_1"}))
        result = await WebhookHandler(test_settings, provider).process_event(event)
        assert result["status"] == "ignored"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_registered_handler_receives_typed_event(self, test_settings, provider) -> None:
        received = []

        async def on_refund(typed):
            received.append(typed)
            return {"ok": True}

        handler = WebhookHandler(test_settings, provider)
        handler.register_handler("refund_issued", on_refund)
        result = await handler.process_event(
            json.loads(webhook_event("charge.refunded", _refund_charge()))
        )

        assert result["status"] == "processed"
        assert result["result"] == {"ok": True}
        assert received[0].payment_intent_reference == "pi_cs_abc"


class TestWebhookEndpoint:
    """End-to-end webhook deliveries through the API."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_completed_checkout_creates_order(
        self, client, database, provider, catalog, notifier
    ) -> None:
        payload = webhook_event("checkout.session.completed", _seed_checkout(provider))

        response = await _post(client, payload)

        assert response.status_code == 200
        assert response.json() == {"received": True}
        async with database.session() as session:
            order = (await session.execute(select(Order))).scalar_one()
            assert order.payment_reference == "cs_abc"
            assert order.status == "paid"
            assert order.created_at == PURCHASE_TIME
            assert await count_rows(session, OrderItem) == 2
            assert await count_rows(session, DownloadToken) == 1
        assert notifier.confirmations == [("cs_abc", 2, 1)]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_product_id_keeps_the_order(
        self, client, database, provider, catalog
    ) -> None:
        checkout = stripe_checkout_session("cs_abc", 1598)
        provider.add_session(
            checkout,
            [
                stripe_line_item("No More Trouble", 799, product_id="p1"),
                stripe_line_item("Mystery Bootleg", 799, product_id="legacy id 42"),
            ],
        )

        response = await _post(client, webhook_event("checkout.session.completed", checkout))

        assert response.status_code == 200
        async with database.session() as session:
            assert await count_rows(session, Order) == 1
            assert await count_rows(session, OrderItem) == 2
            assert await count_rows(session, DownloadToken) == 1
            assert await count_rows(session, WebhookFailure) == 0
            unresolved = (
                await session.execute(select(OrderItem).where(OrderItem.product_ref.is_(None)))
            ).scalar_one()
            assert unresolved.product_name_snapshot == "Mystery Bootleg"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_a_noop(
        self, client, database, provider, catalog, notifier
    ) -> None:
        payload = webhook_event("checkout.session.completed", _seed_checkout(provider))
        retry = webhook_event(
            "checkout.session.async_payment_succeeded", _seed_checkout(provider), event_id="evt_2"
        )

        for body in (payload, payload, retry):
            assert (await _post(client, body)).status_code == 200

        async with database.session() as session:
            assert await count_rows(session, Order) == 1
            assert await count_rows(session, DownloadToken) == 1
        assert len(notifier.confirmations) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unsettled_checkout_is_acknowledged(
        self, client, database, provider, catalog
    ) -> None:
        payload = webhook_event(
            "checkout.session.completed", _seed_checkout(provider, payment_status="unpaid")
        )
        assert (await _post(client, payload)).status_code == 200
        async with database.session() as session:
            assert await count_rows(session, Order) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_is_rejected(self, client, database, provider, catalog) -> None:
        payload = webhook_event("checkout.session.completed", _seed_checkout(provider))

        bad = await _post(client, payload, signature="t=1,v1=deadbeef")
        missing = await _post(client, payload, signature=False)

        assert bad.status_code == 400
        assert missing.status_code == 400
        async with database.session() as session:
            assert await count_rows(session, Order) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_revokes_tokens(self, client, database, provider, catalog) -> None:
        await _post(client, webhook_event("checkout.session.completed", _seed_checkout(provider)))

        response = await _post(
            client, webhook_event("charge.refunded", _refund_charge(), event_id="evt_r1")
        )

        assert response.status_code == 200
        async with database.session() as session:
            order = (await session.execute(select(Order))).scalar_one()
            token = (await session.execute(select(DownloadToken))).scalar_one()
            assert order.status == "refunded"
            assert token.is_active is False

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_before_order_is_acknowledged(
        self, client, database, catalog
    ) -> None:
        response = await _post(client, webhook_event("charge.refunded", _refund_charge()))
        assert response.status_code == 200
        async with database.session() as session:
            assert await count_rows(session, WebhookFailure) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_failure_is_recorded(
        self, client, database, provider, catalog
    ) -> None:
        payload = webhook_event("checkout.session.completed", _seed_checkout(provider))
        provider.unavailable = True

        response = await _post(client, payload)

        assert response.status_code == 200
        async with database.session() as session:
            assert await count_rows(session, Order) == 0
            failure = (await session.execute(select(WebhookFailure))).scalar_one()
            assert failure.event_id == "evt_1"
            assert failure.event_type == "checkout.session.completed"
            assert "RemoteServiceUnavailable" in failure.error

        listed = await client.get("/admin/webhook-failures", headers={"X-API-Key": ADMIN_KEY})
        assert listed.status_code == 200
        assert listed.json()[0]["event_id"] == "evt_1"
