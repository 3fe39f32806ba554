"""
Stripe webhook handler with signature verification and event classification.

Implements:
- Webhook signature verification (HMAC-SHA256 with replay tolerance)
- Classification of verified events into typed payment events
- Routing of typed events to registered handlers

Deduplication is not done here: duplicate deliveries collapse on the unique
payment reference when the order is written.
"""
import json
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

import stripe
import structlog

from entitlements.config import Settings
from entitlements.core.events import (
    PAYMENT_COMPLETED_TYPES,
    REFUND_ISSUED_TYPES,
    SETTLED_PAYMENT_STATUSES,
    IgnoredEvent,
    PaymentCompleted,
    PaymentEvent,
    RefundIssued,
)
from entitlements.core.exceptions import SignatureInvalid
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Any], Awaitable[Dict[str, Any]]]


class WebhookHandler:
    """
    Verifies, classifies and routes Stripe webhook events.

    Handlers are registered per event kind (``payment_completed``,
    ``refund_issued``) and receive the typed event.
    """

    def __init__(self, settings: Settings, provider: Any):
        """
        Initialize webhook handler.

        Args:
            settings: Application settings (webhook secret and tolerance)
            provider: Payment provider client, used to fetch line items
        """
        self.secret = settings.stripe_webhook_secret
        self.tolerance = settings.stripe_webhook_tolerance
        self.provider = provider
        self.event_handlers: Dict[str, EventHandler] = {}

    def register_handler(self, kind: str, handler: EventHandler) -> None:
        """
        Register a handler for an event kind.

        Args:
            kind: ``payment_completed`` or ``refund_issued``
            handler: Async callable receiving the typed event

        Example:
            async def on_payment(event: PaymentCompleted):
                ...

            handler.register_handler("payment_completed", on_payment)
        """
        self.event_handlers[kind] = handler
        logger.debug("webhook_handler_registered", kind=kind)

    def verify_signature(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body as bytes
            signature: Stripe-Signature header value

        Returns:
            Dict[str, Any]: Verified event

        Raises:
            SignatureInvalid: If the header is missing, the signature does not
                match, the timestamp is outside the tolerance or the body is
                not JSON
        """
        if not signature:
            metrics.record_webhook_signature_failure()
            logger.warning("webhook_signature_missing")
            raise SignatureInvalid("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.secret,
                tolerance=self.tolerance,
            )
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            metrics.record_webhook_signature_failure()
            logger.warning("webhook_signature_verification_failed", error=str(e))
            raise SignatureInvalid(f"Invalid webhook signature: {e}") from e
        except ValueError as e:
            metrics.record_webhook_signature_failure()
            logger.warning("webhook_payload_invalid", error=str(e))
            raise SignatureInvalid(f"Invalid webhook payload: {e}") from e

        logger.info(
            "webhook_signature_verified",
            event_id=event.get("id"),
            event_type=event.get("type"),
        )
        return event

    async def classify(self, event: Dict[str, Any]) -> PaymentEvent:
        """
        Turn a verified event into a typed payment event.

        Completed checkouts that have not settled yet (delayed payment
        methods) are ignored; ``async_payment_succeeded`` follows later.

        Args:
            event: Verified Stripe event

        Returns:
            PaymentEvent: PaymentCompleted, RefundIssued or IgnoredEvent
        """
        event_id = event.get("id")
        event_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in PAYMENT_COMPLETED_TYPES:
            if obj.get("payment_status") not in SETTLED_PAYMENT_STATUSES:
                logger.info(
                    "checkout_not_settled",
                    event_id=event_id,
                    session_id=obj.get("id"),
                    payment_status=obj.get("payment_status"),
                )
                return IgnoredEvent(event_id=event_id, event_type=event_type)

            line_items = await self.provider.list_line_items(obj["id"])
            return PaymentCompleted.from_checkout_session(
                obj,
                line_items,
                paid_at=_event_time(event),
                event_id=event_id,
            )

        if event_type in REFUND_ISSUED_TYPES:
            return RefundIssued.from_charge(obj, event_id=event_id)

        return IgnoredEvent(event_id=event_id, event_type=event_type)

    async def process_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        """
        Classify a verified event and run its handler.

        Args:
            event: Verified Stripe event

        Returns:
            Dict[str, Any]: Processing result

        Raises:
            Exception: Whatever the classification or the handler raised
        """
        event_id = event.get("id")
        event_type = event.get("type") or "unknown"
        start_time = time.time()

        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        try:
            typed = await self.classify(event)
            handler = self.event_handlers.get(typed.kind)

            if handler is None:
                logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
                metrics.record_webhook_event(event_type, "ignored", time.time() - start_time)
                return {"status": "ignored", "event_id": event_id, "event_type": event_type}

            result = await handler(typed)
        except Exception as e:
            metrics.record_webhook_event(event_type, "failed", time.time() - start_time)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        metrics.record_webhook_event(event_type, "processed", time.time() - start_time)
        logger.info(
            "webhook_event_processed_successfully",
            event_id=event_id,
            event_type=event_type,
            kind=typed.kind,
        )
        return {
            "status": "processed",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }


def _event_time(event: Dict[str, Any]) -> Optional[datetime]:
    created = event.get("created")
    if created is None:
        return None
    return datetime.fromtimestamp(int(created), tz=timezone.utc)
