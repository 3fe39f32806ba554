"""
In-memory fakes and payload builders shared by the tests.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Type

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.core.exceptions import FileNotAvailable, RemoteServiceUnavailable
from entitlements.integrations.blob_store import BlobFile, BlobStream, folder_prefix

WEBHOOK_SECRET = "whsec_test_fake_secret"
ADMIN_KEY = "test-admin-key"
PURCHASE_TIME = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePaymentProvider:
    """In-memory stand-in for StripeClient."""

    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.line_items: Dict[str, List[Dict[str, Any]]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.unavailable = False
        self.calls: List[str] = []

    def add_session(
        self, session: Dict[str, Any], line_items: Optional[List[Dict[str, Any]]] = None
    ) -> Dict[str, Any]:
        self.sessions[session["id"]] = session
        self.line_items[session["id"]] = line_items or []
        return session

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if self.unavailable:
            raise RemoteServiceUnavailable("stripe", "connection refused")

    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        self._check("retrieve_checkout_session")
        session = dict(self.sessions[session_id])
        session["line_items"] = {"data": self.line_items[session_id], "has_more": False}
        return session

    async def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        self._check("list_line_items")
        return list(self.line_items.get(session_id, []))

    async def list_checkout_sessions(self, created_gte: int, created_lt: int) -> List[Dict[str, Any]]:
        self._check("list_checkout_sessions")
        return [
            dict(s, line_items={"data": self.line_items[s["id"]], "has_more": False})
            for s in self.sessions.values()
            if created_gte <= s["created"] < created_lt
        ]

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        self._check("create_refund")
        if amount_cents is None:
            session = next(
                s for s in self.sessions.values() if s.get("payment_intent") == payment_intent_id
            )
            already = sum(r["amount"] for r in self.refunds if r["payment_intent"] == payment_intent_id)
            amount_cents = session["amount_total"] - already
        refund = {
            "id": f"re_{len(self.refunds) + 1}",
            "payment_intent": payment_intent_id,
            "amount": amount_cents,
            "status": "succeeded",
            "reason": reason,
        }
        self.refunds.append(refund)
        return refund

    async def list_refunds(self, payment_intent_id: str) -> List[Dict[str, Any]]:
        self._check("list_refunds")
        return [r for r in self.refunds if r["payment_intent"] == payment_intent_id]

    async def ping(self) -> None:
        self._check("ping")


class FakeBody:
    def __init__(self, data: bytes) -> None:
        self.data = data
        self.closed = False

    def iter_chunks(self, chunk_size: int) -> Any:
        for start in range(0, len(self.data), chunk_size):
            yield self.data[start:start + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeBlobStore:
    """In-memory stand-in for S3BlobStore."""

    def __init__(self, bucket: str = "downloads") -> None:
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.opened: List[FakeBody] = []
        self.unavailable = False

    def put(self, key: str, data: bytes) -> None:
        self.objects[key] = data

    async def list_files(self, master_file_path: str, extensions: Sequence[str]) -> List[BlobFile]:
        if self.unavailable:
            raise RemoteServiceUnavailable("blob_store", "endpoint unreachable")
        prefix = folder_prefix(master_file_path, self.bucket)
        files = []
        for key, data in self.objects.items():
            name = key[len(prefix):] if key.startswith(prefix) else ""
            if name and "/" not in name and name.lower().endswith(tuple(extensions)):
                files.append(BlobFile(name=name, key=key, size=len(data)))
        return sorted(files, key=lambda f: f.name)

    async def open_stream(self, key: str) -> BlobStream:
        if self.unavailable:
            raise RemoteServiceUnavailable("blob_store", "endpoint unreachable")
        if key not in self.objects:
            raise FileNotAvailable(f"Object not found: {key}")
        body = FakeBody(self.objects[key])
        self.opened.append(body)
        return BlobStream(body, content_length=len(body.data), content_type="audio/wav")

    async def ping(self) -> None:
        if self.unavailable:
            raise RemoteServiceUnavailable("blob_store", "endpoint unreachable")


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.confirmations: List[Any] = []
        self.operator_notices: List[Any] = []

    async def send_order_confirmation(self, order: Any, items: Any, tokens: Any) -> str:
        if self.fail:
            raise RuntimeError("SES is down")
        self.confirmations.append((order.payment_reference, len(items), len(tokens)))
        return "msg-1"

    async def send_operator_notification(self, order: Any, items: Any) -> str:
        self.operator_notices.append(order.payment_reference)
        return "msg-2"


class FakeProvisioner:
    def __init__(self, user_ref: str = "user_42", fail: bool = False) -> None:
        self.user_ref = user_ref
        self.fail = fail
        self.calls: List[Any] = []

    async def provision(self, email: str, name: Optional[str] = None) -> str:
        self.calls.append((email, name))
        if self.fail:
            raise RuntimeError("account service timed out")
        return self.user_ref


def stripe_line_item(
    description: str,
    amount_total: int,
    quantity: int = 1,
    product_id: Optional[str] = None,
) -> Dict[str, Any]:
    """A Stripe line item with ``price.product`` expanded."""
    metadata = {"product_id": product_id} if product_id else {}
    return {
        "id": "li_" + hashlib.sha1(description.encode()).hexdigest()[:12],
        "object": "item",
        "description": description,
        "quantity": quantity,
        "amount_total": amount_total,
        "price": {
            "id": "price_1",
            "unit_amount": amount_total // quantity,
            "metadata": {},
            "product": {"id": "prod_1", "name": description, "metadata": metadata},
        },
    }


def stripe_checkout_session(
    session_id: str,
    amount_total: int,
    created: datetime = PURCHASE_TIME,
    payment_status: str = "paid",
    payment_intent: Optional[str] = None,
    email: Optional[str] = "buyer@example.com",
    user_id: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "amount_subtotal": amount_total,
        "amount_total": amount_total,
        "currency": "eur",
        "created": int(created.timestamp()),
        "payment_status": payment_status,
        "payment_intent": payment_intent or f"pi_{session_id}",
        "customer_email": None,
        "customer_details": {"email": email, "name": "Test Buyer"},
        "metadata": {"user_id": user_id} if user_id else {},
    }


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def webhook_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(PURCHASE_TIME.timestamp()) + 5,
            "data": {"object": obj},
        }
    ).encode()


async def count_rows(session: AsyncSession, model: Type[Any]) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()
