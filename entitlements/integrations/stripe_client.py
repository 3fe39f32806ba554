"""
Stripe API client with retry logic and comprehensive error handling.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Hard timeouts around every SDK call
- Pagination for list endpoints

The Stripe SDK is synchronous; calls run in a worker thread. Results are
returned as plain dicts so the rest of the service never depends on SDK
object types.
"""
import json
import time
from enum import Enum
from typing import Any, Callable, Dict, List, NoReturn, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from entitlements.config import Settings
from entitlements.core.exceptions import ProviderRequestRejected, RemoteServiceUnavailable
from entitlements.integrations.resilience import CircuitBreaker, run_blocking
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SERVICE = "stripe"
PAGE_SIZE = 100

_provider_retry = retry(
    retry=retry_if_exception_type(RemoteServiceUnavailable),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    reraise=True,
)


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


def to_plain(obj: Any) -> Any:
    """Convert a Stripe SDK object into plain JSON-compatible data."""
    if isinstance(obj, stripe.StripeObject):
        return json.loads(str(obj))
    return obj


class StripeClient:
    """
    Payment provider client backed by Stripe.

    Uses per-request API keys, so several clients with different keys can
    coexist in one process.
    """

    def __init__(
        self,
        settings: Settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Stripe client.

        Args:
            settings: Application settings
            circuit_breaker: Optional breaker; one is created when omitted
        """
        self.settings = settings
        self.timeout = settings.stripe_timeout_seconds
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            SERVICE, ignored_exceptions=(ProviderRequestRejected,)
        )
        self._request_options = {
            "api_key": settings.stripe_secret_key,
            "stripe_version": settings.stripe_api_version,
        }

        logger.info(
            "stripe_client_initialized",
            api_version=settings.stripe_api_version,
            test_mode=settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _handle_stripe_error(self, error: stripe.StripeError, operation: str) -> NoReturn:
        """
        Translate a Stripe error into the service's error types.

        Raises:
            ProviderRequestRejected: For permanent errors
            RemoteServiceUnavailable: For transient and rate-limit errors
        """
        error_type = self._classify_error(error)
        metrics.record_stripe_api_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        if error_type == StripeErrorType.PERMANENT:
            raise ProviderRequestRejected(
                str(error), code=getattr(error, "code", None), original_error=error
            )
        raise RemoteServiceUnavailable(SERVICE, str(error), error)

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any, **params: Any) -> Any:
        """
        Run one SDK call under the circuit breaker and timeout.

        Args:
            operation: Name used in logs and metrics
            func: Stripe SDK callable
            *args: Positional arguments for the SDK call
            **params: Request parameters

        Returns:
            Any: The SDK result converted to plain data
        """
        start_time = time.time()

        async def _invoke() -> Any:
            try:
                return await run_blocking(
                    SERVICE, func, *args, timeout=self.timeout, **params, **self._request_options
                )
            except stripe.StripeError as e:
                self._handle_stripe_error(e, operation)

        try:
            result = await self.circuit_breaker.call(_invoke)
        except (RemoteServiceUnavailable, ProviderRequestRejected):
            metrics.record_remote_call(SERVICE, operation, "error", time.time() - start_time)
            raise

        metrics.record_remote_call(SERVICE, operation, "success", time.time() - start_time)
        return to_plain(result)

    async def _list_all(
        self, operation: str, func: Callable[..., Any], *args: Any, **params: Any
    ) -> List[Dict[str, Any]]:
        """Follow ``has_more`` / ``starting_after`` until the list is exhausted."""
        items: List[Dict[str, Any]] = []
        starting_after: Optional[str] = None

        while True:
            page_params = dict(params, limit=PAGE_SIZE)
            if starting_after:
                page_params["starting_after"] = starting_after

            page = await self._call(operation, func, *args, **page_params)
            data = page.get("data") or []
            items.extend(data)

            if not page.get("has_more") or not data:
                break
            starting_after = data[-1]["id"]

        return items

    @_provider_retry
    async def retrieve_checkout_session(self, session_id: str) -> Dict[str, Any]:
        """
        Retrieve a checkout session with its line items and products expanded.

        Args:
            session_id: Checkout session id (cs_...)

        Returns:
            Dict[str, Any]: Checkout session

        Raises:
            RemoteServiceUnavailable: If Stripe cannot be reached
            ProviderRequestRejected: If the session does not exist
        """
        logger.info("retrieving_checkout_session", session_id=session_id)
        return await self._call(
            "retrieve_checkout_session",
            stripe.checkout.Session.retrieve,
            session_id,
            expand=["line_items.data.price.product"],
        )

    @_provider_retry
    async def list_line_items(self, session_id: str) -> List[Dict[str, Any]]:
        """
        List every line item of a checkout session, product expanded.

        Args:
            session_id: Checkout session id

        Returns:
            List[Dict[str, Any]]: Line items
        """
        return await self._list_all(
            "list_line_items",
            stripe.checkout.Session.list_line_items,
            session_id,
            expand=["data.price.product"],
        )

    @_provider_retry
    async def list_checkout_sessions(
        self, created_gte: int, created_lt: int
    ) -> List[Dict[str, Any]]:
        """
        List checkout sessions created in ``[created_gte, created_lt)``.

        Args:
            created_gte: Start timestamp (Unix, inclusive)
            created_lt: End timestamp (Unix, exclusive)

        Returns:
            List[Dict[str, Any]]: Sessions with ``line_items`` expanded
        """
        logger.info(
            "listing_checkout_sessions",
            created_gte=created_gte,
            created_lt=created_lt,
        )
        return await self._list_all(
            "list_checkout_sessions",
            stripe.checkout.Session.list,
            created={"gte": created_gte, "lt": created_lt},
            expand=["data.line_items"],
        )

    @_provider_retry
    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: Optional[int] = None,
        reason: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Create a refund for a payment.

        Args:
            payment_intent_id: Stripe PaymentIntent ID
            amount_cents: Optional partial refund amount
            reason: Optional refund reason
            idempotency_key: Optional idempotency key
            metadata: Optional metadata stored on the refund

        Returns:
            Dict[str, Any]: Created refund

        Raises:
            RemoteServiceUnavailable: If Stripe cannot be reached
            ProviderRequestRejected: If Stripe refuses the refund
        """
        logger.info(
            "creating_refund",
            payment_intent_id=payment_intent_id,
            amount_cents=amount_cents,
        )

        params: Dict[str, Any] = {"payment_intent": payment_intent_id}
        if amount_cents:
            params["amount"] = amount_cents
        if reason:
            params["reason"] = reason
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        if metadata:
            params["metadata"] = metadata

        refund = await self._call("create_refund", stripe.Refund.create, **params)

        logger.info(
            "refund_created",
            refund_id=refund.get("id"),
            status=refund.get("status"),
            amount_cents=refund.get("amount"),
        )
        return refund

    @_provider_retry
    async def list_refunds(self, payment_intent_id: str) -> List[Dict[str, Any]]:
        """
        List every refund of a payment intent.

        Args:
            payment_intent_id: Stripe PaymentIntent ID

        Returns:
            List[Dict[str, Any]]: Refunds, newest first
        """
        return await self._list_all(
            "list_refunds", stripe.Refund.list, payment_intent=payment_intent_id
        )

    async def ping(self) -> None:
        """Cheap authenticated call used by health checks."""
        await self._call("retrieve_balance", stripe.Balance.retrieve)
