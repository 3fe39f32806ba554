"""
API routes for webhooks, downloads, operator tasks and monitoring.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from entitlements.container import ServiceContainer
from entitlements.core.download_guard import ClientInfo, DownloadGuard
from entitlements.core.events import PaymentCompleted, RefundIssued
from entitlements.core.exceptions import (
    DownloadDenied,
    InvalidReconciliationWindow,
    OrderNotFound,
    ProviderRequestRejected,
    ReconciliationError,
    RemoteServiceUnavailable,
    SignatureInvalid,
    TransactionNotSettled,
)
from entitlements.core.fulfillment import OrderFulfillment
from entitlements.core.reconciliation import ReconciliationAuditor
from entitlements.core.revocation import RefundService, RevocationHandler
from entitlements.database.connection import get_db
from entitlements.database.store import EntitlementStore
from entitlements.integrations.webhook_handler import WebhookHandler
from entitlements.monitoring.health import HealthCheck

from .dependencies import client_ip, get_container, require_admin
from .schemas import (
    DownloadListingResponse,
    HealthCheckResponse,
    ImportRequest,
    ImportResponse,
    ReconciliationResponse,
    RefundRequest,
    RefundResponse,
    UnresolvedItemResponse,
    WebhookFailureResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
download_router = APIRouter(prefix="/download", tags=["downloads"])
admin_router = APIRouter(
    prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)]
)
monitoring_router = APIRouter(tags=["monitoring"])


def _fulfillment(session: AsyncSession, container: ServiceContainer) -> OrderFulfillment:
    return OrderFulfillment(
        session,
        container.settings,
        notifier=container.notifier,
        provisioner=container.provisioner,
        clock=container.clock,
    )


def _denied(exc: DownloadDenied) -> HTTPException:
    return HTTPException(
        status_code=exc.status_code, detail={"error": exc.reason, "message": str(exc)}
    )


def _unavailable(exc: RemoteServiceUnavailable) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": "service_unavailable", "service": exc.service},
    )


def content_disposition(filename: str) -> str:
    """``attachment`` header with an ASCII fallback and the UTF-8 name."""
    fallback = filename.encode("ascii", "ignore").decode().replace('"', "") or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename)}"


# Webhooks


async def _record_webhook_failure(
    container: ServiceContainer, event: Dict[str, Any], error: Exception
) -> None:
    """Persist the failure in a fresh session; the request session is unusable."""
    try:
        async with container.database.session() as session:
            await EntitlementStore(session).record_webhook_failure(
                event_id=event.get("id") or "unknown",
                event_type=event.get("type") or "unknown",
                error=f"{type(error).__name__}: {error}",
            )
            await session.commit()
    except SQLAlchemyError as e:
        logger.error(
            "webhook_failure_record_failed",
            event_id=event.get("id"),
            error=str(e),
        )


@webhook_router.post(
    "/payment",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Verify and process Stripe events",
)
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Only a bad signature is reported to Stripe as an error. Once the event is
    authentic it is acknowledged even if processing fails; failures are
    recorded for remediation instead of relying on redelivery.
    """
    body = await request.body()
    handler = WebhookHandler(container.settings, container.provider)

    try:
        event = handler.verify_signature(body, stripe_signature)
    except SignatureInvalid as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    async with container.database.session() as session:

        async def on_payment_completed(typed: PaymentCompleted) -> Dict[str, Any]:
            result = await _fulfillment(session, container).fulfill(typed)
            return {
                "order_id": str(result.order.id),
                "created": result.created,
                "tokens_issued": len(result.tokens),
            }

        async def on_refund_issued(typed: RefundIssued) -> Dict[str, Any]:
            result = await RevocationHandler(session, clock=container.clock).apply(typed)
            return result.to_dict()

        handler.register_handler("payment_completed", on_payment_completed)
        handler.register_handler("refund_issued", on_refund_issued)

        try:
            await handler.process_event(event)
        except Exception as e:
            await session.rollback()
            await _record_webhook_failure(container, event, e)

    return {"received": True}


# Downloads


def _guard(session: AsyncSession, container: ServiceContainer) -> DownloadGuard:
    return DownloadGuard(
        session,
        container.blob_store,
        container.settings.get_downloadable_extensions(),
        clock=container.clock,
    )


@download_router.get(
    "/{token}/files",
    response_model=DownloadListingResponse,
    summary="List downloadable files",
    description="Show what a download token grants without using a download",
)
async def list_download_files(
    token: str,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    try:
        listing = await _guard(db, container).list_files(token)
    except DownloadDenied as e:
        raise _denied(e)
    except RemoteServiceUnavailable as e:
        raise _unavailable(e)
    return listing.to_dict()


@download_router.get(
    "/{token}",
    summary="Download a file",
    description="Stream one purchased file; each call uses one download",
    response_class=StreamingResponse,
)
async def download_file(
    token: str,
    request: Request,
    file: Optional[str] = Query(default=None, description="File name; defaults to the first file"),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """
    Download a purchased file.

    Answers 404 for unknown tokens or files, 410 for expired tokens, 403 for
    revoked or exhausted tokens and 503 when the blob store is unreachable.
    """
    client = ClientInfo(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    try:
        grant = await _guard(db, container).download(token, file_name=file, client=client)
    except DownloadDenied as e:
        raise _denied(e)
    except RemoteServiceUnavailable as e:
        raise _unavailable(e)

    headers = {
        "Content-Disposition": content_disposition(grant.attachment_name),
        "Cache-Control": "no-store",
        "X-Downloads-Remaining": str(grant.downloads_remaining),
    }
    if grant.stream.content_length is not None:
        headers["Content-Length"] = str(grant.stream.content_length)

    return StreamingResponse(
        grant.stream.iter_chunks(),
        media_type=grant.stream.content_type,
        headers=headers,
        background=BackgroundTask(grant.stream.close),
    )


# Admin


@admin_router.post(
    "/refunds",
    response_model=RefundResponse,
    summary="Refund an order",
    description="Refund at Stripe, then revoke downloads on a full refund",
)
async def refund_order(
    request: RefundRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_request",
        order_id=str(request.order_id) if request.order_id else None,
        payment_reference=request.payment_reference,
        amount=str(request.amount) if request.amount is not None else None,
        reason=request.reason,
    )

    service = RefundService(db, container.provider, clock=container.clock)
    try:
        return await service.refund_order(
            order_id=request.order_id,
            payment_reference=request.payment_reference,
            amount=request.amount,
            reason=request.reason,
        )
    except OrderNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ProviderRequestRejected as e:
        logger.warning("api_refund_rejected", error=str(e), code=e.code)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteServiceUnavailable as e:
        raise _unavailable(e)


@admin_router.get(
    "/reconciliation",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Compare Stripe's ledger with local orders over [from, to)",
)
async def run_reconciliation(
    from_: Optional[datetime] = Query(default=None, alias="from"),
    to: Optional[datetime] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """
    Run reconciliation for a window.

    Defaults to the 30 days before now.
    """
    end = to or container.clock()
    start = from_ or end - timedelta(days=30)

    auditor = ReconciliationAuditor(
        db,
        container.provider,
        max_window_days=container.settings.reconciliation_max_window_days,
    )
    try:
        report = await auditor.audit(start, end)
    except InvalidReconciliationWindow as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    return report.to_dict()


@admin_router.post(
    "/reconciliation/import",
    response_model=ImportResponse,
    summary="Backfill an orphaned transaction",
    description="Create the order for a paid Stripe checkout session",
)
async def import_transaction(
    request: ImportRequest,
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    auditor = ReconciliationAuditor(
        db,
        container.provider,
        max_window_days=container.settings.reconciliation_max_window_days,
        fulfillment=_fulfillment(db, container),
    )
    try:
        result = await auditor.import_transaction(request.transaction_id)
    except TransactionNotSettled as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ProviderRequestRejected as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RemoteServiceUnavailable as e:
        raise _unavailable(e)

    return {
        "order_id": str(result.order.id),
        "created": result.created,
        "items": len(result.items),
        "tokens_issued": len(result.tokens),
        "unresolved_items": len(result.unresolved_items),
    }


@admin_router.get(
    "/unresolved-items",
    response_model=List[UnresolvedItemResponse],
    summary="Unresolved order items",
    description="Purchased lines that could not be matched to a catalog product",
)
async def unresolved_items(
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    rows = await EntitlementStore(db).unresolved_items(limit=limit)
    return [
        {
            "order_item_id": str(item.id),
            "order_id": str(order.id),
            "payment_reference": order.payment_reference,
            "product_name_snapshot": item.product_name_snapshot,
            "unit_price_snapshot": item.unit_price_snapshot,
            "quantity": item.quantity,
            "customer_email": order.customer_email,
            "created_at": item.created_at.isoformat(),
        }
        for item, order in rows
    ]


@admin_router.get(
    "/webhook-failures",
    response_model=List[WebhookFailureResponse],
    summary="Failed webhook events",
    description="Authentic events whose processing failed",
)
async def webhook_failures(
    limit: int = Query(default=100, ge=1, le=1000),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    failures = await EntitlementStore(db).webhook_failures(limit=limit)
    return [
        {
            "id": str(f.id),
            "event_id": f.event_id,
            "event_type": f.event_type,
            "error": f.error,
            "created_at": f.created_at.isoformat(),
        }
        for f in failures
    ]


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await HealthCheck(container).check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await HealthCheck(container).liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await HealthCheck(container).readiness()
    if result["status"] != "ready":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
