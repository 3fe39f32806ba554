"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ImportRequest,
    ReconciliationResponse,
    RefundRequest,
    RefundResponse,
    WebhookResponse,
)

__all__ = [
    "create_app",
    "ImportRequest",
    "ReconciliationResponse",
    "RefundRequest",
    "RefundResponse",
    "WebhookResponse",
]
