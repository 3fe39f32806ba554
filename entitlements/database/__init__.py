"""Database package for the entitlements service."""
from .connection import Database, get_db, init_db
from .models import (
    Base,
    DownloadLog,
    DownloadToken,
    Order,
    OrderItem,
    Product,
    WebhookFailure,
)
from .store import CatalogRepository, EntitlementStore

__all__ = [
    "Base",
    "Database",
    "Order",
    "OrderItem",
    "DownloadToken",
    "DownloadLog",
    "Product",
    "WebhookFailure",
    "EntitlementStore",
    "CatalogRepository",
    "get_db",
    "init_db",
]
