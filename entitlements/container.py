"""
Process-wide collaborators.

The API and the reconciliation worker both build one ServiceContainer at
startup; request handlers construct the core components per request from it
together with their own database session.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from entitlements.config import Settings
from entitlements.database.connection import Database
from entitlements.database.models import utcnow
from entitlements.integrations.accounts import AccountProvisioner
from entitlements.integrations.blob_store import S3BlobStore
from entitlements.integrations.notifications import SESNotifier
from entitlements.integrations.stripe_client import StripeClient

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    database: Database
    provider: Any
    blob_store: Any
    notifier: Optional[Any] = None
    provisioner: Optional[Any] = None
    clock: Callable[[], datetime] = field(default=utcnow)

    @classmethod
    def build(cls, settings: Settings) -> "ServiceContainer":
        """
        Wire the production collaborators from settings.

        Email and account provisioning are optional and only built when
        configured.
        """
        notifier = SESNotifier(settings) if settings.notifications_enabled else None
        provisioner = None
        if settings.account_service_url:
            provisioner = AccountProvisioner(
                settings.account_service_url,
                token=settings.account_service_token,
                timeout=settings.account_service_timeout_seconds,
            )

        logger.info(
            "service_container_built",
            notifications_enabled=notifier is not None,
            provisioning_enabled=provisioner is not None,
        )
        return cls(
            settings=settings,
            database=Database.from_settings(settings),
            provider=StripeClient(settings),
            blob_store=S3BlobStore(settings),
            notifier=notifier,
            provisioner=provisioner,
        )

    async def aclose(self) -> None:
        """Release connections held by the collaborators."""
        if self.provisioner is not None and hasattr(self.provisioner, "aclose"):
            await self.provisioner.aclose()
        await self.database.dispose()
