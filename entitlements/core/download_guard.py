"""
Download authorization guard.

Checks are evaluated in a fixed order and the first failure wins:

1. token exists            -> TokenNotFound
2. token is active         -> TokenRevoked
3. now < expires_at        -> TokenExpired
4. downloads remain        -> TokenExhausted

A download is only counted by the conditional increment in
``EntitlementStore.consume_download``; the read-side checks above exist to
give precise errors, not to protect the limit.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from entitlements.core.exceptions import (
    DownloadDenied,
    FileNotAvailable,
    TokenExhausted,
    TokenExpired,
    TokenNotFound,
    TokenRevoked,
)
from entitlements.core.fulfillment import Clock
from entitlements.database.models import DownloadToken, Product, utcnow
from entitlements.database.store import CatalogRepository, EntitlementStore
from entitlements.integrations.blob_store import BlobFile, BlobStream
from entitlements.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ClientInfo:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class DownloadGrant:
    """An authorized, already counted download ready to be streamed."""

    file: BlobFile
    stream: BlobStream
    product_name: str
    downloads_remaining: int

    @property
    def attachment_name(self) -> str:
        return f"{self.product_name} - {self.file.name}"


@dataclass
class DownloadListing:
    product_name: str
    catalog_number: Optional[str]
    files: List[BlobFile]
    downloads_remaining: int
    expires_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product": {"name": self.product_name, "catalog_number": self.catalog_number},
            "files": [{"name": f.name, "size": f.size} for f in self.files],
            "downloads_remaining": self.downloads_remaining,
            "expires_at": self.expires_at.isoformat(),
        }


def check_token(token: Optional[DownloadToken], now: datetime) -> DownloadToken:
    """
    Apply the four authorization checks in order.

    Raises:
        TokenNotFound, TokenRevoked, TokenExpired, TokenExhausted
    """
    if token is None:
        raise TokenNotFound()
    if not token.is_active:
        raise TokenRevoked()
    if not now < token.expires_at:
        raise TokenExpired()
    if token.download_count >= token.max_downloads:
        raise TokenExhausted()
    return token


class DownloadGuard:
    """Validates and consumes download tokens."""

    def __init__(
        self,
        session: AsyncSession,
        blob_store: Any,
        extensions: Sequence[str],
        clock: Clock = utcnow,
    ) -> None:
        """
        Args:
            session: Database session; the guard commits it on success
            blob_store: Blob store collaborator (``list_files``, ``open_stream``)
            extensions: Extensions customers may download
            clock: Returns the current aware UTC time
        """
        self.session = session
        self.store = EntitlementStore(session)
        self.catalog = CatalogRepository(session)
        self.blob_store = blob_store
        self.extensions = list(extensions)
        self.clock = clock

    async def _authorize(self, token_value: str) -> DownloadToken:
        token = await self.store.get_token(token_value)
        try:
            return check_token(token, self.clock())
        except DownloadDenied as e:
            metrics.record_download_attempt(e.reason)
            logger.info(
                "download_denied",
                reason=e.reason,
                token_id=str(token.id) if token is not None else None,
            )
            raise

    async def _product_files(self, token: DownloadToken) -> Tuple[Product, List[BlobFile]]:
        product = await self.catalog.get_product(token.product_ref)
        if product is None or not product.master_file_path:
            logger.error(
                "download_product_missing",
                token_id=str(token.id),
                product_ref=token.product_ref,
            )
            raise FileNotAvailable("No files are registered for this product")
        files = await self.blob_store.list_files(product.master_file_path, self.extensions)
        return product, files

    async def list_files(self, token_value: str) -> DownloadListing:
        """
        Describe what a token grants without consuming it.

        Raises:
            DownloadDenied: If the token fails a check
            RemoteServiceUnavailable: If the blob store cannot be reached
        """
        token = await self._authorize(token_value)
        product, files = await self._product_files(token)
        return DownloadListing(
            product_name=product.name,
            catalog_number=product.catalog_number,
            files=files,
            downloads_remaining=token.downloads_remaining,
            expires_at=token.expires_at,
        )

    async def download(
        self,
        token_value: str,
        file_name: Optional[str] = None,
        client: Optional[ClientInfo] = None,
    ) -> DownloadGrant:
        """
        Authorize, count and open one download.

        Args:
            token_value: Opaque token from the download link
            file_name: Specific file; defaults to the first available one
            client: Caller IP and user agent for the audit log

        Returns:
            DownloadGrant: Open stream; the caller must close it

        Raises:
            DownloadDenied: If the token fails a check or the file is missing
            RemoteServiceUnavailable: If the blob store cannot be reached
        """
        client = client or ClientInfo()
        token = await self._authorize(token_value)
        product, files = await self._product_files(token)

        if file_name:
            selected = next((f for f in files if f.name == file_name), None)
        else:
            selected = files[0] if files else None
        if selected is None:
            metrics.record_download_attempt(FileNotAvailable.reason)
            raise FileNotAvailable(
                f"File not available: {file_name}" if file_name else "No files available"
            )

        stream = await self.blob_store.open_stream(selected.key)
        token_id = token.id

        try:
            now = self.clock()
            if not await self.store.consume_download(token.id, now):
                # Lost a race (or the token changed since the read); report why
                await self.store.refresh_token(token)
                check_token(token, now)
                raise TokenExhausted()

            await self.store.append_download_log(
                token,
                ip_address=client.ip_address,
                user_agent=client.user_agent,
                file_name=selected.name,
                now=now,
            )
            await self.session.commit()
        except DownloadDenied as e:
            stream.close()
            await self.session.rollback()
            metrics.record_download_attempt(e.reason)
            logger.info("download_denied", reason=e.reason, token_id=str(token_id))
            raise
        except Exception:
            stream.close()
            await self.session.rollback()
            raise

        await self.store.refresh_token(token)
        remaining = token.downloads_remaining
        metrics.record_download_attempt("success")
        logger.info(
            "download_authorized",
            token_id=str(token.id),
            product_ref=token.product_ref,
            file_name=selected.name,
            downloads_remaining=remaining,
        )
        return DownloadGrant(
            file=selected,
            stream=stream,
            product_name=product.name,
            downloads_remaining=remaining,
        )
