"""
Order emails sent through AWS SES.

Plain-text bodies only: template rendering belongs to the storefront, this
service only needs to hand customers their download links and tell the
operator a sale happened.
"""
from typing import Any, Dict, List, Optional, Sequence

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from entitlements.config import Settings
from entitlements.database.models import DownloadToken, Order, OrderItem
from entitlements.integrations.resilience import run_blocking

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when an email could not be handed to SES."""

    pass


class SESNotifier:
    """Email notifier using AWS Simple Email Service."""

    def __init__(self, settings: Settings, client: Any = None) -> None:
        self.sender = settings.email_sender
        self.operator_email = settings.operator_email
        self.site_url = settings.site_url.rstrip("/")
        self.timeout = settings.ses_timeout_seconds
        self._client = client or boto3.client(
            "ses",
            region_name=settings.ses_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    def download_url(self, token: str) -> str:
        return f"{self.site_url}/download/{token}"

    async def _send(self, to_address: str, subject: str, body_text: str) -> str:
        send_params: Dict[str, Any] = {
            "Source": self.sender,
            "Destination": {"ToAddresses": [to_address]},
            "Message": {
                "Subject": {"Data": subject, "Charset": "UTF-8"},
                "Body": {"Text": {"Data": body_text, "Charset": "UTF-8"}},
            },
        }
        try:
            response = await run_blocking(
                "ses", self._client.send_email, timeout=self.timeout, **send_params
            )
        except (ClientError, BotoCoreError) as e:
            raise NotificationError(f"SES send failed: {e}") from e

        message_id = response.get("MessageId", "")
        logger.info("email_sent", message_id=message_id, subject=subject)
        return message_id

    async def send_order_confirmation(
        self,
        order: Order,
        items: Sequence[OrderItem],
        tokens: Sequence[DownloadToken],
    ) -> Optional[str]:
        """
        Email the customer their download links.

        Returns:
            Optional[str]: SES message id, or None when the order has no email
        """
        if not order.customer_email:
            return None

        tokens_by_item = {token.order_item_id: token for token in tokens}
        lines: List[str] = [
            f"Hello {order.customer_name or ''}".rstrip() + ",",
            "",
            "Thank you for your purchase. Your downloads:",
            "",
        ]
        for item in items:
            token = tokens_by_item.get(item.id)
            if token is None:
                lines.append(f"- {item.product_name_snapshot}: we will email your link shortly")
                continue
            lines.append(f"- {item.product_name_snapshot}: {self.download_url(token.token)}")
            lines.append(
                f"  {token.max_downloads} downloads, valid until {token.expires_at:%Y-%m-%d}"
            )
        lines += ["", f"Order total: {order.total} {order.currency.upper()}"]

        return await self._send(
            order.customer_email,
            "Your download links",
            "\n".join(lines),
        )

    async def send_operator_notification(
        self, order: Order, items: Sequence[OrderItem]
    ) -> Optional[str]:
        """Tell the operator about a new order. No-op when no operator address is set."""
        if not self.operator_email:
            return None

        lines = [
            f"New order {order.payment_reference}",
            f"Customer: {order.customer_name or '-'} <{order.customer_email or '-'}>",
            f"Total: {order.total} {order.currency.upper()}",
            "",
        ]
        for item in items:
            flag = "" if item.product_ref else "  [UNRESOLVED]"
            lines.append(
                f"- {item.quantity} x {item.product_name_snapshot} "
                f"@ {item.unit_price_snapshot}{flag}"
            )

        return await self._send(
            self.operator_email,
            f"New order {order.payment_reference}",
            "\n".join(lines),
        )
