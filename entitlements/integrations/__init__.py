"""External integrations: Stripe, blob store, email and account provisioning."""
from .accounts import AccountProvisioner
from .blob_store import S3BlobStore
from .notifications import SESNotifier
from .stripe_client import StripeClient
from .webhook_handler import WebhookHandler

__all__ = [
    "AccountProvisioner",
    "S3BlobStore",
    "SESNotifier",
    "StripeClient",
    "WebhookHandler",
]
