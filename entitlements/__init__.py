"""Purchase entitlements for digital downloads: Stripe fulfillment, download tokens, refunds and reconciliation."""

__version__ = "1.0.0"
