"""Core entitlement logic: fulfillment, catalog resolution, downloads, refunds and reconciliation."""
