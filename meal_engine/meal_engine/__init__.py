"""Billing-cycle and fulfillment engine for recurring meal subscriptions."""

__version__ = "0.4.0"
