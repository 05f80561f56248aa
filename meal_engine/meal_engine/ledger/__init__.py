"""Entitlement ledger: per-subscription credits and vendor-agnostic global credits."""
