"""Daily idempotent background maintenance."""
