"""Subscription group provisioning, skips and lifecycle transitions."""
