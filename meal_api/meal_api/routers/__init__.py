"""API router modules."""

from __future__ import annotations

from meal_api.routers import credits, health, maintenance, metrics, payments, subscriptions, trials, vendors

__all__ = [
    "credits",
    "health",
    "maintenance",
    "metrics",
    "payments",
    "subscriptions",
    "trials",
    "vendors",
]
