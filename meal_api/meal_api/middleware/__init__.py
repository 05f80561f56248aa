"""Middleware components for the meal subscription API."""

from __future__ import annotations

from meal_api.middleware.auth import AuthenticationMiddleware
from meal_api.middleware.logging import RequestLoggingMiddleware
from meal_api.middleware.prometheus import PrometheusMiddleware
from meal_api.middleware.rbac import get_actor, require_capability

__all__ = [
    "AuthenticationMiddleware",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "get_actor",
    "require_capability",
]
