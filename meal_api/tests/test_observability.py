"""Tests for JSON logging, path normalisation and the metrics surface."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

import pytest
from prometheus_client import REGISTRY

from meal_api.middleware.json_formatter import JSONFormatter
from meal_api.middleware.prometheus import normalise_path, record_maintenance_report
from meal_engine.models.results import MaintenanceReport, MaintenanceSummary, TaskOutcome


def _record(msg: str, *args, exc_info=None, **extra) -> logging.LogRecord:
    record = logging.LogRecord("meal_api.test", logging.INFO, __file__, 1, msg, args, exc_info)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_basic_fields(self) -> None:
        line = JSONFormatter().format(_record("renewed %d group(s)", 3))

        payload = json.loads(line)
        assert payload["level"] == "INFO"
        assert payload["logger"] == "meal_api.test"
        assert payload["message"] == "renewed 3 group(s)"
        assert "exc_info" not in payload

    def test_structured_extras(self) -> None:
        line = JSONFormatter().format(_record("done", request={"method": "GET"}, group_id="g-1", unrelated="x"))

        payload = json.loads(line)
        assert payload["request"] == {"method": "GET"}
        assert payload["group_id"] == "g-1"
        assert "unrelated" not in payload

    def test_exception_is_rendered(self) -> None:
        try:
            raise RuntimeError("ledger unavailable")
        except RuntimeError:
            line = JSONFormatter().format(_record("task failed", exc_info=sys.exc_info()))

        assert "RuntimeError: ledger unavailable" in json.loads(line)["exc_info"]


class TestNormalisePath:
    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/api/v1/subscriptions/groups/0f8fad5bd9cb469fa16570867728950e", "/api/v1/subscriptions/groups/{id}"),
            ("/api/v1/vendors/v-1/capacity", "/api/v1/vendors/{id}/capacity"),
            ("/api/v1/credits/550e8400-e29b-41d4-a716-446655440000/void", "/api/v1/credits/{id}/void"),
            ("/api/v1/health", "/api/v1/health"),
        ],
    )
    def test_identifiers_collapse(self, path: str, expected: str) -> None:
        assert normalise_path(path) == expected


class TestMetrics:
    def test_maintenance_outcomes_counted(self) -> None:
        def sample(task: str, outcome: str) -> float:
            value = REGISTRY.get_sample_value(
                "mealcycle_maintenance_tasks_total", {"task": task, "outcome": outcome}
            )
            return value or 0.0

        before_ok = sample("order_backfill", "success")
        before_failed = sample("credit_expiry", "failure")
        before_orders = REGISTRY.get_sample_value("mealcycle_orders_generated_total") or 0.0

        record_maintenance_report(
            MaintenanceReport(
                timestamp=datetime(2024, 3, 4, 2, 0, tzinfo=UTC),
                success=False,
                results={
                    "order_backfill": TaskOutcome(success=True, result={"cycles": 1, "created": 4}),
                    "credit_expiry": TaskOutcome(success=False, error="boom"),
                },
                summary=MaintenanceSummary(total_tasks=2, successful=1, failed=1, has_errors=True),
            )
        )

        assert sample("order_backfill", "success") == before_ok + 1
        assert sample("credit_expiry", "failure") == before_failed + 1
        assert REGISTRY.get_sample_value("mealcycle_orders_generated_total") == before_orders + 4

    @pytest.mark.asyncio
    async def test_metrics_endpoint_is_public(self, client, seeded) -> None:
        await client.get("/api/v1/health")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "mealcycle_http_requests_total" in response.text
