"""Tests for bearer authentication, capability guards and error rendering."""

from __future__ import annotations

import os
import time

import pytest
from pydantic import SecretStr

from meal_api.security import TokenManager


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_header(self, client, seeded) -> None:
        response = await client.get("/api/v1/credits")

        assert response.status_code == 401
        assert response.json()["error_code"] == "NOT_AUTHENTICATED"

    @pytest.mark.asyncio
    async def test_wrong_scheme(self, client, seeded) -> None:
        response = await client.get("/api/v1/credits", headers={"Authorization": "Basic YWxhZGRpbjpvcGVu"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_foreign_signature(self, client, seeded) -> None:
        token = TokenManager(SecretStr("not-the-server-secret")).generate_token("c-1", "consumer")

        response = await client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 401
        assert response.json()["detail"].startswith("Invalid token")

    @pytest.mark.asyncio
    async def test_expired_token(self, client, seeded) -> None:
        manager = TokenManager(SecretStr(os.environ["AUTH_TOKEN_SECRET"]), ttl_seconds=60)
        token = manager.generate_token("c-1", "consumer", now=time.time() - 3600)

        response = await client.get("/api/v1/credits", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 403
        assert response.json()["detail"] == "Token has expired"

    @pytest.mark.asyncio
    async def test_public_paths_skip_auth(self, client, seeded) -> None:
        assert (await client.get("/api/v1/health")).status_code == 200
        assert (await client.get("/ready")).status_code == 200

    @pytest.mark.asyncio
    async def test_correlation_id_echoed(self, client, seeded) -> None:
        response = await client.get("/api/v1/health", headers={"X-Correlation-ID": "corr-42"})
        assert response.headers["X-Correlation-ID"] == "corr-42"


class TestCapabilityGuards:
    @pytest.mark.asyncio
    async def test_unknown_role(self, client, seeded, make_headers) -> None:
        response = await client.get("/api/v1/credits", headers=make_headers("c-1", "superuser"))

        assert response.status_code == 403
        assert response.json()["error_code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_missing_capability(self, client, seeded, headers) -> None:
        response = await client.get("/api/v1/credits", headers=headers["vendor"])

        assert response.status_code == 403
        body = response.json()
        assert body["error_code"] == "UNAUTHORIZED"
        assert body["context"] == {"capability": "read:subscriptions", "role": "vendor"}

    @pytest.mark.asyncio
    async def test_not_found_rendering(self, client, seeded, headers) -> None:
        response = await client.get("/api/v1/subscriptions/groups/missing", headers=headers["consumer"])

        assert response.status_code == 404
        assert response.json() == {
            "detail": "subscription_group 'missing' not found",
            "error_code": "NOT_FOUND",
            "context": {"entity": "subscription_group", "id": "missing"},
        }
