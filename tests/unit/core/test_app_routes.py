from unittest.mock import MagicMock

import pytest
from fastapi import APIRouter

from app.shared.core.app_routes import _validate_router_registry


def _router() -> APIRouter:
    router = APIRouter()

    @router.get("/ping")
    async def ping() -> dict[str, str]:
        return {"status": "ok"}

    return router


REQUIRED = ["/api/v1/billing", "/api/v1/campaigns", "/api/v1/consistency", "/api/v1/credits"]


def test_registry_accepts_the_required_prefixes():
    _validate_router_registry([(_router(), prefix) for prefix in REQUIRED])


def test_registry_rejects_missing_prefix():
    with pytest.raises(RuntimeError, match="missing required API prefixes: /api/v1/credits"):
        _validate_router_registry([(_router(), prefix) for prefix in REQUIRED[:3]])


def test_registry_rejects_duplicates_and_unknown_prefixes():
    routes = [(_router(), prefix) for prefix in REQUIRED]
    with pytest.raises(RuntimeError, match="Duplicate router prefix"):
        _validate_router_registry(routes + [(_router(), "/api/v1/credits")])
    with pytest.raises(RuntimeError, match="unexpected API prefixes: /api/v1/extra"):
        _validate_router_registry(routes + [(_router(), "/api/v1/extra")])


def test_registry_rejects_empty_router_and_relative_prefix():
    empty = MagicMock(routes=[])
    with pytest.raises(RuntimeError, match="empty router"):
        _validate_router_registry([(empty, "/api/v1/billing")])
    with pytest.raises(RuntimeError, match="must start with"):
        _validate_router_registry([(_router(), "api/v1/billing")])


@pytest.mark.asyncio
async def test_lifecycle_endpoints(async_client):
    root = await async_client.get("/")
    assert root.json()["status"] == "ok"

    live = await async_client.get("/health/live")
    assert live.json() == {"status": "healthy"}

    health = await async_client.get("/health")
    assert health.status_code == 200
    assert health.json()["database"]["status"] == "up"

    metrics = await async_client.get("/metrics")
    assert metrics.status_code == 200
    assert "creditline_system_health" in metrics.text


@pytest.mark.asyncio
async def test_request_id_is_echoed(async_client):
    response = await async_client.get("/health/live", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"
