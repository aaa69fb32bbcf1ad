from typing import Any

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, Gauge, generate_latest

from app.shared.db.session import health_check as db_health_check

SYSTEM_HEALTH = Gauge(
    "creditline_system_health",
    "System health status (1=healthy, 0=unhealthy)",
)

_REQUIRED_API_PREFIXES = {
    "/api/v1/billing",
    "/api/v1/campaigns",
    "/api/v1/consistency",
    "/api/v1/credits",
}


def _validate_router_registry(routes: list[tuple[Any, str]]) -> None:
    seen_prefixes: set[str] = set()
    for router, prefix in routes:
        route_list = getattr(router, "routes", None)
        if not isinstance(route_list, list) or not route_list:
            raise RuntimeError("Router registry includes an empty router definition")
        normalized_prefix = prefix.strip()
        if not normalized_prefix.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        if normalized_prefix in seen_prefixes:
            raise RuntimeError(f"Duplicate router prefix registered: {normalized_prefix}")
        seen_prefixes.add(normalized_prefix)

    missing_prefixes = sorted(_REQUIRED_API_PREFIXES - seen_prefixes)
    if missing_prefixes:
        raise RuntimeError(
            "Router registry is missing required API prefixes: "
            + ", ".join(missing_prefixes)
        )

    unexpected_prefixes = sorted(seen_prefixes - _REQUIRED_API_PREFIXES)
    if unexpected_prefixes:
        raise RuntimeError(
            "Router registry includes unexpected API prefixes: "
            + ", ".join(unexpected_prefixes)
        )


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Register lifecycle, health and metrics endpoints."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        """Root endpoint for basic reachability."""
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Fast liveness check without dependencies."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def health_check() -> Any:
        """Readiness check for load balancers. 503 when the database is down."""
        database = await db_health_check()
        healthy = database["status"] == "up"
        SYSTEM_HEALTH.set(1.0 if healthy else 0.0)
        health = {
            "status": "healthy" if healthy else "unhealthy",
            "database": database,
        }
        if not healthy:
            return JSONResponse(status_code=503, content=health)
        return health

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


def register_api_routers(app: FastAPI) -> None:
    """Register API route modules in one place to keep app entrypoint focused."""
    from app.modules.audit.api.v1.consistency import router as consistency_router
    from app.modules.billing.api.v1.billing import router as billing_router
    from app.modules.ledger.api.v1.credits import router as credits_router
    from app.modules.seasonal.api.v1.campaigns import router as campaigns_router

    routes: list[tuple[Any, str]] = [
        (billing_router, "/api/v1/billing"),
        (credits_router, "/api/v1/credits"),
        (campaigns_router, "/api/v1/campaigns"),
        (consistency_router, "/api/v1/consistency"),
    ]

    _validate_router_registry(routes)

    for router, prefix in routes:
        app.include_router(router, prefix=prefix)
