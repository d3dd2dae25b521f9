"""Health check endpoints.

This module provides Kubernetes-compatible health check endpoints:
- /healthz: Liveness probe (simple alive check)
- /readyz: Readiness probe (checks the database and the Solana RPC node)

All health checks are designed to be fast and lightweight.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.engine import Engine

from refpay.crypto.interfaces import LedgerClient
from refpay.logging_config import get_logger

logger = get_logger("health")


class HealthStatus(str, Enum):
    """Health check status values."""

    OK = "ok"
    TIMEOUT = "timeout"
    ERROR = "error"


@dataclass
class HealthCheckResult:
    """Result of a health check operation.

    Attributes:
        status: Health status (OK, TIMEOUT, or ERROR)
        message: Optional human-readable message
        latency_ms: Response time in milliseconds
    """

    status: HealthStatus
    message: str | None = None
    latency_ms: float | None = None


class ReadinessResponse(BaseModel):
    """Response model for /readyz endpoint."""

    status: str = Field(..., description="Readiness status")
    dependencies: dict[str, str] = Field(..., description="Dependency statuses")


async def _timed_check(
    name: str, probe: Callable[[], Awaitable[object]], timeout: float
) -> HealthCheckResult:
    start_time = time.perf_counter()
    try:
        await asyncio.wait_for(probe(), timeout=timeout)
    except TimeoutError:
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.warning(
            "health_check_timeout",
            dependency=name,
            timeout_seconds=timeout,
            latency_ms=latency_ms,
        )
        return HealthCheckResult(
            status=HealthStatus.TIMEOUT,
            message=f"Timeout after {timeout}s",
            latency_ms=latency_ms,
        )
    except Exception as e:
        latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
        logger.error(
            "health_check_error",
            dependency=name,
            error=str(e),
            latency_ms=latency_ms,
        )
        return HealthCheckResult(
            status=HealthStatus.ERROR, message=str(e), latency_ms=latency_ms
        )

    latency_ms = round((time.perf_counter() - start_time) * 1000, 2)
    logger.debug("health_check_ok", dependency=name, latency_ms=latency_ms)
    return HealthCheckResult(status=HealthStatus.OK, latency_ms=latency_ms)


async def check_database_health(engine: Engine, timeout: float) -> HealthCheckResult:
    """Runs ``SELECT 1`` in a worker thread so the event loop stays free."""

    def ping() -> None:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    return await _timed_check("database", lambda: asyncio.to_thread(ping), timeout)


async def check_ledger_health(ledger: LedgerClient, timeout: float) -> HealthCheckResult:
    """A blockhash fetch exercises the same RPC path transaction building uses."""
    return await _timed_check("ledger", ledger.get_latest_blockhash, timeout)


def register_health_endpoints(
    app: FastAPI,
    health_check_timeout: float,
    slow_threshold_ms: float = 100.0,
) -> None:
    """Register health check endpoints on FastAPI application.

    Dependencies are read from ``app.state.services`` at request time, so the
    endpoints can be registered before the lifespan wires them.

    Args:
        app: FastAPI application instance
        health_check_timeout: Timeout for each dependency check in seconds
        slow_threshold_ms: Log warning if the readiness check exceeds this duration
    """

    @app.get("/healthz")
    async def liveness() -> dict[str, str]:
        """Liveness probe endpoint. Always {"status": "ok"} while the process serves."""
        return {"status": "ok"}

    @app.get("/readyz", response_model=ReadinessResponse)
    async def readiness():
        """Readiness probe endpoint.

        Returns 503 if the database or the RPC node is unhealthy, so the pod
        is taken out of load balancer rotation.
        """
        services = app.state.services
        start_time = time.perf_counter()

        checks: dict[str, HealthCheckResult] = {}
        if services.engine is not None:
            checks["database"] = await check_database_health(
                services.engine, health_check_timeout
            )
        checks["ledger"] = await check_ledger_health(
            services.ledger, health_check_timeout
        )

        check_duration_ms = (time.perf_counter() - start_time) * 1000
        if check_duration_ms > slow_threshold_ms:
            logger.warning(
                "readiness_check_slow",
                duration_ms=round(check_duration_ms, 2),
                threshold_ms=slow_threshold_ms,
            )

        dependencies = {name: result.status.value for name, result in checks.items()}
        if any(result.status != HealthStatus.OK for result in checks.values()):
            logger.info(
                "readiness_check_not_ready",
                dependencies=dependencies,
                duration_ms=round(check_duration_ms, 2),
            )
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "dependencies": dependencies},
            )

        return ReadinessResponse(status="ready", dependencies=dependencies)
