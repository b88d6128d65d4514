"""
Health checks for the wallet service and its collaborators
(note database, indexer, relay, Solana RPC) plus process metrics
"""
import asyncio
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
import psutil

from cloak import config
from cloak.api.logging_config import get_logger

logger = get_logger("health")

# set at import; uptime is measured from here
API_START_TIME = time.time()

OK_STATUSES = ("healthy", "disabled", "not_configured")


async def check_database_health(bind=None) -> Dict[str, Any]:
    """
    Check note database connectivity

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    try:
        from cloak.database.config import test_connection

        start = time.time()
        await asyncio.to_thread(test_connection, bind)
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2)
        }
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e)
        }


async def check_service_health(
    name: str,
    base_url: str,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    GET <base_url>/health on an HTTP collaborator (indexer, relay)

    Args:
        name: Service name for logging
        base_url: Service root URL
        client: Optional shared client (tests inject a MockTransport client)

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    url = base_url.rstrip("/") + "/health"
    try:
        start = time.time()
        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as c:
                response = await c.get(url)
        else:
            response = await client.get(url)
        response.raise_for_status()
        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "url": base_url
        }
    except httpx.HTTPError as e:
        logger.error(f"{name} health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "url": base_url
        }


async def check_rpc_health(rpc_url: str, client: Optional[httpx.AsyncClient] = None) -> Dict[str, Any]:
    """
    Check Solana RPC connectivity

    Args:
        rpc_url: Solana RPC endpoint URL
        client: Optional shared client

    Returns:
        dict with status, response_time_ms, and error (if any)
    """
    body = {"jsonrpc": "2.0", "id": 1, "method": "getHealth"}
    try:
        start = time.time()

        if client is None:
            async with httpx.AsyncClient(timeout=5.0) as c:
                response = await c.post(rpc_url, json=body)
        else:
            response = await client.post(rpc_url, json=body)
        response.raise_for_status()
        payload = response.json()
        if isinstance(payload, dict) and payload.get("error"):
            raise httpx.HTTPError(str(payload["error"]))

        response_time = (time.time() - start) * 1000

        return {
            "status": "healthy",
            "response_time_ms": round(response_time, 2),
            "rpc_url": rpc_url
        }
    except (httpx.HTTPError, ValueError) as e:
        logger.error(f"RPC health check failed: {e}")
        return {
            "status": "unhealthy",
            "error": str(e),
            "rpc_url": rpc_url
        }


def get_system_metrics(data_dir: str = config.DATA_DIR) -> Dict[str, Any]:
    """
    Resource usage of this process and of the volume holding the note store

    Args:
        data_dir: Directory whose filesystem is reported (falls back to "/")

    Returns:
        dict with process CPU/RSS and data volume usage
    """
    try:
        proc = psutil.Process()
        volume = psutil.disk_usage(data_dir if os.path.isdir(data_dir) else "/")
        return {
            "process": {
                "cpu_percent": round(proc.cpu_percent(interval=0.1), 2),
                "rss_mb": round(proc.memory_info().rss / 2**20, 2),
                "open_files": len(proc.open_files()),
            },
            "data_volume": {
                "path": data_dir,
                "usage_percent": round(volume.percent, 2),
                "free_gb": round(volume.free / 2**30, 2),
            },
        }
    except (OSError, psutil.Error) as e:
        logger.error(f"Failed to get system metrics: {e}")
        return {"error": str(e)}


def get_uptime() -> Dict[str, Any]:
    """Seconds since import, plus a short "1d 2h" / "3h 4m" / "5m 6s" form"""
    elapsed = time.time() - API_START_TIME
    minutes, seconds = divmod(int(elapsed), 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        formatted = f"{days}d {hours}h"
    elif hours:
        formatted = f"{hours}h {minutes}m"
    else:
        formatted = f"{minutes}m {seconds}s"
    return {"uptime_seconds": round(elapsed, 2), "uptime_formatted": formatted}


async def comprehensive_health_check(
    database_enabled: bool,
    indexer_url: Optional[str] = None,
    relay_url: Optional[str] = None,
    rpc_url: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Dict[str, Any]:
    """
    Health of the note store and every external collaborator

    Args:
        database_enabled: Whether the SQL note store is in use
        indexer_url: Indexer root URL (skipped when None)
        relay_url: Relay root URL (skipped when None)
        rpc_url: Solana RPC URL (skipped when None)
        client: Optional shared httpx client

    Returns:
        dict with overall status and component statuses
    """
    checks: Dict[str, Any] = {}

    if database_enabled:
        checks["database"] = await check_database_health()
    else:
        checks["database"] = {"status": "disabled"}

    for name, url in (("indexer", indexer_url), ("relay", relay_url)):
        if url:
            checks[name] = await check_service_health(name, url, client)
        else:
            checks[name] = {"status": "not_configured"}

    if rpc_url:
        checks["rpc"] = await check_rpc_health(rpc_url, client)
    else:
        checks["rpc"] = {"status": "not_configured"}

    component_statuses = [checks[k].get("status") for k in ("database", "indexer", "relay", "rpc")]

    checks["system"] = get_system_metrics()
    checks["uptime"] = get_uptime()

    # Overall healthy if all enabled components are healthy
    overall_status = "healthy" if all(s in OK_STATUSES for s in component_statuses) else "unhealthy"

    return {
        "status": overall_status,
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "checks": checks
    }


async def liveness_check() -> bool:
    """Check if API is alive (basic health check)"""
    return True
