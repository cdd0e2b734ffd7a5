"""Health check utilities for the MCP HTTP adapter.

Provides component-level health checks for the MCP server subprocess and
host memory. Used by the /status endpoint.
"""

import logging
from typing import Any, Dict, Optional

import psutil

logger = logging.getLogger(__name__)


def check_memory_health() -> Dict[str, Any]:
    """Check system memory usage.

    Returns:
        Dict with 'percent_used', 'healthy', 'available_gb', 'total_gb'
    """
    mem = psutil.virtual_memory()
    return {
        "percent_used": mem.percent,
        "healthy": mem.percent < 90,
        "available_gb": mem.available / (1024**3),
        "total_gb": mem.total / (1024**3)
    }


def check_process_resources(pid: Optional[int]) -> Dict[str, Any]:
    """Resident memory and process count of the MCP server process tree.

    The filesystem server is usually launched through npx, so the node
    process doing the work is a child of the pid we spawned.

    Args:
        pid: PID of the spawned subprocess (None if not running)

    Returns:
        Dict with 'alive', 'rss_mb', 'num_processes', and optional 'error'
    """
    if pid is None:
        return {"alive": False, "rss_mb": 0.0, "num_processes": 0}

    try:
        root = psutil.Process(pid)
        procs = [root] + root.children(recursive=True)
        rss = 0
        for proc in procs:
            try:
                rss += proc.memory_info().rss
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
        return {
            "alive": root.is_running(),
            "rss_mb": round(rss / (1024**2), 1),
            "num_processes": len(procs)
        }
    except psutil.NoSuchProcess:
        return {"alive": False, "rss_mb": 0.0, "num_processes": 0}
    except Exception as e:
        logger.debug(f"Process resource check failed: {e}")
        return {"alive": False, "error": str(e)}


def check_subprocess_health(lifecycle_manager) -> Dict[str, Any]:
    """Check MCP server subprocess health.

    Args:
        lifecycle_manager: LifecycleManager instance

    Returns:
        Dict with 'alive', 'status', 'pid', plus process resources
    """
    try:
        health = lifecycle_manager.health_check()
        return {
            "alive": health["healthy"],
            "status": health["status"],
            "pid": health["pid"],
            "resources": check_process_resources(health["pid"])
        }
    except Exception as e:
        logger.error(f"Subprocess health check failed: {e}")
        return {
            "alive": False,
            "status": "error",
            "error": str(e)
        }
