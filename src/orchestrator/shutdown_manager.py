"""
Graceful shutdown management for the MCP HTTP adapter.

Runs from the application lifespan, so it is triggered by the SIGINT /
SIGTERM handling uvicorn already installs (a second signal forces exit).

- Stops accepting new requests
- Drains in-flight requests before terminating
- Clean subprocess cleanup
"""

import asyncio
import logging
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .lifecycle_manager import LifecycleManager

logger = logging.getLogger(__name__)


class ShutdownManager:
    """
    Manages graceful shutdown sequence.

    1. Stop accepting new work (lifecycle -> stopping)
    2. Wait for in-flight requests to drain (with timeout)
    3. Terminate the MCP server; anything still pending fails with
       ProcessUnavailableError
    """

    def __init__(
        self,
        lifecycle_manager: 'LifecycleManager',
        drain_timeout: float = 10.0,
        check_interval: float = 0.05
    ):
        """
        Initialize shutdown manager.

        Args:
            lifecycle_manager: LifecycleManager instance
            drain_timeout: Seconds to wait for request drain
            check_interval: Poll interval while draining
        """
        self.lifecycle_manager = lifecycle_manager
        self.drain_timeout = drain_timeout
        self.check_interval = check_interval
        self._shutdown_in_progress = False

    async def graceful_shutdown(self) -> bool:
        """
        Execute graceful shutdown sequence.

        Returns:
            True if every in-flight request drained before the subprocess
            was stopped
        """
        if self._shutdown_in_progress:
            logger.warning("Shutdown already in progress")
            return False
        self._shutdown_in_progress = True

        logger.info("Step 1/3: Refusing new requests...")
        self.lifecycle_manager.begin_stopping()

        logger.info(f"Step 2/3: Draining in-flight requests (timeout: {self.drain_timeout:g}s)...")
        drained = await self._wait_for_drain()
        if drained:
            logger.info("All requests drained successfully")
        else:
            active = self.lifecycle_manager.active_requests
            logger.warning(f"Drain timeout - {active} requests still active, proceeding with shutdown")

        logger.info("Step 3/3: Stopping MCP server...")
        try:
            await self.lifecycle_manager.stop()
        except Exception as e:
            logger.error(f"MCP server stop error: {e}")

        logger.info("Graceful shutdown complete")
        return drained

    async def _wait_for_drain(self) -> bool:
        """
        Wait for all in-flight requests to complete.

        Polls lifecycle_manager.active_requests until 0 or timeout.

        Returns:
            True if all requests drained, False if timeout
        """
        start_time = time.monotonic()
        last_log_time = start_time

        while time.monotonic() - start_time < self.drain_timeout:
            active = self.lifecycle_manager.active_requests
            if active == 0:
                elapsed = time.monotonic() - start_time
                logger.info(f"Drain complete in {elapsed:.1f}s")
                return True

            # Log progress every 5 seconds
            now = time.monotonic()
            if now - last_log_time >= 5.0:
                remaining = self.drain_timeout - (now - start_time)
                logger.info(f"Draining: {active} active request(s), {remaining:.0f}s remaining")
                last_log_time = now

            await asyncio.sleep(self.check_interval)

        return self.lifecycle_manager.active_requests == 0
