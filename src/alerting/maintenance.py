"""
Background maintenance for alerts.

Periodically reopens alerts whose suppression has expired and latches SLA
breaches, across every tenant known to the registry.
"""

import asyncio
import logging
from typing import Dict, Optional

from .service import TenantRegistry

logger = logging.getLogger(__name__)


class MaintenanceLoop:
    """Runs the suppression and SLA sweeps on a fixed interval."""

    def __init__(self, registry: TenantRegistry, interval_seconds: float = 60.0):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """Start the sweep loop in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Alert maintenance loop started (every {self.interval_seconds:g}s)")

    async def stop(self) -> None:
        """Stop the loop and wait for the current sweep to end."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Alert maintenance loop stopped")

    def run_once(self) -> Dict[str, int]:
        """
        Sweep every tenant once.

        Returns:
            Counts of unsuppressed alerts and newly recorded SLA breaches
        """
        unsuppressed = breached = 0
        for service in self.registry.all():
            unsuppressed += len(service.release_expired_suppressions())
            breached += len(service.check_sla_breaches())
        return {"unsuppressed": unsuppressed, "sla_breaches": breached}

    async def _loop(self) -> None:
        while self._running:
            try:
                self.run_once()
            except Exception as e:
                logger.error(f"Alert maintenance sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)


__all__ = ["MaintenanceLoop"]
