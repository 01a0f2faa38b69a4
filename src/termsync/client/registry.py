"""Executor registry: at most one TerminalExecutor per endpoint.

The registry owns executor lifecycles. It creates an executor the first
time an endpoint is addressed, disposes it when the endpoint goes away,
and tells listeners (the storage state machine) about removals.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from termsync.client.executor import TerminalExecutor
from termsync.core.config import ExecutorConfig

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Iterator

    from termsync.core.config import Endpoint

logger = logging.getLogger(__name__)


class ExecutorRegistry:
    """Maps endpoint ids to their executors.

    Usage:
        registry = ExecutorRegistry()
        registry.on_removed(integration.remove_server)
        executor = registry.get_or_create(endpoint)
        ...
        await registry.sync_endpoints(current_endpoints)
        await registry.dispose()
    """

    def __init__(self, config: ExecutorConfig | None = None) -> None:
        """Initialize the registry.

        Args:
            config: Executor configuration passed to every new executor.
        """
        self._config = config or ExecutorConfig()
        self._executors: dict[str, TerminalExecutor] = {}
        self._removal_callbacks: list[Callable[[str], None]] = []

    def __contains__(self, endpoint_id: object) -> bool:
        return endpoint_id in self._executors

    def __len__(self) -> int:
        return len(self._executors)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._executors))

    def on_removed(self, callback: Callable[[str], None]) -> None:
        """Register a callback invoked with the endpoint id on removal."""
        self._removal_callbacks.append(callback)

    def get_or_create(self, endpoint: Endpoint) -> TerminalExecutor:
        """Get the executor for an endpoint, creating it if needed."""
        existing = self._executors.get(endpoint.id)
        if existing is not None and not existing.is_disposed:
            logger.debug("Using existing executor for endpoint: %s", endpoint.id)
            return existing

        logger.info("Creating new executor for endpoint: %s", endpoint.id)
        executor = TerminalExecutor(endpoint, self._config)
        self._executors[endpoint.id] = executor
        return executor

    def get(self, endpoint_id: str) -> TerminalExecutor | None:
        """Get an existing executor by endpoint id."""
        return self._executors.get(endpoint_id)

    def executors(self) -> list[TerminalExecutor]:
        """Snapshot of the live executors."""
        return [executor for executor in self._executors.values() if not executor.is_disposed]

    async def remove(self, endpoint_id: str) -> bool:
        """Dispose and forget the executor of an endpoint.

        Returns:
            True if an executor was removed.
        """
        executor = self._executors.pop(endpoint_id, None)
        if executor is None:
            return False

        logger.info("Disposing executor for endpoint: %s", endpoint_id)
        try:
            await executor.dispose()
        except Exception:
            logger.exception("Error disposing executor for endpoint %s", endpoint_id)

        for callback in self._removal_callbacks:
            callback(endpoint_id)
        return True

    async def sync_endpoints(self, endpoints: Iterable[Endpoint]) -> list[str]:
        """Reconcile with the current endpoint set.

        Executors of endpoints that are no longer present are removed. New
        endpoints are not connected eagerly; they get an executor on first
        use.

        Returns:
            Ids of removed endpoints.
        """
        current = {endpoint.id for endpoint in endpoints}
        removed = [endpoint_id for endpoint_id in self if endpoint_id not in current]
        for endpoint_id in removed:
            await self.remove(endpoint_id)
        return removed

    async def dispose(self) -> None:
        """Dispose all executors and clear the registry."""
        logger.info("Disposing all executors (%d active)", len(self._executors))
        for endpoint_id in list(self._executors):
            await self.remove(endpoint_id)
