"""Alert source abstraction — anything the watcher can query by OData filter."""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..models import Alert


class AlertSource(ABC):
    """Abstract interface for alert backends."""

    @abstractmethod
    async def list_alerts(self, filter_expression: str) -> list[Alert]:
        """Return every alert matching ``filter_expression``, in retrieval order.

        Raises AlertSourceError (or any other exception) on failure and
        asyncio.CancelledError when the caller cancels mid-flight.
        """
        ...

    async def close(self) -> None:
        """Release connections. Override in subclasses holding a session."""
