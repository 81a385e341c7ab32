"""Lifecycle interface for long-running background services."""

from __future__ import annotations

from abc import ABC, abstractmethod


class Service(ABC):
    """A component started with the application and stopped on shutdown."""

    @property
    @abstractmethod
    def service_name(self) -> str:
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting work and drain what is in flight."""
        ...

    async def health_check(self) -> bool:
        return True
