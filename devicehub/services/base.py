"""
Common device-service contract and lifecycle bookkeeping.

Every service owns a registry of device records, an EventManager for its own
event names, and a lock that serializes discovery passes. The lifecycle is a
small state machine held in a ServiceLifecycle object.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence

from ..events import EventManager
from ..exceptions import NotInitializedError
from ..models import OperationResult

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Lifecycle states of a device service."""
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    FINALIZED = "finalized"


class ServiceLifecycle:
    """
    Tracks the lifecycle state of one service.

    Operations other than initialize and cleanup are only valid while
    INITIALIZED. Query operations call ``require()``; mutating operations call
    ``not_ready()`` and return the failure it gives them.
    """

    def __init__(self, service_name: str):
        self.service_name = service_name
        self.state = ServiceState.UNINITIALIZED

    @property
    def is_initialized(self) -> bool:
        return self.state == ServiceState.INITIALIZED

    def mark_initialized(self) -> None:
        logger.debug(f"{self.service_name}: {self.state.value} -> initialized")
        self.state = ServiceState.INITIALIZED

    def mark_finalized(self) -> None:
        logger.debug(f"{self.service_name}: {self.state.value} -> finalized")
        self.state = ServiceState.FINALIZED

    def require(self) -> None:
        """
        Raises:
            NotInitializedError: If the service is not initialized
        """
        if not self.is_initialized:
            raise NotInitializedError(
                f"{self.service_name} service is {self.state.value}; call initialize() first",
                service=self.service_name
            )

    def not_ready(self) -> Optional[OperationResult]:
        """Failure result for mutating operations, or None when initialized."""
        if self.is_initialized:
            return None
        return OperationResult.failure(
            NotInitializedError.reason,
            f"{self.service_name} service is {self.state.value}"
        )


class DeviceService(ABC):
    """
    Abstract base class for device services.

    Subclasses declare ``name`` and ``EVENTS`` and implement ``_refresh`` (one
    discovery pass) and ``_release`` (freeing open resources). ``initialize``
    and ``cleanup`` drive the lifecycle around them.
    """

    name: str = "device"
    EVENTS: Sequence[str] = ()

    def __init__(self):
        self.lifecycle = ServiceLifecycle(self.name)
        self.events = EventManager(self.EVENTS)
        self._discovery_lock = asyncio.Lock()

    @property
    def state(self) -> ServiceState:
        return self.lifecycle.state

    async def initialize(self) -> None:
        """
        Populate the registry and enter the INITIALIZED state. Idempotent.

        Raises:
            DiscoveryError: If every enumeration source failed
        """
        if self.lifecycle.is_initialized:
            return
        await self.refresh(strict=True)
        await self._after_initialize()
        self.lifecycle.mark_initialized()
        logger.info(f"{self.name} service initialized")

    async def cleanup(self) -> None:
        """Release open resources, clear registry and subscriptions. Safe to repeat."""
        try:
            await self._release()
        except Exception as e:
            logger.error(f"Error releasing {self.name} resources: {e}")
        self._clear_registry()
        self.events.clear_subscribers()
        if self.lifecycle.state != ServiceState.FINALIZED:
            self.lifecycle.mark_finalized()
            logger.info(f"{self.name} service cleaned up")

    async def refresh(self, strict: bool = False) -> None:
        """
        Run one discovery pass; concurrent requests wait for the running one.

        Args:
            strict: Raise DiscoveryError instead of degrading to an empty registry
        """
        async with self._discovery_lock:
            await self._refresh(strict)

    def on(self, event_type: str, callback: Callable) -> None:
        """
        Subscribe to a service event.

        Raises:
            ValueError: If event_type is not one of the service's events
            TypeError: If callback is not callable
        """
        self.events.subscribe(event_type, callback)

    def off(self, event_type: str, callback: Callable) -> None:
        self.events.unsubscribe(event_type, callback)

    async def _after_initialize(self) -> None:
        """Hook run once discovery succeeded during initialize()."""

    @abstractmethod
    async def _refresh(self, strict: bool) -> None:
        """One discovery pass, called with the discovery lock held."""

    @abstractmethod
    async def _release(self) -> None:
        """Free open connections, streams or tasks."""

    @abstractmethod
    def _clear_registry(self) -> None:
        """Drop every known record."""

    @abstractmethod
    async def is_device_available(self, device_id: str) -> bool:
        """Whether a device is present and usable."""

    @abstractmethod
    async def get_available_devices(self) -> List[Any]:
        """Refresh and return the usable devices."""

    @abstractmethod
    async def get_device_info(self, device_id: str) -> Optional[Any]:
        """Return a device record, or None if unknown."""

    @abstractmethod
    async def test_device(self, device_id: str) -> bool:
        """Probe a device; never raises for device failures."""
