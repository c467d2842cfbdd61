from __future__ import annotations

import asyncio
from enum import Enum
from typing import Dict, Optional, Protocol

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class ServiceStatus(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class ManagedService(Protocol):
    service_name: str
    version: str

    async def initialize(self) -> None: ...

    async def destroy(self) -> None: ...

    async def get_status(self) -> ServiceStatus: ...


class ServiceRegistry:
    """Name -> (service, status) map supervising independently lifecycled services.

    Owned by the runtime and handed to whoever needs health information.
    Lifecycle calls fan out concurrently; one failing service is marked
    ``error`` without affecting the others.
    """

    def __init__(self) -> None:
        self._services: Dict[str, ManagedService] = {}
        self._status: Dict[str, ServiceStatus] = {}

    def register(self, service: ManagedService) -> None:
        name = service.service_name
        if name in self._services:
            logger.warning("service_registration_replaced", service=name)
        self._services[name] = service
        self._status[name] = ServiceStatus.INITIALIZING
        logger.info("service_registered", service=name, version=service.version)

    def get(self, name: str) -> Optional[ManagedService]:
        return self._services.get(name)

    def status(self, name: str) -> Optional[ServiceStatus]:
        return self._status.get(name)

    def all_statuses(self) -> Dict[str, ServiceStatus]:
        return dict(self._status)

    def __len__(self) -> int:
        return len(self._services)

    def __contains__(self, name: object) -> bool:
        return name in self._services

    async def _initialize_one(self, name: str, service: ManagedService) -> None:
        self._status[name] = ServiceStatus.INITIALIZING
        try:
            await service.initialize()
        except Exception as exc:
            self._status[name] = ServiceStatus.ERROR
            logger.error(
                "service_initialize_failed",
                service=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self._status[name] = ServiceStatus.RUNNING
        logger.info("service_initialized", service=name)

    async def _destroy_one(self, name: str, service: ManagedService) -> None:
        try:
            await service.destroy()
        except Exception as exc:
            self._status[name] = ServiceStatus.ERROR
            logger.error(
                "service_destroy_failed",
                service=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        self._status[name] = ServiceStatus.STOPPED
        logger.info("service_destroyed", service=name)

    async def _check_one(self, name: str, service: ManagedService) -> None:
        try:
            self._status[name] = ServiceStatus(await service.get_status())
        except Exception as exc:
            self._status[name] = ServiceStatus.ERROR
            logger.error(
                "service_health_check_failed",
                service=name,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def initialize_all(self) -> None:
        await asyncio.gather(
            *(self._initialize_one(name, svc) for name, svc in list(self._services.items()))
        )
        logger.info("services_initialized", statistics=self.statistics())

    async def destroy_all(self) -> None:
        await asyncio.gather(
            *(self._destroy_one(name, svc) for name, svc in list(self._services.items()))
        )
        logger.info("services_destroyed", statistics=self.statistics())

    async def check_health(self) -> Dict[str, ServiceStatus]:
        await asyncio.gather(
            *(self._check_one(name, svc) for name, svc in list(self._services.items()))
        )
        return self.all_statuses()

    def statistics(self) -> Dict[str, int]:
        statuses = list(self._status.values())
        stats = {"total": len(statuses)}
        for status in ServiceStatus:
            stats[status.value] = sum(1 for s in statuses if s is status)
        return stats

    def remove(self, name: str) -> bool:
        removed = self._services.pop(name, None) is not None
        self._status.pop(name, None)
        if removed:
            logger.info("service_removed", service=name)
        return removed

    def clear(self) -> None:
        self._services.clear()
        self._status.clear()
        logger.info("services_cleared")
