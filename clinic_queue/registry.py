from __future__ import annotations

# Service and counter registries.
#
# Both are small and rarely written (administrative edits), so a single lock
# per registry is enough. They are read on every dispatch operation.

import logging
import threading

from .errors import UnknownCounter, UnknownService
from .models import Counter, Service

logger = logging.getLogger(__name__)


class ServiceRegistry:
    def __init__(self, services: list[Service] | None = None) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}
        for s in services or []:
            self.add(s)

    def add(self, service: Service) -> Service:
        """Register a service. Ids and prefixes must both be unique."""
        with self._lock:
            if service.id in self._services:
                raise ValueError(f"duplicate service id {service.id!r}")
            for other in self._services.values():
                if other.prefix == service.prefix:
                    raise ValueError(f"prefix {service.prefix!r} already used by {other.id!r}")
            self._services[service.id] = service
        logger.info("service registered id=%s prefix=%s", service.id, service.prefix)
        return service

    def get(self, service_id: str) -> Service:
        with self._lock:
            s = self._services.get(service_id)
        if s is None:
            raise UnknownService(f"unknown service {service_id!r}")
        return s

    def require_active(self, service_id: str) -> Service:
        s = self.get(service_id)
        if not s.is_active:
            raise UnknownService(f"service {service_id!r} is inactive")
        return s

    def set_active(self, service_id: str, active: bool) -> Service:
        with self._lock:
            s = self._services.get(service_id)
            if s is None:
                raise UnknownService(f"unknown service {service_id!r}")
            s.is_active = active
        return s

    def rename(self, service_id: str, name: str) -> Service:
        with self._lock:
            s = self._services.get(service_id)
            if s is None:
                raise UnknownService(f"unknown service {service_id!r}")
            s.name = name
        return s

    def list(self, *, active_only: bool = False) -> list[Service]:
        with self._lock:
            items = list(self._services.values())
        return [s for s in items if s.is_active or not active_only]


class CounterRegistry:
    def __init__(self, services: ServiceRegistry, counters: list[Counter] | None = None) -> None:
        self._lock = threading.Lock()
        self._services = services
        self._counters: dict[str, Counter] = {}
        for c in counters or []:
            self.add(c)

    def add(self, counter: Counter) -> Counter:
        # Raises UnknownService when the binding is dangling.
        self._services.get(counter.service_id)
        with self._lock:
            if counter.id in self._counters:
                raise ValueError(f"duplicate counter id {counter.id!r}")
            self._counters[counter.id] = counter
        logger.info("counter registered id=%s service=%s", counter.id, counter.service_id)
        return counter

    def get(self, counter_id: str) -> Counter:
        with self._lock:
            c = self._counters.get(counter_id)
        if c is None:
            raise UnknownCounter(f"unknown counter {counter_id!r}")
        return c

    def require_active(self, counter_id: str) -> Counter:
        c = self.get(counter_id)
        if not c.is_active:
            raise UnknownCounter(f"counter {counter_id!r} is inactive")
        return c

    def set_active(self, counter_id: str, active: bool) -> Counter:
        with self._lock:
            c = self._counters.get(counter_id)
            if c is None:
                raise UnknownCounter(f"unknown counter {counter_id!r}")
            c.is_active = active
        return c

    def rename(self, counter_id: str, name: str) -> Counter:
        with self._lock:
            c = self._counters.get(counter_id)
            if c is None:
                raise UnknownCounter(f"unknown counter {counter_id!r}")
            c.name = name
        return c

    def for_service(self, service_id: str) -> list[Counter]:
        with self._lock:
            return [c for c in self._counters.values() if c.service_id == service_id]

    def list(self) -> list[Counter]:
        with self._lock:
            return list(self._counters.values())
