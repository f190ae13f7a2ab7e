"""Typed domain events and the bus that delivers them.

Business operations publish an event after their changes are committed.
Collaborators (views, the product catalogue cleanup, tests) subscribe to the
event classes they care about instead of listening for string-named
broadcasts.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Type

from . import log


@dataclass(frozen=True)
class DomainEvent:
    """Base class for every event published on the :class:`EventBus`."""


@dataclass(frozen=True)
class BalanceChanged(DomainEvent):
    student_id: str
    class_id: str
    balance: Decimal


@dataclass(frozen=True)
class CompanyCreated(DomainEvent):
    company_id: str
    class_id: str
    student_ids: tuple[str, ...]
    total_contribution: Decimal


@dataclass(frozen=True)
class CompanyDeleted(DomainEvent):
    company_id: str
    class_id: str


@dataclass(frozen=True)
class ProductLaunched(DomainEvent):
    product_id: str
    company_id: str


@dataclass(frozen=True)
class ProductSold(DomainEvent):
    product_id: str
    company_id: str
    units: int
    amount: Decimal


@dataclass(frozen=True)
class ClassDeleted(DomainEvent):
    class_id: str


Handler = Callable[[DomainEvent], None]


class EventBus:
    """Synchronous observer registry keyed by event class."""

    def __init__(self) -> None:
        self._handlers: Dict[Type[DomainEvent], List[Handler]] = {}

    def subscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        """Register ``handler`` for events of exactly ``event_type``."""

        log.debug("Subscribing %r to %s", handler, event_type.__name__)
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, event_type: Type[DomainEvent], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: DomainEvent) -> None:
        """Deliver ``event`` to its subscribers in registration order."""

        handlers = list(self._handlers.get(type(event), []))
        log.debug("Publishing %s to %d handler(s)", type(event).__name__, len(handlers))
        for handler in handlers:
            handler(event)


__all__ = [
    "DomainEvent",
    "BalanceChanged",
    "CompanyCreated",
    "CompanyDeleted",
    "ProductLaunched",
    "ProductSold",
    "ClassDeleted",
    "Handler",
    "EventBus",
]
