"""
events.py - Pool and factory events

Events are plain immutable records; an EventLog is an append-only list of
them with optional subscribers. Off-chain observers and tests read the log,
nothing in the engine reads it back to make decisions.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Type, TypeVar
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BetPlaced:
    ticket_id: int
    owner: str
    guess: int


@dataclass(frozen=True, slots=True)
class FundsWithdrawn:
    ticket_id: int
    amount: Decimal


@dataclass(frozen=True, slots=True)
class WinnerFound:
    ticket_id: int
    value: int
    guess_at_win: int


@dataclass(frozen=True, slots=True)
class TicketTransferred:
    ticket_id: int
    from_owner: str
    to_owner: str


@dataclass(frozen=True, slots=True)
class PoolCreated:
    pool_id: str
    betting_period_ends_at: datetime
    lock_in_period_ends_at: datetime
    stake_amount: Decimal


E = TypeVar("E")

# Subscriber: receives every event after it has been appended
EventListener = Callable[[object], None]


class EventLog:
    """
    Append-only event log.

    Listeners are called synchronously, in subscription order, after the
    event is recorded. A failing listener is logged and does not undo the
    operation that emitted the event.
    """

    def __init__(self, source: str):
        self.source = source
        self._events: List[object] = []
        self._listeners: List[EventListener] = []

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    def emit(self, event: object) -> None:
        self._events.append(event)
        logger.info("[%s] %r", self.source, event)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("[%s] listener %r failed on %r", self.source, listener, event)

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def of_type(self, event_type: Type[E]) -> List[E]:
        """All recorded events of one type, oldest first."""
        return [e for e in self._events if isinstance(e, event_type)]

    def last(self) -> object:
        if not self._events:
            raise IndexError(f"No events recorded for {self.source}")
        return self._events[-1]
