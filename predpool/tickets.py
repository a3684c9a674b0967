"""
tickets.py - Ticket Registry

Owns ticket id allocation, ownership and bet bookkeeping for one pool.

Ownership and bet data live in two independent maps:
    _owners: ticket_id -> owner
    _bets:   ticket_id -> Bet (guess, shares, withdrawn)

Transferring a ticket only ever rewrites _owners, so a change of custody can
never corrupt the guess or the shares backing it. Bet records are frozen and
replaced wholesale on withdrawal.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Iterator

from .core import FIRST_TICKET_ID, UnknownTicket, AlreadyWithdrawn


@dataclass(frozen=True, slots=True)
class Bet:
    """Economic side of a ticket: what was wagered and what backs it."""
    guess: int
    shares: Decimal
    withdrawn: bool = False


@dataclass(frozen=True, slots=True)
class TicketView:
    """
    Read-only snapshot of a ticket.

    Attributes:
        ticket_id: Unique id within the pool
        owner: Current owner (may differ from the original bettor)
        guess: Wagered value
        shares: Vault shares backing the stake
        withdrawn: True once funds have been returned
    """
    ticket_id: int
    owner: str
    guess: int
    shares: Decimal
    withdrawn: bool

    @property
    def active(self) -> bool:
        return not self.withdrawn


class TicketRegistry:
    """
    Ticket store for a single settlement pool.

    The registry enforces identity and bookkeeping rules only; phase and
    caller checks belong to the pool.
    """

    def __init__(self, first_id: int = FIRST_TICKET_ID):
        self._owners: Dict[int, str] = {}
        self._bets: Dict[int, Bet] = {}
        self._next_id = first_id

    @property
    def next_id(self) -> int:
        """Id the next minted ticket will receive."""
        return self._next_id

    def __len__(self) -> int:
        return len(self._bets)

    def __contains__(self, ticket_id: object) -> bool:
        return ticket_id in self._bets

    def __iter__(self) -> Iterator[TicketView]:
        for ticket_id in sorted(self._bets):
            yield self.get(ticket_id)

    def mint(self, owner: str, guess: int, shares: Decimal) -> int:
        """
        Create a ticket and return its id.

        Ids are assigned monotonically and never reused.
        """
        if not owner or not owner.strip():
            raise ValueError("Ticket owner cannot be empty")
        ticket_id = self._next_id
        self._next_id += 1
        self._owners[ticket_id] = owner
        self._bets[ticket_id] = Bet(guess=guess, shares=shares)
        return ticket_id

    def _require(self, ticket_id: int) -> Bet:
        bet = self._bets.get(ticket_id)
        if bet is None:
            raise UnknownTicket(f"Ticket {ticket_id} does not exist")
        return bet

    def get(self, ticket_id: int) -> TicketView:
        """
        Return a snapshot of the ticket.

        Raises:
            UnknownTicket: If the id was never minted
        """
        bet = self._require(ticket_id)
        return TicketView(
            ticket_id=ticket_id,
            owner=self._owners[ticket_id],
            guess=bet.guess,
            shares=bet.shares,
            withdrawn=bet.withdrawn,
        )

    def owner_of(self, ticket_id: int) -> str:
        self._require(ticket_id)
        return self._owners[ticket_id]

    def transfer(self, ticket_id: int, new_owner: str) -> str:
        """
        Hand the ticket to a new owner; returns the previous owner.

        Raises:
            UnknownTicket: If the id was never minted
        """
        self._require(ticket_id)
        if not new_owner or not new_owner.strip():
            raise ValueError("Ticket owner cannot be empty")
        previous = self._owners[ticket_id]
        self._owners[ticket_id] = new_owner
        return previous

    def mark_withdrawn(self, ticket_id: int) -> Decimal:
        """
        Flag the ticket's funds as returned; returns the shares it held.

        Raises:
            UnknownTicket: If the id was never minted
            AlreadyWithdrawn: If the ticket was already withdrawn
        """
        bet = self._require(ticket_id)
        if bet.withdrawn:
            raise AlreadyWithdrawn(f"Ticket {ticket_id} already withdrawn")
        self._bets[ticket_id] = replace(bet, withdrawn=True)
        return bet.shares

    def set_shares(self, ticket_id: int, shares: Decimal) -> None:
        """
        Rebook an active ticket on a new share amount.

        Raises:
            UnknownTicket: If the id was never minted
            AlreadyWithdrawn: If the ticket was already withdrawn
        """
        bet = self._require(ticket_id)
        if bet.withdrawn:
            raise AlreadyWithdrawn(f"Ticket {ticket_id} already withdrawn")
        self._bets[ticket_id] = replace(bet, shares=shares)

    def active(self) -> List[TicketView]:
        """Non-withdrawn tickets in id order."""
        return [view for view in self if not view.withdrawn]

    def tickets_of(self, owner: str) -> List[int]:
        """Ids currently owned by owner, in id order."""
        return sorted(tid for tid, o in self._owners.items() if o == owner)

    def total_active_shares(self) -> Decimal:
        return sum(
            (bet.shares for bet in self._bets.values() if not bet.withdrawn),
            Decimal("0"),
        )
