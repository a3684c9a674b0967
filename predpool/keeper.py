"""
keeper.py - Round Keeper

Drives the rounds of a factory forward in time.

Each step():
1. Advance ledger time
2. Call find_winner() on every pool past its lock-in period that still has
   active tickets, in creation order

Resolution is permissionless, so the keeper holds no special rights; it is
just a convenient caller. Pools nobody bet on (or everybody left) stay
unresolved and are skipped.
"""

from __future__ import annotations
from datetime import datetime
from typing import Iterable, List
import logging

from .core import Phase
from .events import WinnerFound
from .factory import PoolFactory
from .ledger import Ledger
from .pool import SettlementPool

logger = logging.getLogger(__name__)


class RoundKeeper:
    """
    Time-stepping driver for a factory's pools.

    Example:
        keeper = RoundKeeper(ledger, factory)
        found = keeper.step(t0 + timedelta(seconds=121))
    """

    def __init__(self, ledger: Ledger, factory: PoolFactory):
        self.ledger = ledger
        self.factory = factory

    def due_pools(self) -> List[SettlementPool]:
        """Pools that can be resolved at the current ledger time."""
        return [
            pool for pool in self.factory.list_pools()
            if pool.phase is Phase.POST_LOCK_IN and pool.active_tickets()
        ]

    def step(self, timestamp: datetime) -> List[WinnerFound]:
        """
        Advance time and resolve every pool that is due.

        Args:
            timestamp: New ledger time (must not move backwards)

        Returns:
            WinnerFound events produced by this step

        Raises:
            AdapterFailure: If the oracle cannot be read for a due pool; pools
                            earlier in creation order stay resolved
        """
        self.ledger.advance_time(timestamp)
        found: List[WinnerFound] = []

        for pool in self.due_pools():
            pool.find_winner()
            event = pool.events.of_type(WinnerFound)[-1]
            logger.debug("keeper resolved %s -> ticket %d", pool.pool_id, event.ticket_id)
            found.append(event)

        return found

    def run(self, timestamps: Iterable[datetime]) -> List[WinnerFound]:
        """
        Run the keeper through a sequence of timestamps.

        Returns:
            All WinnerFound events, in the order they were produced
        """
        all_found: List[WinnerFound] = []

        for timestamp in timestamps:
            all_found.extend(self.step(timestamp))

        return all_found
