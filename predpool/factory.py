"""
factory.py - Pool Factory

Creates independent settlement pools that share a custody ledger, an oracle
and a yield vault. Every pool gets its own ticket registry, event log and
lock; nothing else is shared between siblings.

Pool ids are deterministic: sha256 of the factory name and the creation
sequence number, shown as a 0x-prefixed 40-hex-digit string. A factory name
is claimed on the ledger, so two factories sharing a ledger never derive the
same pool id.
"""

from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Union
import hashlib
import logging
import threading

from .core import DEFAULT_CURRENCY, UnitNotRegistered, UnknownPool
from .events import EventLog, PoolCreated
from .ledger import Ledger
from .oracle import PriceOracle
from .pool import SettlementPool, validate_pool_parameters
from .vault import YieldVault

logger = logging.getLogger(__name__)


def _pool_id(factory_name: str, sequence: int) -> str:
    digest = hashlib.sha256(f"{factory_name}:{sequence}".encode("utf-8")).hexdigest()
    return "0x" + digest[:40]


class PoolFactory:
    """
    Deploys settlement pools.

    Example:
        factory = PoolFactory(ledger, oracle, vault)
        pool = factory.create_pool(t0 + timedelta(seconds=60),
                                   t0 + timedelta(seconds=120), Decimal("1"))
        factory.get_pool(pool.pool_id) is pool   # True
    """

    def __init__(
        self,
        ledger: Ledger,
        oracle: PriceOracle,
        vault: YieldVault,
        currency: str = DEFAULT_CURRENCY,
        name: str = "factory",
    ):
        """
        Raises:
            ValueError: If another factory already uses this name on the ledger
        """
        if not ledger.claim_scope(f"factory:{name}"):
            raise ValueError(f"Factory {name} already registered on ledger {ledger.name}")
        self.ledger = ledger
        self.oracle = oracle
        self.vault = vault
        self.currency = currency
        self.name = name
        self.events = EventLog(name)
        self._pools: Dict[str, SettlementPool] = {}
        self._order: List[str] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._order)

    def create_pool(
        self,
        betting_period_ends_at: datetime,
        lock_in_period_ends_at: datetime,
        stake_amount: Union[Decimal, int],
    ) -> SettlementPool:
        """
        Create a new round.

        Raises:
            InvalidPoolParameters: If betting does not end before lock-in or
                                   the stake is not positive
            UnitNotRegistered: If the factory's currency is unknown to the ledger
        """
        stake = validate_pool_parameters(betting_period_ends_at, lock_in_period_ends_at, stake_amount)
        if self.currency not in self.ledger.list_units():
            raise UnitNotRegistered(f"Unit {self.currency} not registered")

        with self._lock:
            pool_id = _pool_id(self.name, len(self._order))
            pool = SettlementPool(
                pool_id=pool_id,
                ledger=self.ledger,
                oracle=self.oracle,
                vault=self.vault,
                betting_period_ends_at=betting_period_ends_at,
                lock_in_period_ends_at=lock_in_period_ends_at,
                stake_amount=stake,
                currency=self.currency,
            )
            self._pools[pool_id] = pool
            self._order.append(pool_id)

        logger.info("%s: created pool %s (betting until %s, lock-in until %s, stake %s %s)",
                    self.name, pool_id, betting_period_ends_at, lock_in_period_ends_at,
                    stake, self.currency)
        self.events.emit(PoolCreated(
            pool_id=pool_id,
            betting_period_ends_at=betting_period_ends_at,
            lock_in_period_ends_at=lock_in_period_ends_at,
            stake_amount=stake,
        ))
        return pool

    def get_pool(self, pool_id: str) -> SettlementPool:
        """
        Raises:
            UnknownPool: If no pool with this id was created here
        """
        try:
            return self._pools[pool_id]
        except KeyError:
            raise UnknownPool(f"Pool {pool_id} not found") from None

    def list_pools(self) -> List[SettlementPool]:
        """Pools in creation order."""
        return [self._pools[pid] for pid in self._order]

    def __repr__(self):
        return f"PoolFactory({self.name}, pools={len(self._order)}, currency={self.currency})"
