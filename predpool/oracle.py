"""
oracle.py - Price oracle adapters

Provides the observed value a settlement pool resolves against.

Classes:
- OracleReading: One observation with its round metadata
- PriceOracle: Protocol defining the oracle interface
- StaticPriceOracle: Fixed reading, updated by hand (tests, demos)
- TimeSeriesPriceOracle: Time-indexed observations read as of the ledger clock

Values are integers in the feed's fixed-point representation; `decimals`
says how many of the trailing digits are fractional (8 for a USD price feed).
"""

from __future__ import annotations
from bisect import bisect_right
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from .core import LedgerView


@dataclass(frozen=True, slots=True)
class OracleReading:
    """
    A single oracle observation.

    Attributes:
        value: Observed value in fixed point
        round_id: Feed round that produced the value
        updated_at: When the feed last updated
        decimals: Number of fractional digits in value
    """
    value: int
    round_id: int
    updated_at: datetime
    decimals: int = 0

    def whole_units(self) -> int:
        """Value truncated to whole units (e.g. dollars)."""
        if self.decimals <= 0:
            return self.value
        return self.value // (10 ** self.decimals)


@runtime_checkable
class PriceOracle(Protocol):
    """
    Protocol for price oracles.

    latest_value() must be cheap and read-only. Implementations raise on an
    unavailable feed; they never substitute a default value.
    """

    def latest_value(self) -> OracleReading:
        """Return the most recent observation."""
        ...


class StaticPriceOracle:
    """
    Oracle with a single, manually updated reading.

    Each update_value() opens a new round stamped with the given time.
    """

    def __init__(self, value: int, updated_at: datetime, decimals: int = 0):
        self.decimals = decimals
        self._reading = OracleReading(value, 1, updated_at, decimals)

    def latest_value(self) -> OracleReading:
        return self._reading

    def update_value(self, value: int, updated_at: datetime) -> OracleReading:
        self._reading = OracleReading(value, self._reading.round_id + 1, updated_at, self.decimals)
        return self._reading

    def __repr__(self):
        return f"StaticPriceOracle(value={self._reading.value}, round={self._reading.round_id})"


class TimeSeriesPriceOracle:
    """
    Oracle backed by a historical series of observations.

    latest_value() returns the most recent observation at or before the
    ledger's current time, so advancing the ledger clock advances the feed.
    Round ids are the 1-based position of the observation in the series.

    Examples:
        oracle = TimeSeriesPriceOracle(ledger, [(t0, 2400000000000), (t1, 2480000000000)], decimals=8)
        oracle.add_observation(t2, 2490000000000)
    """

    def __init__(
        self,
        view: LedgerView,
        observations: Optional[List[Tuple[datetime, int]]] = None,
        decimals: int = 0,
    ):
        self.view = view
        self.decimals = decimals
        self.history: List[Tuple[datetime, int]] = sorted(observations or [], key=lambda x: x[0])

    def add_observation(self, timestamp: datetime, value: int) -> None:
        self.history.append((timestamp, value))
        self.history.sort(key=lambda x: x[0])

    def value_at(self, timestamp: datetime) -> Optional[OracleReading]:
        """
        Reading at or before the specified timestamp.

        Returns None if no observation exists at or before the timestamp.
        Uses binary search for O(log n) lookup.
        """
        timestamps = [ts for ts, _ in self.history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        updated_at, value = self.history[idx - 1]
        return OracleReading(value, idx, updated_at, self.decimals)

    def latest_value(self) -> OracleReading:
        """
        Raises:
            LookupError: If the feed has no observation yet
        """
        reading = self.value_at(self.view.current_time)
        if reading is None:
            raise LookupError(f"No observation at or before {self.view.current_time}")
        return reading

    def __repr__(self):
        return f"TimeSeriesPriceOracle({len(self.history)} observations, decimals={self.decimals})"
