"""
ledger.py - Double-Entry Custody Ledger

The Ledger holds the settlement-currency balances of every participant,
of the vault custody wallet and of the system wallet. It is the only module
that moves funds, ensuring controlled and auditable changes.

Key responsibilities:
    - Implements LedgerView protocol for safe read-only access
    - Executes transactions atomically (all moves succeed or all fail)
    - Owns the logical clock every pool derives its phase from
    - Always validates and always logs
"""

from __future__ import annotations
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Set, Optional, Tuple, Any
import logging
import threading

from .core import (
    # Types
    Move, Transaction, Unit,
    PendingTransaction, TransactionOrigin, OriginType,
    ExecuteResult,
    Positions,
    # Constants
    QUANTITY_EPSILON, SYSTEM_WALLET,
    # Exceptions
    LedgerError, UnitNotRegistered, WalletNotRegistered,
    build_transaction,
)

logger = logging.getLogger(__name__)


class Ledger:
    """
    Double-entry custody ledger with full validation and audit trail.

    Implements the LedgerView protocol, allowing the ledger to be passed to
    pools, vaults and oracles that only read balances or the clock.

    Design Principles:
        - Always validates: every transaction is checked against registration,
          balance constraints and timestamp requirements.
        - Always logs: every applied transaction is recorded in the log.

    Thread Safety:
        execute() and advance_time() are serialized by an internal lock, so
        pools sharing one ledger may be driven from different threads.

    Example:
        ledger = Ledger("main", datetime(2025, 1, 1))
        ledger.register_unit(cash("ETH", "Ether"))
        ledger.register_wallet("alice")
        ledger.issue("alice", "ETH", Decimal("10"))
    """

    POSITION_EPSILON = QUANTITY_EPSILON

    def __init__(self, name: str, initial_time: Optional[datetime] = None):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            initial_time: Starting time for the ledger (default: 1970-01-01)
        """
        self.name = name
        self.balances: Dict[str, Dict[str, Decimal]] = {}
        self.units: Dict[str, Unit] = {}
        self.registered_wallets: Set[str] = set()
        self.seen_intent_ids: Set[str] = set()
        self.claimed_scopes: Set[str] = set()
        self.transaction_log: List[Transaction] = []
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._next_sequence: int = 0
        self._issue_sequence: int = 0
        self._positions_by_unit: Dict[str, Dict[str, Decimal]] = defaultdict(dict)
        self._lock = threading.RLock()

        self.registered_wallets.add(SYSTEM_WALLET)
        self.balances[SYSTEM_WALLET] = defaultdict(lambda: Decimal("0"))

    # ========================================================================
    # LedgerView PROTOCOL IMPLEMENTATION (read-only methods)
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        """Current logical time of the ledger."""
        return self._current_time

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """
        Get the balance of a specific unit in a wallet.

        Raises:
            WalletNotRegistered: If wallet is not registered
            UnitNotRegistered: If unit is not registered
        """
        if wallet_id not in self.registered_wallets:
            raise WalletNotRegistered(f"Wallet {wallet_id} not registered")
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return self.balances[wallet_id].get(unit_symbol, Decimal("0"))

    def get_positions(self, unit_symbol: str) -> Positions:
        """Get all non-zero positions for a unit across all wallets."""
        return dict(self._positions_by_unit.get(unit_symbol, {}))

    def list_wallets(self) -> Set[str]:
        """List all registered wallet IDs."""
        return self.registered_wallets.copy()

    def list_units(self) -> List[str]:
        """List all registered unit symbols."""
        return sorted(self.units.keys())

    def get_unit(self, symbol: str) -> Unit:
        """Return the Unit object for a given symbol."""
        if symbol not in self.units:
            raise UnitNotRegistered(f"Unit {symbol} not registered")
        return self.units[symbol]

    def total_supply(self, unit_symbol: str) -> Decimal:
        """
        Calculate total supply of a unit across all wallets.

        The system wallet carries the negative of everything ever issued, so
        for a conserved unit the total is always zero.
        """
        if unit_symbol not in self.units:
            raise UnitNotRegistered(f"Unit {unit_symbol} not registered")
        return sum(
            (self.balances[w].get(unit_symbol, Decimal("0")) for w in sorted(self.registered_wallets)),
            Decimal("0"),
        )

    def verify_double_entry(
        self,
        expected_supplies: Dict[str, Decimal] = None,
        tolerance: Decimal = Decimal("1e-9")
    ) -> Dict[str, Any]:
        """
        Verify that conservation laws hold for all units.

        Without expected_supplies every unit is expected to sum to zero
        (issuance is debited from the system wallet).

        Returns:
            Dict with keys 'valid', 'supplies' and 'discrepancies'.
        """
        supplies = {}
        discrepancies = []

        for unit_symbol in self.units:
            current_supply = self.total_supply(unit_symbol)
            supplies[unit_symbol] = current_supply
            expected = Decimal("0")
            if expected_supplies and unit_symbol in expected_supplies:
                expected = expected_supplies[unit_symbol]
            difference = abs(current_supply - expected)
            if difference > tolerance:
                discrepancies.append({
                    'unit': unit_symbol,
                    'expected': expected,
                    'actual': current_supply,
                    'difference': difference,
                })

        return {
            'valid': len(discrepancies) == 0,
            'supplies': supplies,
            'discrepancies': discrepancies,
        }

    def is_registered(self, wallet_id: str) -> bool:
        """Check if a wallet is registered."""
        return wallet_id in self.registered_wallets

    @contextmanager
    def locked(self) -> Iterator[Ledger]:
        """
        Hold the ledger lock across a validate / external call / execute sequence.

        The lock is reentrant, so execute() and issue() may be called inside.
        """
        with self._lock:
            yield self

    # ========================================================================
    # TIME MANAGEMENT
    # ========================================================================

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the ledger's logical clock to a new time.

        Time can only move forward, never backward.

        Raises:
            ValueError: If new_time is before the current time
        """
        with self._lock:
            if new_time < self._current_time:
                raise ValueError(
                    f"Cannot move time backwards: {new_time} < {self._current_time}"
                )
            self._current_time = new_time

    # ========================================================================
    # REGISTRATION (Mutating)
    # ========================================================================

    def register_wallet(self, wallet_id: str) -> str:
        """
        Register a new wallet in the ledger.

        Raises:
            ValueError: If wallet is already registered
        """
        with self._lock:
            if wallet_id in self.registered_wallets:
                raise ValueError(f"Wallet {wallet_id} already registered")
            self.registered_wallets.add(wallet_id)
            self.balances[wallet_id] = defaultdict(lambda: Decimal("0"))
        return wallet_id

    def claim_scope(self, scope: str) -> bool:
        """
        Reserve a contract-id namespace (a pool id or a factory name).

        Contract ids derived from a claimed scope cannot collide with those of
        another client of this ledger.

        Returns:
            False if the scope was already claimed
        """
        with self._lock:
            if scope in self.claimed_scopes:
                return False
            self.claimed_scopes.add(scope)
        return True

    def register_unit(self, unit: Unit) -> None:
        """
        Register a new unit (asset type) in the ledger.

        Raises:
            ValueError: If unit symbol is already registered
        """
        with self._lock:
            if unit.symbol in self.units:
                raise ValueError(f"Unit {unit.symbol} already registered")
            self.units[unit.symbol] = unit
        logger.debug("Registered unit %s (%s) [%s]", unit.symbol, unit.name, unit.unit_type)

    def issue(self, wallet_id: str, unit_symbol: str, quantity: Decimal, source_id: str = "issuance") -> ExecuteResult:
        """
        Issue new units from the system wallet into a wallet.

        This is the only way value enters the ledger; it is recorded like any
        other transaction so conservation holds against the system wallet.
        """
        with self._lock:
            self._issue_sequence += 1
            pending = build_transaction(
                self,
                [Move(quantity, unit_symbol, SYSTEM_WALLET, wallet_id,
                      f"{source_id}:{self._issue_sequence}")],
                origin=TransactionOrigin(OriginType.SYSTEM, source_id, "ISSUE"),
            )
            return self.execute(pending)

    # ========================================================================
    # TRANSACTION EXECUTION (Mutating)
    # ========================================================================

    def _generate_exec_id(self, sequence: int) -> str:
        """
        Generate a unique execution ID.

        Format: exec:{ledger_name}:{sequence:012d}:{timestamp_micros}
        """
        micros = int(self._current_time.timestamp() * 1_000_000)
        return f"exec:{self.name}:{sequence:012d}:{micros}"

    def validate(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Check a pending transaction without applying it.

        Returns:
            Tuple of (success, reason); reason is empty on success.
        """
        with self._lock:
            return self._validate_pending(pending)

    def execute(self, pending: PendingTransaction) -> ExecuteResult:
        """
        Execute a PendingTransaction atomically.

        All moves succeed together or all fail together. Execution is
        idempotent: a pending transaction with the same intent_id is not
        applied twice.

        Returns:
            ExecuteResult.APPLIED if successful
            ExecuteResult.ALREADY_APPLIED if transaction was already executed
            ExecuteResult.REJECTED if validation failed
        """
        if pending.is_empty():
            return ExecuteResult.APPLIED

        with self._lock:
            if pending.intent_id in self.seen_intent_ids:
                logger.warning("ALREADY_APPLIED: intent_id=%s", pending.intent_id)
                return ExecuteResult.ALREADY_APPLIED

            valid, reason = self._validate_pending(pending)
            if not valid:
                logger.warning("REJECTED %s: %s", pending.origin, reason)
                return ExecuteResult.REJECTED

            sequence = self._next_sequence
            self._next_sequence += 1

            tx = Transaction(
                moves=pending.moves,
                origin=pending.origin,
                timestamp=pending.timestamp,
                intent_id=pending.intent_id,
                exec_id=self._generate_exec_id(sequence),
                ledger_name=self.name,
                execution_time=self._current_time,
                sequence_number=sequence,
            )

            self._execute_moves(tx.moves)

            self.transaction_log.append(tx)
            self.seen_intent_ids.add(pending.intent_id)

        logger.debug("APPLIED %r", tx)
        return ExecuteResult.APPLIED

    def _validate_pending(self, pending: PendingTransaction) -> Tuple[bool, str]:
        """
        Validate pending transaction against all constraints.

        Checks performed:
        1. Timestamp validation (transaction must not be from the future)
        2. Unit and wallet registration
        3. Balance constraint validation (min/max balance limits)
        """
        if pending.timestamp > self._current_time:
            return False, "future timestamp"

        for move in pending.moves:
            if move.unit_symbol not in self.units:
                return False, f"unit not registered: {move.unit_symbol}"
            if not self.is_registered(move.source):
                return False, f"wallet not registered: {move.source}"
            if not self.is_registered(move.dest):
                return False, f"wallet not registered: {move.dest}"

        net: Dict[Tuple[str, str], Decimal] = {}
        for move in pending.moves:
            unit = self.units[move.unit_symbol]
            key_src = (move.source, move.unit_symbol)
            key_dst = (move.dest, move.unit_symbol)
            net[key_src] = unit.round(net.get(key_src, Decimal("0")) - move.quantity)
            net[key_dst] = unit.round(net.get(key_dst, Decimal("0")) + move.quantity)

        # SYSTEM_WALLET is exempt from balance validation
        for (wallet, unit_sym), delta in net.items():
            if wallet == SYSTEM_WALLET:
                continue

            current = self.balances[wallet][unit_sym]
            unit = self.units[unit_sym]
            proposed = unit.round(current + delta)

            if proposed < unit.min_balance:
                return False, f"{wallet} {unit_sym}: {proposed} < min {unit.min_balance}"
            if proposed > unit.max_balance:
                return False, f"{wallet} {unit_sym}: {proposed} > max {unit.max_balance}"

        return True, ""

    def _update_position_index(self, wallet_id: str, unit_symbol: str, quantity: Decimal) -> None:
        """Keep the unit -> {wallet -> quantity} index free of zero positions."""
        if abs(quantity) > self.POSITION_EPSILON:
            self._positions_by_unit[unit_symbol][wallet_id] = quantity
        else:
            self._positions_by_unit[unit_symbol].pop(wallet_id, None)

    def _execute_moves(self, moves) -> None:
        """Apply all moves to wallet balances and update the position index."""
        for move in moves:
            unit = self.units[move.unit_symbol]
            new_src_balance = unit.round(
                self.balances[move.source][move.unit_symbol] - move.quantity
            )
            self.balances[move.source][move.unit_symbol] = new_src_balance
            self._update_position_index(move.source, move.unit_symbol, new_src_balance)
            new_dst_balance = unit.round(
                self.balances[move.dest][move.unit_symbol] + move.quantity
            )
            self.balances[move.dest][move.unit_symbol] = new_dst_balance
            self._update_position_index(move.dest, move.unit_symbol, new_dst_balance)

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> Ledger:
        """
        Create a deep copy of this ledger.

        All state is fully independent: modifications to the clone do not
        affect the original ledger, and vice versa. Units are immutable and
        shared.
        """
        with self._lock:
            cloned = Ledger(self.name, self._current_time)
            cloned.units = dict(self.units)
            cloned.registered_wallets = self.registered_wallets.copy()
            cloned.seen_intent_ids = self.seen_intent_ids.copy()
            cloned.claimed_scopes = self.claimed_scopes.copy()
            cloned.transaction_log = list(self.transaction_log)
            cloned._next_sequence = self._next_sequence
            cloned._issue_sequence = self._issue_sequence

            cloned.balances = {}
            for wallet, bals in self.balances.items():
                cloned.balances[wallet] = defaultdict(lambda: Decimal("0"), bals)

            cloned._positions_by_unit = defaultdict(dict)
            for unit_symbol, positions in self._positions_by_unit.items():
                cloned._positions_by_unit[unit_symbol] = dict(positions)

        return cloned
