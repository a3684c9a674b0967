"""
Core types and pure functions for the prediction-pool settlement engine.

This module provides the foundational data structures and protocols:
1. Configuration constants (Decimal context, wallets, currency, ticket ids)
2. Protocols: LedgerView for read-only custody access
3. Immutable data structures: Move, PendingTransaction, Transaction, Unit
4. Exceptions: PoolError and the named failure reasons of every operation
5. Phase: the four states of a settlement pool
6. Unit factories: cash()

All functions in this module are pure and operate on read-only views.
No function can mutate ledger or pool state directly.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_DOWN, getcontext, ROUND_HALF_EVEN
from enum import Enum
import hashlib
from typing import Dict, List, Set, Optional, Protocol, Tuple, FrozenSet, runtime_checkable


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Stake, share and payout arithmetic must be deterministic.
# The global context is configured once at import time.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_POOL_DECIMAL_CONTEXT = getcontext()
_POOL_DECIMAL_CONTEXT.prec = 50
_POOL_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Reserved wallet for issuance (initial funding, venue yield).
# The system wallet is exempt from balance validation and can hold any balance.
SYSTEM_WALLET = "system"

# Settlement currency used when a factory is not told otherwise.
DEFAULT_CURRENCY = "ETH"
DEFAULT_CURRENCY_DECIMALS = 18

# Vault shares are quantized to this many places (rounded down, never up).
SHARE_DECIMALS = 18

# Ticket ids start here and increase by one per accepted bet.
FIRST_TICKET_ID = 1

# Oracle readings older than this are treated as unavailable.
DEFAULT_MAX_ORACLE_AGE = timedelta(hours=1)

UNIT_TYPE_CASH = "CASH"

# Quantities with absolute value below this threshold are treated as zero.
QUANTITY_EPSILON = Decimal("1e-18")


# ============================================================================
# TYPE ALIASES
# ============================================================================

# Mapping from wallet ID to quantity held by that wallet for a specific unit.
Positions = Dict[str, Decimal]


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class LedgerView(Protocol):
    """
    Read-only interface to custody state.

    Pools, vaults and oracles that only need to look at balances or the
    clock accept a LedgerView to declare their read-only intent. The Ledger
    class implements this protocol but also provides mutation methods.
    """

    @property
    def current_time(self) -> datetime:
        """Return the current logical time of the ledger."""
        ...

    def get_balance(self, wallet_id: str, unit_symbol: str) -> Decimal:
        """Return the balance of a specific unit in a wallet."""
        ...

    def get_positions(self, unit_symbol: str) -> Positions:
        """Return all non-zero positions for a unit across all wallets."""
        ...

    def list_wallets(self) -> Set[str]:
        """Return the set of all registered wallet IDs."""
        ...

    def get_unit(self, symbol: str) -> 'Unit':
        """Return the Unit object for a given symbol."""
        ...


# ============================================================================
# ENUMS
# ============================================================================

class Phase(Enum):
    """
    Lifecycle phase of a settlement pool.

    BETTING: now < betting_period_ends_at; bets and exits accepted.
    LOCK_IN: betting closed, lock-in not elapsed; funds are frozen.
    POST_LOCK_IN: lock-in elapsed, winner not yet computed.
    RESOLVED: winner computed; permanent.
    """
    BETTING = "betting"
    LOCK_IN = "lock_in"
    POST_LOCK_IN = "post_lock_in"
    RESOLVED = "resolved"


class ExecuteResult(Enum):
    """
    Outcome of a transaction execution attempt.

    APPLIED: Transaction was validated and applied to the ledger.
    ALREADY_APPLIED: Intent ID was previously processed (idempotent behavior).
    REJECTED: Transaction failed validation (funds, registration, timestamp).
    """
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    REJECTED = "rejected"


class OriginType(Enum):
    """Classification of where a transaction originated."""
    USER_ACTION = "user_action"           # Participant-initiated (bet, withdrawal)
    POOL = "pool"                         # Settlement pool custody movement
    VENUE = "venue"                       # Yield venue accrual
    SYSTEM = "system"                     # Issuance, initial funding


# ============================================================================
# EXCEPTIONS
# ============================================================================

class PoolError(Exception):
    """Base exception for every named failure of the engine."""
    pass


class InvalidStakeAmount(PoolError):
    """Raised when a bet's stake differs from the pool's fixed stake amount."""
    pass


class InvalidGuess(PoolError):
    """Raised when a guess is negative or not an integer."""
    pass


class WrongPhase(PoolError):
    """
    Raised when an operation is attempted in a phase that forbids it.

    Covers betting-closed, withdrawal during lock-in and resolution
    before the lock-in period has elapsed.
    """

    def __init__(self, message: str, phase: Optional[Phase] = None):
        super().__init__(message)
        self.phase = phase


class NotTicketOwner(PoolError):
    """Raised when the caller does not currently own the ticket."""
    pass


class AlreadyWithdrawn(PoolError):
    """Raised when a ticket's funds have already been returned."""
    pass


class AlreadyResolved(PoolError):
    """Raised when the pool's winner has already been computed."""
    pass


class NoParticipants(PoolError):
    """Raised when resolution finds no non-withdrawn ticket."""
    pass


class UnknownTicket(PoolError):
    """Raised when a ticket id was never minted."""
    pass


class UnknownPool(PoolError):
    """Raised when a factory is asked for a pool it did not create."""
    pass


class InvalidPoolParameters(PoolError):
    """Raised when pool timing or stake parameters are inconsistent."""
    pass


class AdapterFailure(PoolError):
    """Raised when the oracle or the vault fails or returns an invalid value."""
    pass


class ReentrantCall(PoolError):
    """Raised when a pool operation is entered while another is in flight."""
    pass


class LedgerError(PoolError):
    """Base exception for custody ledger errors."""
    pass


class InsufficientFunds(LedgerError):
    """Raised when a move would take a wallet below the unit's minimum balance."""
    pass


class UnitNotRegistered(LedgerError):
    """Raised when operating on a unit that has not been registered with the ledger."""
    pass


class WalletNotRegistered(LedgerError):
    """Raised when operating on a wallet that has not been registered with the ledger."""
    pass


# ============================================================================
# TRANSACTION ORIGIN
# ============================================================================

@dataclass(frozen=True, slots=True)
class TransactionOrigin:
    """
    Immutable record of a transaction's origin for audit purposes.

    Attributes:
        origin_type: Classification of the origin source
        source_id: Identifier of the specific source (pool id, vault wallet, ...)
        event_type: Specific event within the source (e.g., "BET", "WITHDRAW", "YIELD")
    """
    origin_type: OriginType
    source_id: str
    event_type: Optional[str] = None

    def __repr__(self) -> str:
        parts = [f"{self.origin_type.value}:{self.source_id}"]
        if self.event_type:
            parts.append(f"event={self.event_type}")
        return f"Origin({', '.join(parts)})"


# ============================================================================
# CORE DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True, slots=True)
class Move:
    """
    A single transfer of value between two wallets.

    Attributes:
        quantity: The amount to transfer (must be a finite, positive Decimal).
        unit_symbol: The symbol of the unit being transferred (e.g., "ETH").
        source: The wallet ID from which value is debited.
        dest: The wallet ID to which value is credited.
        contract_id: Identifier of the operation generating this move.
    """
    quantity: Decimal
    unit_symbol: str
    source: str
    dest: str
    contract_id: str

    def __post_init__(self):
        if not self.source or not self.source.strip():
            raise ValueError("Move source cannot be empty")
        if not self.dest or not self.dest.strip():
            raise ValueError("Move dest cannot be empty")
        if not self.unit_symbol or not self.unit_symbol.strip():
            raise ValueError("Move unit_symbol cannot be empty")
        if not self.contract_id or not self.contract_id.strip():
            raise ValueError("Move contract_id cannot be empty")
        if not isinstance(self.quantity, Decimal):
            raise ValueError(f"Move quantity must be Decimal, got {type(self.quantity)}")
        if not self.quantity.is_finite():
            raise ValueError(f"Move quantity must be finite, got {self.quantity}")
        if self.quantity < QUANTITY_EPSILON:
            raise ValueError(f"Move quantity must be positive, got {self.quantity}")
        if self.source == self.dest:
            raise ValueError("Source and dest must be different")

    def __repr__(self) -> str:
        return f"Move({self.quantity} {self.unit_symbol}: {self.source}→{self.dest})"


def _normalize_decimal(d: Decimal) -> str:
    """
    Normalize a Decimal to a canonical string representation.

    Decimal("1.0") and Decimal("1.00") both become "1".
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def _compute_intent_id(moves: Tuple[Move, ...], origin: TransactionOrigin) -> str:
    """
    Compute a deterministic content hash for a transaction's intent.

    Based solely on the semantic content (moves and origin), never on
    timestamps. Used for idempotency: the same business transfer is never
    applied twice.
    """
    sorted_moves = sorted(
        moves,
        key=lambda m: (_normalize_decimal(m.quantity), m.unit_symbol, m.source, m.dest, m.contract_id)
    )

    content_parts = [f"origin:{origin.origin_type.value}:{origin.source_id}"]
    if origin.event_type:
        content_parts.append(f"event:{origin.event_type}")
    for m in sorted_moves:
        qty = _normalize_decimal(m.quantity)
        content_parts.append(f"move:{qty}|{m.unit_symbol}|{m.source}|{m.dest}|{m.contract_id}")

    content = "|".join(content_parts)
    return hashlib.sha256(content.encode()).hexdigest()[:16]


@dataclass(frozen=True, slots=True)
class PendingTransaction:
    """
    A transfer specification before execution - represents INTENT.

    Created by pools and vaults and submitted to the ledger for execution.
    intent_id is auto-computed from content (deterministic hash).
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str = field(default="")

    def __post_init__(self):
        if not self.intent_id:
            object.__setattr__(self, 'intent_id', _compute_intent_id(self.moves, self.origin))

    def is_empty(self) -> bool:
        """Return True if this pending transaction has no moves."""
        return not self.moves

    def __repr__(self) -> str:
        return f"PendingTransaction({len(self.moves)} moves, {self.origin})"


def build_transaction(
    view: LedgerView,
    moves: List[Move],
    origin: Optional[TransactionOrigin] = None,
) -> PendingTransaction:
    """
    Build a PendingTransaction from moves, stamped with the ledger's clock.

    Args:
        view: Read-only ledger view (provides current_time)
        moves: List of moves to include in the transaction
        origin: Transaction origin (defaults to a POOL origin)

    Returns:
        A PendingTransaction ready for execution

    Example:
        tx = build_transaction(ledger, [
            Move(Decimal("1"), "ETH", "alice", "vault", "pool-ab12:bet:1")
        ])
        ledger.execute(tx)
    """
    if origin is None:
        origin = TransactionOrigin(origin_type=OriginType.POOL, source_id="pool")

    return PendingTransaction(
        moves=tuple(moves),
        origin=origin,
        timestamp=view.current_time,
    )


@dataclass(frozen=True, slots=True)
class Transaction:
    """
    An executed, immutable record of ledger state changes - represents FACT.

    Attributes:
        moves: Tuple of value transfers between wallets
        origin: Who/what created this transaction and why
        timestamp: When the PendingTransaction was created
        intent_id: Content hash from PendingTransaction (for idempotency)
        exec_id: Unique execution identifier (ledger + sequence + time)
        ledger_name: Name of the ledger that executed this
        execution_time: When this was executed and logged
        sequence_number: Monotonic sequence within the ledger (for ordering)
        contract_ids: Set of contract IDs from moves (auto-populated)
    """
    moves: Tuple[Move, ...]
    origin: TransactionOrigin
    timestamp: datetime
    intent_id: str
    exec_id: str
    ledger_name: str
    execution_time: datetime
    sequence_number: int
    contract_ids: FrozenSet[str] = None

    def __post_init__(self):
        if not self.moves:
            raise ValueError("Transaction must have moves")
        if self.contract_ids is None:
            object.__setattr__(
                self, 'contract_ids',
                frozenset(m.contract_id for m in self.moves)
            )

    def __repr__(self) -> str:
        moves = ", ".join(repr(m) for m in self.moves)
        return f"Transaction({self.exec_id}, {self.origin}, [{moves}])"


@dataclass(frozen=True, slots=True)
class Unit:
    """
    Definition of a unit (asset type) held in the ledger.

    Attributes:
        symbol: Short identifier for the unit (e.g., "ETH").
        name: Human-readable name for the unit.
        unit_type: Category of the unit (CASH).
        min_balance: Minimum allowed balance in any non-system wallet.
        max_balance: Maximum allowed balance in any wallet.
        decimal_places: Number of decimal places for rounding (None = no rounding).
    """
    symbol: str
    name: str
    unit_type: str
    min_balance: Decimal = Decimal("0")
    max_balance: Decimal = Decimal("Infinity")
    decimal_places: Optional[int] = None

    def round(self, value: Decimal) -> Decimal:
        """
        Round a value down to this unit's decimal precision.

        Custody amounts never round up: a payout can not exceed what backs it.
        Returns the value unchanged if decimal_places is None.
        """
        if self.decimal_places is None:
            return value
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        quantizer = Decimal(10) ** -self.decimal_places
        return value.quantize(quantizer, rounding=ROUND_DOWN)


# ============================================================================
# UNIT FACTORIES
# ============================================================================

def cash(symbol: str, name: str, decimal_places: int = DEFAULT_CURRENCY_DECIMALS) -> Unit:
    """
    Create a settlement-currency unit.

    Args:
        symbol: Currency code (e.g., "ETH").
        name: Full name of the currency (e.g., "Ether").
        decimal_places: Number of decimal places for amounts (default: 18).

    Returns:
        A Unit that forbids overdrafts: participants can only stake what they hold.
    """
    return Unit(
        symbol=symbol,
        name=name,
        unit_type=UNIT_TYPE_CASH,
        decimal_places=decimal_places,
        min_balance=Decimal("0"),
    )


def quantize_shares(value: Decimal) -> Decimal:
    """Round a share quantity down to SHARE_DECIMALS places."""
    return value.quantize(Decimal(10) ** -SHARE_DECIMALS, rounding=ROUND_DOWN)
