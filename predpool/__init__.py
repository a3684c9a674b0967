"""
predpool - Prediction Settlement Pools

Fixed-stake prediction rounds settled against a price oracle, with stakes
parked in a yield vault and recorded on a double-entry custody ledger.

Usage:
    from predpool import Ledger, cash, LedgerYieldVault, StaticPriceOracle, PoolFactory

    ledger = Ledger("main", initial_time=t0)
    ledger.register_unit(cash("ETH", "Ether"))
    ledger.register_wallet("alice")
    ledger.issue("alice", "ETH", Decimal("10"))

    vault = LedgerYieldVault(ledger, "vault", "ETH")
    oracle = StaticPriceOracle(2480000000000, t0, decimals=8)
    factory = PoolFactory(ledger, oracle, vault)

    pool = factory.create_pool(t0 + timedelta(seconds=60),
                               t0 + timedelta(seconds=120), Decimal("1"))
    ticket = pool.place_bet("alice", 25000, Decimal("1"))

    ledger.advance_time(t0 + timedelta(seconds=120))
    pool.find_winner()
    pool.withdraw_funds("alice", ticket)
"""

# Core types
from .core import (
    LedgerView,
    Move,
    Transaction,
    PendingTransaction,
    TransactionOrigin,
    OriginType,
    build_transaction,
    Unit,
    cash,
    quantize_shares,
    Phase,
    ExecuteResult,
    PoolError,
    InvalidStakeAmount,
    InvalidGuess,
    WrongPhase,
    NotTicketOwner,
    AlreadyWithdrawn,
    AlreadyResolved,
    NoParticipants,
    UnknownTicket,
    UnknownPool,
    InvalidPoolParameters,
    AdapterFailure,
    ReentrantCall,
    LedgerError,
    InsufficientFunds,
    UnitNotRegistered,
    WalletNotRegistered,
    SYSTEM_WALLET,
    DEFAULT_CURRENCY,
    DEFAULT_CURRENCY_DECIMALS,
    DEFAULT_MAX_ORACLE_AGE,
    FIRST_TICKET_ID,
    SHARE_DECIMALS,
    UNIT_TYPE_CASH,
)

# Ledger
from .ledger import Ledger

# Tickets and winner selection
from .tickets import Bet, TicketView, TicketRegistry
from .winner import WinnerSelection, compute_winner

# Events
from .events import (
    EventLog,
    BetPlaced,
    FundsWithdrawn,
    WinnerFound,
    TicketTransferred,
    PoolCreated,
)

# Adapters
from .oracle import OracleReading, PriceOracle, StaticPriceOracle, TimeSeriesPriceOracle
from .vault import YieldVault, LedgerYieldVault

# Pools
from .pool import SettlementPool, PoolRecord, validate_pool_parameters
from .factory import PoolFactory
from .keeper import RoundKeeper

__version__ = "0.1.0"

__all__ = [
    # Core
    'LedgerView', 'Move', 'Transaction', 'PendingTransaction',
    'TransactionOrigin', 'OriginType', 'build_transaction',
    'Unit', 'cash', 'quantize_shares', 'Phase', 'ExecuteResult',
    # Errors
    'PoolError', 'InvalidStakeAmount', 'InvalidGuess', 'WrongPhase',
    'NotTicketOwner', 'AlreadyWithdrawn', 'AlreadyResolved', 'NoParticipants',
    'UnknownTicket', 'UnknownPool', 'InvalidPoolParameters', 'AdapterFailure',
    'ReentrantCall', 'LedgerError', 'InsufficientFunds', 'UnitNotRegistered',
    'WalletNotRegistered',
    # Constants
    'SYSTEM_WALLET', 'DEFAULT_CURRENCY', 'DEFAULT_CURRENCY_DECIMALS',
    'DEFAULT_MAX_ORACLE_AGE', 'FIRST_TICKET_ID', 'SHARE_DECIMALS', 'UNIT_TYPE_CASH',
    # Ledger
    'Ledger',
    # Tickets
    'Bet', 'TicketView', 'TicketRegistry', 'WinnerSelection', 'compute_winner',
    # Events
    'EventLog', 'BetPlaced', 'FundsWithdrawn', 'WinnerFound',
    'TicketTransferred', 'PoolCreated',
    # Adapters
    'OracleReading', 'PriceOracle', 'StaticPriceOracle', 'TimeSeriesPriceOracle',
    'YieldVault', 'LedgerYieldVault',
    # Pools
    'SettlementPool', 'PoolRecord', 'validate_pool_parameters',
    'PoolFactory', 'RoundKeeper',
]
