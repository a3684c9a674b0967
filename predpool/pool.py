"""
pool.py - Settlement Pool

One pool per round. Participants stake a fixed amount on a non-negative
integer guess; after the lock-in period the guess closest to the oracle
value wins. Stakes are parked in a yield vault and every ticket owner,
winner or not, pulls principal plus yield back with withdraw_funds().

Phases (derived from the ledger clock on every read, never stored):

    BETTING       now < betting_period_ends_at
    LOCK_IN       betting_period_ends_at <= now < lock_in_period_ends_at
    POST_LOCK_IN  now >= lock_in_period_ends_at, winner not yet computed
    RESOLVED      winner computed (permanent)

Operation rules:

    place_bet       BETTING only
    withdraw_funds  any phase except LOCK_IN
    find_winner     POST_LOCK_IN only, exactly once

Every operation checks all preconditions, then calls the external adapter,
then mutates. A failing precondition or adapter leaves the pool and the
ledger exactly as they were. When the ledger refuses a transfer after the
vault has already been called, the vault call is reversed: a refused stake
is redeemed back, a refused payout is deposited again and the ticket is
rebooked on the shares that deposit mints.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, List, Optional, Tuple, Union
import logging
import threading

from .core import (
    Move, TransactionOrigin, OriginType, ExecuteResult, Phase,
    DEFAULT_CURRENCY, DEFAULT_MAX_ORACLE_AGE,
    InvalidStakeAmount, InvalidGuess, WrongPhase, NotTicketOwner,
    AlreadyWithdrawn, AlreadyResolved, NoParticipants, InvalidPoolParameters,
    AdapterFailure, ReentrantCall, InsufficientFunds, WalletNotRegistered,
    LedgerError,
    build_transaction,
)
from .events import EventLog, BetPlaced, FundsWithdrawn, WinnerFound, TicketTransferred
from .ledger import Ledger
from .oracle import OracleReading, PriceOracle
from .tickets import TicketRegistry, TicketView
from .vault import YieldVault
from .winner import WinnerSelection, compute_winner

logger = logging.getLogger(__name__)


def validate_pool_parameters(
    betting_period_ends_at: datetime,
    lock_in_period_ends_at: datetime,
    stake_amount: Union[Decimal, int],
) -> Decimal:
    """
    Check round parameters and return the stake as a Decimal.

    Raises:
        InvalidPoolParameters: If the periods are out of order or the stake
                               is not a positive, finite amount
    """
    if not isinstance(betting_period_ends_at, datetime) or not isinstance(lock_in_period_ends_at, datetime):
        raise InvalidPoolParameters("Period boundaries must be datetimes")
    if betting_period_ends_at >= lock_in_period_ends_at:
        raise InvalidPoolParameters(
            f"Betting must end before lock-in: {betting_period_ends_at} >= {lock_in_period_ends_at}"
        )
    if isinstance(stake_amount, bool) or not isinstance(stake_amount, (Decimal, int)):
        raise InvalidPoolParameters(f"Stake amount must be Decimal or int, got {type(stake_amount).__name__}")
    stake = Decimal(stake_amount)
    if not stake.is_finite() or stake <= 0:
        raise InvalidPoolParameters(f"Stake amount must be positive, got {stake_amount}")
    return stake


@dataclass(frozen=True, slots=True)
class PoolRecord:
    """Persisted layout of a round: the pool fields plus one record per ticket."""
    pool_id: str
    betting_period_ends_at: datetime
    lock_in_period_ends_at: datetime
    stake_amount: Decimal
    currency: str
    total_deposited: Decimal
    winner_ticket: Optional[int]
    observed_value: Optional[int]
    tickets: Tuple[TicketView, ...]


class SettlementPool:
    """
    Phase state machine and custody rules for one prediction round.

    The pool never holds cash itself: stakes move on the ledger from the
    bettor straight into the vault's custody wallet, and the pool records the
    vault shares each ticket is entitled to.

    Thread Safety:
        Operations on one pool are serialized by a per-pool lock. A call
        re-entering the pool while an operation is in flight on the same
        thread (e.g. from an adapter callback) fails with ReentrantCall.

    Example:
        pool = SettlementPool("pool-1", ledger, oracle, vault,
                              t0 + timedelta(seconds=60), t0 + timedelta(seconds=120),
                              Decimal("1"))
        ticket = pool.place_bet("alice", 25000, Decimal("1"))
        ledger.advance_time(t0 + timedelta(seconds=121))
        pool.find_winner()
        pool.withdraw_funds("alice", ticket)
    """

    def __init__(
        self,
        pool_id: str,
        ledger: Ledger,
        oracle: PriceOracle,
        vault: YieldVault,
        betting_period_ends_at: datetime,
        lock_in_period_ends_at: datetime,
        stake_amount: Union[Decimal, int],
        currency: str = DEFAULT_CURRENCY,
        max_oracle_age: timedelta = DEFAULT_MAX_ORACLE_AGE,
        events: Optional[EventLog] = None,
    ):
        stake = validate_pool_parameters(betting_period_ends_at, lock_in_period_ends_at, stake_amount)
        unit = ledger.get_unit(currency)
        if unit.round(stake) != stake:
            raise InvalidPoolParameters(
                f"Stake amount {stake} exceeds {currency} precision of {unit.decimal_places} places"
            )
        if not ledger.claim_scope(pool_id):
            raise InvalidPoolParameters(f"Pool id {pool_id} already in use on ledger {ledger.name}")

        self.pool_id = pool_id
        self.ledger = ledger
        self.oracle = oracle
        self.vault = vault
        self.currency = currency
        self.max_oracle_age = max_oracle_age
        self.events = events if events is not None else EventLog(pool_id)
        self.tickets = TicketRegistry()

        self._betting_period_ends_at = betting_period_ends_at
        self._lock_in_period_ends_at = lock_in_period_ends_at
        self._stake_amount = stake
        self._total_deposited = Decimal("0")
        self._winner: Optional[WinnerSelection] = None

        self._lock = threading.Lock()
        self._in_flight: Optional[str] = None
        self._in_flight_thread: Optional[int] = None

    # ========================================================================
    # IMMUTABLE PARAMETERS
    # ========================================================================

    @property
    def betting_period_ends_at(self) -> datetime:
        return self._betting_period_ends_at

    @property
    def lock_in_period_ends_at(self) -> datetime:
        return self._lock_in_period_ends_at

    @property
    def stake_amount(self) -> Decimal:
        return self._stake_amount

    # ========================================================================
    # DERIVED STATE
    # ========================================================================

    def phase_at(self, when: datetime) -> Phase:
        """Phase the pool is (or would be) in at a given time."""
        if self._winner is not None:
            return Phase.RESOLVED
        if when < self._betting_period_ends_at:
            return Phase.BETTING
        if when < self._lock_in_period_ends_at:
            return Phase.LOCK_IN
        return Phase.POST_LOCK_IN

    @property
    def phase(self) -> Phase:
        return self.phase_at(self.ledger.current_time)

    @property
    def total_deposited(self) -> Decimal:
        """Vault shares backing all non-withdrawn tickets."""
        return self._total_deposited

    @property
    def winner_ticket(self) -> Optional[int]:
        return self._winner.ticket_id if self._winner else None

    @property
    def observed_value(self) -> Optional[int]:
        """Oracle value the pool was resolved against."""
        return self._winner.observed_value if self._winner else None

    def winner(self) -> Optional[TicketView]:
        if self._winner is None:
            return None
        return self.tickets.get(self._winner.ticket_id)

    # ========================================================================
    # TICKET QUERIES
    # ========================================================================

    def owner_of(self, ticket_id: int) -> str:
        """
        Raises:
            UnknownTicket: If the ticket does not exist
        """
        return self.tickets.owner_of(ticket_id)

    def get_ticket(self, ticket_id: int) -> TicketView:
        return self.tickets.get(ticket_id)

    def bet_of(self, ticket_id: int) -> int:
        """Guess recorded for a ticket."""
        return self.tickets.get(ticket_id).guess

    def tickets_of(self, owner: str) -> List[int]:
        return self.tickets.tickets_of(owner)

    def active_tickets(self) -> List[TicketView]:
        return self.tickets.active()

    def latest_observed_value(self) -> int:
        """
        Current oracle value in whole units, validated as find_winner() would.

        Raises:
            AdapterFailure: If the oracle fails or returns a stale or invalid value
        """
        return self._observe().whole_units()

    def to_record(self) -> PoolRecord:
        return PoolRecord(
            pool_id=self.pool_id,
            betting_period_ends_at=self._betting_period_ends_at,
            lock_in_period_ends_at=self._lock_in_period_ends_at,
            stake_amount=self._stake_amount,
            currency=self.currency,
            total_deposited=self._total_deposited,
            winner_ticket=self.winner_ticket,
            observed_value=self.observed_value,
            tickets=tuple(self.tickets),
        )

    # ========================================================================
    # OPERATIONS (Mutating)
    # ========================================================================

    @contextmanager
    def _operation(self, name: str) -> Iterator[None]:
        """Serialize mutating calls and reject re-entry from the same thread."""
        me = threading.get_ident()
        if self._in_flight is not None and self._in_flight_thread == me:
            raise ReentrantCall(
                f"{name} called on {self.pool_id} while {self._in_flight} is in flight"
            )
        with self._lock:
            self._in_flight = name
            self._in_flight_thread = me
            try:
                yield
            finally:
                self._in_flight = None
                self._in_flight_thread = None

    def place_bet(self, bettor: str, guess: int, stake: Union[Decimal, int]) -> int:
        """
        Stake on a guess and receive a ticket.

        Args:
            bettor: Ledger wallet paying the stake; becomes the ticket owner
            guess: Non-negative integer guess of the observed value
            stake: Must equal stake_amount exactly

        Returns:
            The new ticket id

        Raises:
            WrongPhase: If betting has closed
            InvalidStakeAmount: If stake differs from stake_amount
            InvalidGuess: If guess is negative or not an integer
            WalletNotRegistered: If the bettor has no ledger wallet
            InsufficientFunds: If the bettor cannot cover the stake
            AdapterFailure: If the vault deposit fails
        """
        with self._operation("place_bet"):
            phase = self.phase
            if phase is not Phase.BETTING:
                raise WrongPhase(f"Bet staking period has ended ({phase.value})", phase)
            if isinstance(stake, bool) or not isinstance(stake, (Decimal, int)) or Decimal(stake) != self._stake_amount:
                raise InvalidStakeAmount(f"Invalid stake amount {stake!r}, expected {self._stake_amount}")
            if isinstance(guess, bool) or not isinstance(guess, int) or guess < 0:
                raise InvalidGuess(f"Guess must be a non-negative integer, got {guess!r}")
            if not self.ledger.is_registered(bettor):
                raise WalletNotRegistered(f"Wallet {bettor} not registered")

            ticket_id = self.tickets.next_id
            pending = build_transaction(
                self.ledger,
                [Move(self._stake_amount, self.currency, bettor, self.vault.wallet_id,
                      f"{self.pool_id}:bet:{ticket_id}")],
                origin=TransactionOrigin(OriginType.USER_ACTION, self.pool_id, "BET"),
            )

            with self.ledger.locked():
                ok, reason = self.ledger.validate(pending)
                if not ok:
                    raise InsufficientFunds(f"{bettor} cannot stake {self._stake_amount} {self.currency}: {reason}")
                shares = self._vault_deposit(self._stake_amount)
                try:
                    self._execute(pending)
                except LedgerError as exc:
                    self._undo_deposit(shares)
                    raise AdapterFailure(
                        f"Stake of {bettor} for ticket {ticket_id} not recorded, deposit reverted"
                    ) from exc

            minted = self.tickets.mint(bettor, guess, shares)
            self._total_deposited += shares

            logger.info("%s: ticket %d placed by %s, guess=%d, shares=%s",
                        self.pool_id, minted, bettor, guess, shares)
            self.events.emit(BetPlaced(ticket_id=minted, owner=bettor, guess=guess))
            return minted

    def withdraw_funds(self, caller: str, ticket_id: int) -> Decimal:
        """
        Return a ticket's stake plus accrued yield to its current owner.

        Returns:
            The amount paid to the caller

        Raises:
            UnknownTicket: If the ticket does not exist
            NotTicketOwner: If caller does not own the ticket
            AlreadyWithdrawn: If the ticket's funds were already returned
            WrongPhase: During the lock-in period
            WalletNotRegistered: If the caller has no ledger wallet
            AdapterFailure: If the vault redeem fails or cannot be paid out
        """
        with self._operation("withdraw_funds"):
            ticket = self.tickets.get(ticket_id)
            if ticket.owner != caller:
                raise NotTicketOwner(f"{caller} does not own ticket {ticket_id}")
            if ticket.withdrawn:
                raise AlreadyWithdrawn(f"Ticket {ticket_id} already withdrawn")
            phase = self.phase
            if phase is Phase.LOCK_IN:
                raise WrongPhase("Cannot withdraw funds in lockin period", phase)
            if not self.ledger.is_registered(caller):
                raise WalletNotRegistered(f"Wallet {caller} not registered")

            with self.ledger.locked():
                amount = self._vault_redeem(ticket.shares)
                if amount > 0:
                    pending = build_transaction(
                        self.ledger,
                        [Move(amount, self.currency, self.vault.wallet_id, caller,
                              f"{self.pool_id}:withdraw:{ticket_id}")],
                        origin=TransactionOrigin(OriginType.USER_ACTION, self.pool_id, "WITHDRAW"),
                    )
                    try:
                        self._execute(pending)
                    except LedgerError as exc:
                        self._restore_shares(ticket_id, ticket.shares, amount)
                        raise AdapterFailure(
                            f"Vault {self.vault.wallet_id} cannot pay out {amount} {self.currency}"
                        ) from exc

            self.tickets.mark_withdrawn(ticket_id)
            self._total_deposited -= ticket.shares

            if amount < self._stake_amount:
                logger.warning("%s: ticket %d redeemed %s, below stake %s",
                               self.pool_id, ticket_id, amount, self._stake_amount)
            logger.info("%s: ticket %d withdrawn by %s, amount=%s", self.pool_id, ticket_id, caller, amount)
            self.events.emit(FundsWithdrawn(ticket_id=ticket_id, amount=amount))
            return amount

    def find_winner(self) -> int:
        """
        Resolve the round: the active guess closest to the oracle value wins.

        Permissionless. Reads the oracle once; ties go to the lowest ticket id.
        No funds move; the winner withdraws like everyone else.

        Returns:
            The winning ticket id

        Raises:
            AlreadyResolved: If the winner has already been computed
            WrongPhase: If the lock-in period has not elapsed
            NoParticipants: If every ticket has been withdrawn (or none exist)
            AdapterFailure: If the oracle fails or returns a stale or invalid value
        """
        with self._operation("find_winner"):
            if self._winner is not None:
                raise AlreadyResolved(f"{self.pool_id} already resolved, winner ticket {self._winner.ticket_id}")
            phase = self.phase
            if phase is not Phase.POST_LOCK_IN:
                raise WrongPhase(f"Bet has not ended ({phase.value})", phase)

            candidates = [(t.ticket_id, t.guess) for t in self.tickets.active()]
            if not candidates:
                raise NoParticipants("There are no users")

            value = self._observe().whole_units()
            selection = compute_winner(candidates, value)
            self._winner = selection

            logger.info("%s: resolved at %d, winner ticket %d (guess %d, distance %d)",
                        self.pool_id, value, selection.ticket_id, selection.guess, selection.distance)
            self.events.emit(WinnerFound(
                ticket_id=selection.ticket_id,
                value=value,
                guess_at_win=selection.guess,
            ))
            return selection.ticket_id

    def transfer_ticket(self, caller: str, ticket_id: int, new_owner: str) -> None:
        """
        Hand a ticket to another account. Bet data is untouched.

        Raises:
            UnknownTicket: If the ticket does not exist
            NotTicketOwner: If caller does not own the ticket
        """
        with self._operation("transfer_ticket"):
            owner = self.tickets.owner_of(ticket_id)
            if owner != caller:
                raise NotTicketOwner(f"{caller} does not own ticket {ticket_id}")
            self.tickets.transfer(ticket_id, new_owner)
            self.events.emit(TicketTransferred(ticket_id=ticket_id, from_owner=owner, to_owner=new_owner))

    # ========================================================================
    # ADAPTER CALLS
    # ========================================================================

    def _execute(self, pending) -> None:
        result = self.ledger.execute(pending)
        if result is not ExecuteResult.APPLIED:
            raise LedgerError(f"{self.pool_id}: ledger returned {result.value} for {pending}")

    def _vault_deposit(self, amount: Decimal) -> Decimal:
        try:
            shares = self.vault.deposit(amount)
        except ReentrantCall:
            raise
        except Exception as exc:
            raise AdapterFailure(f"Vault deposit of {amount} failed: {exc}") from exc
        if not isinstance(shares, Decimal) or not shares.is_finite() or shares <= 0:
            raise AdapterFailure(f"Vault deposit returned invalid shares {shares!r}")
        return shares

    def _vault_redeem(self, shares: Decimal) -> Decimal:
        try:
            amount = self.vault.redeem(shares)
        except ReentrantCall:
            raise
        except Exception as exc:
            raise AdapterFailure(f"Vault redeem of {shares} shares failed: {exc}") from exc
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount < 0:
            raise AdapterFailure(f"Vault redeem returned invalid amount {amount!r}")
        return amount

    def _undo_deposit(self, shares: Decimal) -> None:
        """Burn shares minted for a stake the ledger then refused."""
        returned = self._vault_redeem(shares)
        logger.warning("%s: stake transfer refused, redeemed %s shares back for %s",
                       self.pool_id, shares, returned)

    def _restore_shares(self, ticket_id: int, shares: Decimal, amount: Decimal) -> None:
        """
        Put a refused payout back into the vault and rebook the ticket on the
        shares it mints, so the ticket keeps backing only its own stake.
        """
        restored = self._vault_deposit(amount)
        self.tickets.set_shares(ticket_id, restored)
        self._total_deposited += restored - shares
        logger.warning("%s: payout of %s for ticket %d refused, %s shares rebooked as %s",
                       self.pool_id, amount, ticket_id, shares, restored)

    def _observe(self) -> OracleReading:
        try:
            reading = self.oracle.latest_value()
        except Exception as exc:
            raise AdapterFailure(f"Oracle read failed: {exc}") from exc
        if not isinstance(reading, OracleReading):
            raise AdapterFailure(f"Oracle returned {reading!r}")
        if isinstance(reading.value, bool) or not isinstance(reading.value, int) or reading.value < 0:
            raise AdapterFailure(f"Oracle returned invalid value {reading.value!r}")
        if not isinstance(reading.updated_at, datetime):
            raise AdapterFailure(f"Oracle returned invalid timestamp {reading.updated_at!r}")
        try:
            age = self.ledger.current_time - reading.updated_at
        except TypeError as exc:
            raise AdapterFailure(
                f"Oracle timestamp {reading.updated_at} not comparable with ledger time"
            ) from exc
        if age > self.max_oracle_age:
            raise AdapterFailure(
                f"Oracle round {reading.round_id} is stale: updated {reading.updated_at}, age {age}"
            )
        return reading

    def __repr__(self):
        return (f"SettlementPool({self.pool_id}, phase={self.phase.value}, "
                f"tickets={len(self.tickets)}, active_shares={self._total_deposited})")
