"""
test_pool.py - Tests for SettlementPool

Tests:
- Parameter validation
- Phase derivation and boundaries
- place_bet, withdraw_funds, find_winner, transfer_ticket
- Oracle validation
- Queries and persisted record
"""

import pytest
from datetime import timedelta, timezone
from decimal import Decimal

from predpool import (
    Phase, SettlementPool, LedgerYieldVault, StaticPriceOracle, OracleReading,
    BetPlaced, FundsWithdrawn, WinnerFound, TicketTransferred,
    InvalidStakeAmount, InvalidGuess, WrongPhase, NotTicketOwner,
    AlreadyWithdrawn, AlreadyResolved, NoParticipants, UnknownTicket,
    InvalidPoolParameters, AdapterFailure, InsufficientFunds,
    WalletNotRegistered, UnitNotRegistered,
)
from tests.builders import (
    T0, BETTING_END, LOCK_IN_END, STAKE, PRICE_24800,
    make_ledger, make_pool, verify_conservation,
)
from tests.fake_view import RecordingOracle


def _to_post_lock_in(ledger):
    ledger.advance_time(LOCK_IN_END)


# =============================================================================
# CONSTRUCTION
# =============================================================================

class TestPoolParameters:

    def test_betting_must_end_before_lock_in(self, funded_ledger, oracle, vault):
        with pytest.raises(InvalidPoolParameters):
            SettlementPool("p", funded_ledger, oracle, vault, LOCK_IN_END, BETTING_END, STAKE, currency="ETH")

    def test_equal_boundaries_rejected(self, funded_ledger, oracle, vault):
        with pytest.raises(InvalidPoolParameters):
            SettlementPool("p", funded_ledger, oracle, vault, BETTING_END, BETTING_END, STAKE, currency="ETH")

    @pytest.mark.parametrize("stake", [Decimal("0"), Decimal("-1"), Decimal("Infinity"), 1.0, True])
    def test_invalid_stake(self, funded_ledger, oracle, vault, stake):
        with pytest.raises(InvalidPoolParameters):
            make_pool(funded_ledger, oracle=oracle, vault=vault, stake=stake)

    def test_stake_beyond_currency_precision(self):
        ledger = make_ledger()
        with pytest.raises(InvalidPoolParameters, match="precision"):
            make_pool(ledger, stake=Decimal("1e-19"))

    def test_int_stake_accepted(self, funded_ledger, oracle, vault):
        pool = make_pool(funded_ledger, oracle=oracle, vault=vault, stake=2)
        assert pool.stake_amount == Decimal("2")

    def test_unknown_currency(self, funded_ledger, oracle, vault):
        with pytest.raises(UnitNotRegistered):
            SettlementPool("p", funded_ledger, oracle, vault, BETTING_END, LOCK_IN_END, STAKE, currency="BTC")


# =============================================================================
# PHASES
# =============================================================================

class TestPhase:

    def test_initial_phase_is_betting(self, pool):
        assert pool.phase is Phase.BETTING

    def test_boundaries(self, pool):
        assert pool.phase_at(BETTING_END - timedelta(microseconds=1)) is Phase.BETTING
        assert pool.phase_at(BETTING_END) is Phase.LOCK_IN
        assert pool.phase_at(LOCK_IN_END - timedelta(microseconds=1)) is Phase.LOCK_IN
        assert pool.phase_at(LOCK_IN_END) is Phase.POST_LOCK_IN

    def test_phase_follows_ledger_clock(self, pool, funded_ledger):
        funded_ledger.advance_time(BETTING_END)
        assert pool.phase is Phase.LOCK_IN
        funded_ledger.advance_time(LOCK_IN_END)
        assert pool.phase is Phase.POST_LOCK_IN

    def test_resolved_is_permanent(self, pool, funded_ledger):
        pool.place_bet("alice", 24000, STAKE)
        _to_post_lock_in(funded_ledger)
        pool.find_winner()
        assert pool.phase is Phase.RESOLVED
        funded_ledger.advance_time(LOCK_IN_END + timedelta(days=365))
        assert pool.phase is Phase.RESOLVED
        assert pool.phase_at(T0) is Phase.RESOLVED


# =============================================================================
# PLACE BET
# =============================================================================

class TestPlaceBet:

    def test_place_bet(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 25000, STAKE)
        assert tid == 1
        ticket = pool.get_ticket(tid)
        assert ticket.owner == "alice"
        assert ticket.guess == 25000
        assert ticket.shares == Decimal("1")
        assert not ticket.withdrawn
        assert pool.total_deposited == Decimal("1")
        assert funded_ledger.get_balance("alice", "ETH") == Decimal("9")
        assert funded_ledger.get_balance("vault", "ETH") == Decimal("1")

    def test_emits_bet_placed(self, pool):
        tid = pool.place_bet("alice", 25000, STAKE)
        assert pool.events.last() == BetPlaced(ticket_id=tid, owner="alice", guess=25000)

    def test_ids_increase(self, pool):
        ids = [pool.place_bet(b, 100, STAKE) for b in ("alice", "bob", "alice")]
        assert ids == [1, 2, 3]
        assert pool.tickets_of("alice") == [1, 3]

    def test_zero_guess_allowed(self, pool):
        assert pool.bet_of(pool.place_bet("alice", 0, STAKE)) == 0

    @pytest.mark.parametrize("stake", [Decimal("0.5"), Decimal("2"), Decimal("0"), 0, "1", 1.0])
    def test_wrong_stake(self, pool, stake):
        with pytest.raises(InvalidStakeAmount, match="Invalid stake amount"):
            pool.place_bet("alice", 100, stake)
        assert len(pool.tickets) == 0

    def test_int_stake_equal_to_amount(self, pool):
        assert pool.place_bet("alice", 100, 1) == 1

    def test_equivalent_decimal_stake(self, pool):
        assert pool.place_bet("alice", 100, Decimal("1.000")) == 1

    @pytest.mark.parametrize("guess", [-1, 1.5, "100", True, None])
    def test_invalid_guess(self, pool, guess):
        with pytest.raises(InvalidGuess):
            pool.place_bet("alice", guess, STAKE)
        assert pool.total_deposited == Decimal("0")

    def test_rejected_in_lock_in(self, pool, funded_ledger):
        funded_ledger.advance_time(BETTING_END)
        with pytest.raises(WrongPhase, match="Bet staking period has ended") as excinfo:
            pool.place_bet("alice", 100, STAKE)
        assert excinfo.value.phase is Phase.LOCK_IN

    def test_rejected_after_lock_in(self, pool, funded_ledger):
        _to_post_lock_in(funded_ledger)
        with pytest.raises(WrongPhase):
            pool.place_bet("alice", 100, STAKE)

    def test_phase_checked_before_stake(self, pool, funded_ledger):
        funded_ledger.advance_time(BETTING_END)
        with pytest.raises(WrongPhase):
            pool.place_bet("alice", -1, Decimal("7"))

    def test_insufficient_funds(self, funded_ledger, oracle, vault):
        funded_ledger.register_wallet("pauper")
        pool = make_pool(funded_ledger, oracle=oracle, vault=vault)
        with pytest.raises(InsufficientFunds):
            pool.place_bet("pauper", 100, STAKE)
        assert len(pool.tickets) == 0
        assert vault.total_assets == Decimal("0")

    def test_unregistered_bettor(self, pool):
        with pytest.raises(WalletNotRegistered):
            pool.place_bet("mallory", 100, STAKE)

    def test_shares_reflect_vault_yield(self, pool, vault):
        pool.place_bet("alice", 100, STAKE)
        vault.accrue(Decimal("1"))
        tid = pool.place_bet("bob", 200, STAKE)
        assert pool.get_ticket(tid).shares == Decimal("0.5")
        assert pool.total_deposited == Decimal("1.5")


# =============================================================================
# WITHDRAW
# =============================================================================

class TestWithdrawFunds:

    def test_withdraw_during_betting(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        amount = pool.withdraw_funds("alice", tid)
        assert amount == STAKE
        assert funded_ledger.get_balance("alice", "ETH") == Decimal("10")
        assert pool.get_ticket(tid).withdrawn
        assert pool.total_deposited == Decimal("0")
        assert pool.events.last() == FundsWithdrawn(ticket_id=tid, amount=amount)

    def test_withdraw_blocked_in_lock_in(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        funded_ledger.advance_time(BETTING_END)
        with pytest.raises(WrongPhase, match="Cannot withdraw funds in lockin period"):
            pool.withdraw_funds("alice", tid)
        assert not pool.get_ticket(tid).withdrawn

    def test_withdraw_post_lock_in_before_resolution(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(funded_ledger)
        assert pool.withdraw_funds("alice", tid) == STAKE

    def test_withdraw_after_resolution_with_yield(self, pool, funded_ledger, vault):
        a = pool.place_bet("alice", 24000, STAKE)
        b = pool.place_bet("bob", 30000, STAKE)
        vault.accrue(Decimal("0.2"))
        _to_post_lock_in(funded_ledger)
        assert pool.find_winner() == a
        assert pool.withdraw_funds("alice", a) == Decimal("1.1")
        assert pool.withdraw_funds("bob", b) == Decimal("1.1")
        assert funded_ledger.get_balance("vault", "ETH") == Decimal("0")
        assert verify_conservation(funded_ledger)[0]

    def test_not_owner(self, pool):
        tid = pool.place_bet("alice", 100, STAKE)
        with pytest.raises(NotTicketOwner):
            pool.withdraw_funds("bob", tid)

    def test_twice(self, pool):
        tid = pool.place_bet("alice", 100, STAKE)
        pool.withdraw_funds("alice", tid)
        with pytest.raises(AlreadyWithdrawn):
            pool.withdraw_funds("alice", tid)

    def test_unknown_ticket(self, pool):
        with pytest.raises(UnknownTicket):
            pool.withdraw_funds("alice", 99)

    def test_ownership_checked_before_phase(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        funded_ledger.advance_time(BETTING_END)
        with pytest.raises(NotTicketOwner):
            pool.withdraw_funds("bob", tid)

    def test_transferred_ticket_pays_new_owner(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        pool.transfer_ticket("alice", tid, "bob")
        with pytest.raises(NotTicketOwner):
            pool.withdraw_funds("alice", tid)
        pool.withdraw_funds("bob", tid)
        assert funded_ledger.get_balance("bob", "ETH") == Decimal("11")

    def test_withdraw_to_unregistered_owner(self, pool):
        tid = pool.place_bet("alice", 100, STAKE)
        pool.transfer_ticket("alice", tid, "mallory")
        with pytest.raises(WalletNotRegistered):
            pool.withdraw_funds("mallory", tid)
        assert not pool.get_ticket(tid).withdrawn

    def test_loss_logged(self, pool, vault, caplog):
        tid = pool.place_bet("alice", 100, STAKE)
        vault.total_assets -= Decimal("0.1")
        with caplog.at_level("WARNING", logger="predpool.pool"):
            amount = pool.withdraw_funds("alice", tid)
        assert amount == Decimal("0.9")
        assert "below stake" in caplog.text


# =============================================================================
# FIND WINNER
# =============================================================================

class TestFindWinner:

    def test_closest_wins(self, pool, funded_ledger):
        pool.place_bet("alice", 21000, STAKE)
        bob = pool.place_bet("bob", 25000, STAKE)
        _to_post_lock_in(funded_ledger)
        assert pool.find_winner() == bob
        assert pool.winner_ticket == bob
        assert pool.observed_value == 24800
        assert pool.winner().owner == "bob"
        assert pool.events.last() == WinnerFound(ticket_id=bob, value=24800, guess_at_win=25000)

    def test_tie_lowest_id(self, pool, funded_ledger):
        first = pool.place_bet("alice", 25000, STAKE)
        pool.place_bet("bob", 24600, STAKE)
        _to_post_lock_in(funded_ledger)
        assert pool.find_winner() == first

    def test_before_lock_in_ends(self, pool, funded_ledger):
        pool.place_bet("alice", 100, STAKE)
        with pytest.raises(WrongPhase, match="Bet has not ended"):
            pool.find_winner()
        funded_ledger.advance_time(BETTING_END)
        with pytest.raises(WrongPhase):
            pool.find_winner()

    def test_already_resolved(self, pool, funded_ledger):
        pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(funded_ledger)
        winner = pool.find_winner()
        with pytest.raises(AlreadyResolved):
            pool.find_winner()
        assert pool.winner_ticket == winner
        assert len(pool.events.of_type(WinnerFound)) == 1

    def test_no_tickets(self, pool, funded_ledger):
        _to_post_lock_in(funded_ledger)
        with pytest.raises(NoParticipants, match="There are no users"):
            pool.find_winner()
        assert pool.phase is Phase.POST_LOCK_IN

    def test_all_withdrawn(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        pool.withdraw_funds("alice", tid)
        _to_post_lock_in(funded_ledger)
        with pytest.raises(NoParticipants):
            pool.find_winner()

    def test_withdrawn_ticket_excluded(self, pool, funded_ledger):
        exact = pool.place_bet("alice", 24800, STAKE)
        other = pool.place_bet("bob", 10000, STAKE)
        pool.withdraw_funds("alice", exact)
        _to_post_lock_in(funded_ledger)
        assert pool.find_winner() == other

    def test_reads_oracle_once(self, funded_ledger):
        oracle = RecordingOracle(OracleReading(PRICE_24800, 1, T0, 8))
        pool = make_pool(funded_ledger, oracle=oracle)
        pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(funded_ledger)
        pool.find_winner()
        assert oracle.calls == 1

    def test_no_funds_move(self, pool, funded_ledger):
        pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(funded_ledger)
        before = len(funded_ledger.transaction_log)
        pool.find_winner()
        assert len(funded_ledger.transaction_log) == before


# =============================================================================
# ORACLE VALIDATION
# =============================================================================

class TestOracleValidation:

    def _resolvable_pool(self, ledger, oracle):
        pool = make_pool(ledger, oracle=oracle)
        pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(ledger)
        return pool

    def test_stale_reading(self, funded_ledger):
        oracle = StaticPriceOracle(PRICE_24800, T0 - timedelta(hours=2), decimals=8)
        pool = self._resolvable_pool(funded_ledger, oracle)
        with pytest.raises(AdapterFailure, match="stale"):
            pool.find_winner()
        assert pool.winner_ticket is None

    def test_custom_max_age(self, funded_ledger):
        oracle = StaticPriceOracle(PRICE_24800, T0 - timedelta(hours=2), decimals=8)
        pool = make_pool(funded_ledger, oracle=oracle, max_oracle_age=timedelta(days=1))
        pool.place_bet("alice", 100, STAKE)
        _to_post_lock_in(funded_ledger)
        assert pool.find_winner() == 1

    @pytest.mark.parametrize("value", [-1, True, 1.5, None])
    def test_invalid_value(self, funded_ledger, value):
        oracle = RecordingOracle(OracleReading(value, 1, T0, 0))
        pool = self._resolvable_pool(funded_ledger, oracle)
        with pytest.raises(AdapterFailure):
            pool.find_winner()

    @pytest.mark.parametrize("updated_at", [None, "2025-01-01T12:00:00", T0.replace(tzinfo=timezone.utc)])
    def test_invalid_timestamp(self, funded_ledger, updated_at):
        oracle = RecordingOracle(OracleReading(PRICE_24800, 1, updated_at, 8))
        pool = self._resolvable_pool(funded_ledger, oracle)
        with pytest.raises(AdapterFailure, match="timestamp"):
            pool.find_winner()
        assert pool.phase is Phase.POST_LOCK_IN

    def test_not_a_reading(self, funded_ledger):
        oracle = RecordingOracle(24800)
        pool = self._resolvable_pool(funded_ledger, oracle)
        with pytest.raises(AdapterFailure):
            pool.find_winner()

    def test_latest_observed_value(self, pool):
        assert pool.latest_observed_value() == 24800


# =============================================================================
# TRANSFER AND QUERIES
# =============================================================================

class TestTransferTicket:

    def test_transfer(self, pool):
        tid = pool.place_bet("alice", 100, STAKE)
        pool.transfer_ticket("alice", tid, "bob")
        assert pool.owner_of(tid) == "bob"
        assert pool.bet_of(tid) == 100
        assert pool.events.last() == TicketTransferred(ticket_id=tid, from_owner="alice", to_owner="bob")

    def test_transfer_in_lock_in_allowed(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 100, STAKE)
        funded_ledger.advance_time(BETTING_END)
        pool.transfer_ticket("alice", tid, "bob")
        assert pool.owner_of(tid) == "bob"

    def test_transfer_not_owner(self, pool):
        tid = pool.place_bet("alice", 100, STAKE)
        with pytest.raises(NotTicketOwner):
            pool.transfer_ticket("bob", tid, "bob")

    def test_transfer_unknown(self, pool):
        with pytest.raises(UnknownTicket):
            pool.transfer_ticket("alice", 5, "bob")

    def test_transferred_winner(self, pool, funded_ledger):
        tid = pool.place_bet("alice", 24800, STAKE)
        pool.transfer_ticket("alice", tid, "carol")
        _to_post_lock_in(funded_ledger)
        pool.find_winner()
        assert pool.winner().owner == "carol"


class TestQueries:

    def test_unresolved_winner_queries(self, pool):
        assert pool.winner_ticket is None
        assert pool.winner() is None
        assert pool.observed_value is None

    def test_owner_of_unknown(self, pool):
        with pytest.raises(UnknownTicket):
            pool.owner_of(1)

    def test_bet_of_unknown(self, pool):
        with pytest.raises(UnknownTicket):
            pool.bet_of(1)

    def test_to_record(self, pool, funded_ledger):
        a = pool.place_bet("alice", 100, STAKE)
        pool.place_bet("bob", 24000, STAKE)
        pool.withdraw_funds("alice", a)
        _to_post_lock_in(funded_ledger)
        pool.find_winner()

        record = pool.to_record()
        assert record.pool_id == pool.pool_id
        assert record.betting_period_ends_at == BETTING_END
        assert record.lock_in_period_ends_at == LOCK_IN_END
        assert record.stake_amount == STAKE
        assert record.winner_ticket == 2
        assert record.observed_value == 24800
        assert record.total_deposited == Decimal("1")
        assert [t.withdrawn for t in record.tickets] == [True, False]

    def test_total_deposited_matches_active_shares(self, pool, vault):
        ids = [pool.place_bet(b, 100, STAKE) for b in ("alice", "bob", "charlie")]
        vault.accrue(Decimal("0.3"))
        pool.place_bet("dave", 100, STAKE)
        pool.withdraw_funds("bob", ids[1])
        assert pool.total_deposited == pool.tickets.total_active_shares()

    def test_repr(self, pool):
        assert "betting" in repr(pool).lower()
