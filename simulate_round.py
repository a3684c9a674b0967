#!/usr/bin/env python3
"""
simulate_round.py - Walk through one prediction round

Five bettors stake 1 ETH each on the BTC/USD price at the end of the round.
Stakes sit in a yield vault while the round runs; afterwards the guess
closest to the oracle price wins and everyone pulls principal plus yield.

STEPS:
  1: Setup        - Ledger, vault, oracle, factory, one round
  2: Betting      - Four bets, one early exit, one late bet
  3: Lock-in      - Exits and resolution refused
  4: Resolution   - Oracle read, winner selected
  5: Claims       - Everyone withdraws, conservation checked

Run:
    python simulate_round.py           # Interactive mode (press Enter for each step)
    python simulate_round.py --quick   # Run all steps without pausing
    python simulate_round.py --log     # Also show the engine's log records
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict
import logging
import sys

from predpool import (
    Ledger, cash, SYSTEM_WALLET,
    LedgerYieldVault, StaticPriceOracle,
    PoolFactory, SettlementPool, RoundKeeper,
    PoolError,
)


# ============================================================================
# CONFIGURATION
# ============================================================================

@dataclass
class SimulationConfig:
    """Round parameters. Modify these to experiment."""
    start_time: datetime = datetime(2025, 1, 1, 12, 0, 0)
    betting_seconds: int = 60
    lock_in_seconds: int = 120
    stake: Decimal = Decimal("1")
    funding: Decimal = Decimal("10")

    # BTC/USD feed, 8 decimals
    feed_decimals: int = 8
    settlement_price: int = 2_480_000_000_000

    # Vault interest credited during lock-in
    vault_yield_rate: Decimal = Decimal("0.05")

    guesses: Dict[str, int] = field(default_factory=lambda: {
        "alice": 30000,
        "bob": 21000,
        "charlie": 26000,
        "dave": 23000,
    })
    late_bettor: str = "eve"
    late_guess: int = 25000
    early_exit: str = "alice"


CONFIG = SimulationConfig()

QUICK_MODE = "--quick" in sys.argv


def wait_for_enter():
    if not QUICK_MODE:
        input("\n[Press Enter to continue...]")


def step_header(number: int, title: str):
    print(f"\n{'='*70}")
    print(f"STEP {number}: {title}")
    print(f"{'='*70}\n")


def at(seconds: int) -> datetime:
    return CONFIG.start_time + timedelta(seconds=seconds)


def show_balances(ledger: Ledger, wallets):
    for wallet in wallets:
        print(f"  {wallet:<10} {ledger.get_balance(wallet, 'ETH'):>12.6f} ETH")


# ============================================================================
# STEPS
# ============================================================================

def step_01_setup():
    step_header(1, "Setup")
    ledger = Ledger("simulation", CONFIG.start_time)
    ledger.register_unit(cash("ETH", "Ether"))

    bettors = list(CONFIG.guesses) + [CONFIG.late_bettor]
    for bettor in bettors:
        ledger.register_wallet(bettor)
        ledger.issue(bettor, "ETH", CONFIG.funding)

    vault = LedgerYieldVault(ledger, "vault", "ETH")
    oracle = StaticPriceOracle(CONFIG.settlement_price, CONFIG.start_time, CONFIG.feed_decimals)
    factory = PoolFactory(ledger, oracle, vault, currency="ETH")
    pool = factory.create_pool(at(CONFIG.betting_seconds), at(CONFIG.lock_in_seconds), CONFIG.stake)

    print(f"Pool {pool.pool_id}")
    print(f"  betting ends  {pool.betting_period_ends_at}")
    print(f"  lock-in ends  {pool.lock_in_period_ends_at}")
    print(f"  stake         {pool.stake_amount} ETH")
    print(f"  phase         {pool.phase.value}")
    print(f"\nBettors funded with {CONFIG.funding} ETH each:")
    show_balances(ledger, bettors)
    return ledger, vault, oracle, factory, pool, bettors


def step_02_betting(ledger: Ledger, pool: SettlementPool) -> Dict[str, int]:
    step_header(2, "Betting")
    tickets = {}
    for i, (bettor, guess) in enumerate(CONFIG.guesses.items()):
        ledger.advance_time(at(5 * (i + 1)))
        tickets[bettor] = pool.place_bet(bettor, guess, CONFIG.stake)
        print(f"  t+{5 * (i + 1):>3}s  {bettor:<8} guesses {guess:>6}  -> ticket {tickets[bettor]}")

    ledger.advance_time(at(30))
    amount = pool.withdraw_funds(CONFIG.early_exit, tickets[CONFIG.early_exit])
    print(f"  t+ 30s  {CONFIG.early_exit:<8} withdraws ticket {tickets[CONFIG.early_exit]}, receives {amount:.6f} ETH")

    ledger.advance_time(at(40))
    tickets[CONFIG.late_bettor] = pool.place_bet(CONFIG.late_bettor, CONFIG.late_guess, CONFIG.stake)
    print(f"  t+ 40s  {CONFIG.late_bettor:<8} guesses {CONFIG.late_guess:>6}  -> ticket {tickets[CONFIG.late_bettor]}")

    print(f"\nActive tickets: {[t.ticket_id for t in pool.active_tickets()]}")
    print(f"Vault shares backing them: {pool.total_deposited}")
    return tickets


def step_03_lock_in(ledger: Ledger, vault: LedgerYieldVault, pool: SettlementPool, tickets: Dict[str, int]):
    step_header(3, "Lock-in")
    ledger.advance_time(at(90))
    print(f"t+90s, phase is {pool.phase.value}")

    for label, call in (
        ("bob withdraws", lambda: pool.withdraw_funds("bob", tickets["bob"])),
        ("anyone resolves", pool.find_winner),
        ("frank bets", lambda: pool.place_bet("frank", 24800, CONFIG.stake)),
    ):
        try:
            call()
        except PoolError as exc:
            print(f"  {label:<16} refused: {type(exc).__name__}: {exc}")

    accrued = vault.accrue_rate(CONFIG.vault_yield_rate)
    print(f"\nVault earns {accrued:.6f} ETH of interest")


def step_04_resolution(ledger: Ledger, factory: PoolFactory, pool: SettlementPool):
    step_header(4, "Resolution")
    keeper = RoundKeeper(ledger, factory)
    found = keeper.step(at(121))
    event = found[0]
    winner = pool.winner()
    print(f"Oracle price: {pool.latest_observed_value()} USD")
    print(f"Winning ticket {event.ticket_id} owned by {winner.owner}, guess {event.guess_at_win}")
    print(f"Phase: {pool.phase.value}")


def step_05_claims(ledger: Ledger, pool: SettlementPool, tickets: Dict[str, int], bettors):
    step_header(5, "Claims")
    for bettor, tid in tickets.items():
        if pool.get_ticket(tid).withdrawn:
            continue
        amount = pool.withdraw_funds(bettor, tid)
        print(f"  {bettor:<8} claims ticket {tid}: {amount:.6f} ETH")

    print("\nFinal balances:")
    show_balances(ledger, bettors + ["vault"])

    report = ledger.verify_double_entry()
    print(f"\nIssued from {SYSTEM_WALLET}: {-ledger.get_balance(SYSTEM_WALLET, 'ETH'):.6f} ETH")
    print(f"Double entry holds: {report['valid']}")


def main():
    if "--log" in sys.argv:
        logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    ledger, vault, oracle, factory, pool, bettors = step_01_setup()
    wait_for_enter()
    tickets = step_02_betting(ledger, pool)
    wait_for_enter()
    step_03_lock_in(ledger, vault, pool, tickets)
    wait_for_enter()
    step_04_resolution(ledger, factory, pool)
    wait_for_enter()
    step_05_claims(ledger, pool, tickets, bettors)


if __name__ == "__main__":
    main()
