"""
vault.py - Yield vault adapters

A yield vault converts deposited stake into yield-accruing shares and back.

Classes:
- YieldVault: Protocol defining the vault interface the pool relies on
- LedgerYieldVault: In-memory lending venue whose cash sits in a custody
  wallet on the ledger

Funds flow:
    place_bet:  bettor --stake--> vault.wallet_id      (pool moves the cash)
    accrue:     system --yield--> vault.wallet_id      (venue interest)
    withdraw:   vault.wallet_id --amount--> owner      (pool moves the cash)

Share pricing follows the usual vault convention: the first deposit mints
shares one-for-one, later deposits mint amount * total_shares / total_assets.
Shares and payouts are rounded down, so rounding dust stays in the vault.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Protocol, runtime_checkable
import logging
import threading

from .core import (
    Move, TransactionOrigin, OriginType, ExecuteResult,
    SYSTEM_WALLET, LedgerError,
    build_transaction, quantize_shares,
)
from .ledger import Ledger

logger = logging.getLogger(__name__)


@runtime_checkable
class YieldVault(Protocol):
    """
    Protocol for yield venues.

    wallet_id is the ledger wallet holding the venue's cash. deposit() is
    called before the stake reaches that wallet; redeem() is called before
    the payout leaves it. Either may raise; the pool then aborts without
    moving funds.
    """
    wallet_id: str

    def deposit(self, amount: Decimal) -> Decimal:
        """Account for amount and return the shares minted for it."""
        ...

    def redeem(self, shares: Decimal) -> Decimal:
        """Burn shares and return the amount they are worth."""
        ...


class LedgerYieldVault:
    """
    Lending venue simulated on the custody ledger.

    The vault keeps its own books (total_assets, total_shares); the ledger
    balance of wallet_id equals total_assets plus rounding dust once every
    deposit has landed.

    Example:
        vault = LedgerYieldVault(ledger, "aave", "ETH")
        shares = vault.deposit(Decimal("1"))
        vault.accrue(Decimal("0.05"))
        vault.preview_redeem(shares)   # Decimal("1.05")
    """

    def __init__(self, ledger: Ledger, wallet_id: str, currency: str):
        self.ledger = ledger
        self.wallet_id = wallet_id
        self.currency = currency
        self.total_assets = Decimal("0")
        self.total_shares = Decimal("0")
        self._accrual_sequence = 0
        self._lock = threading.Lock()
        if not ledger.is_registered(wallet_id):
            ledger.register_wallet(wallet_id)

    def _round_amount(self, value: Decimal) -> Decimal:
        return self.ledger.get_unit(self.currency).round(value)

    def preview_deposit(self, amount: Decimal) -> Decimal:
        if self.total_shares == 0 or self.total_assets == 0:
            return quantize_shares(amount)
        return quantize_shares(amount * self.total_shares / self.total_assets)

    def preview_redeem(self, shares: Decimal) -> Decimal:
        if self.total_shares == 0:
            return Decimal("0")
        return self._round_amount(shares * self.total_assets / self.total_shares)

    def deposit(self, amount: Decimal) -> Decimal:
        """
        Raises:
            ValueError: If amount is not a positive Decimal or mints no shares
        """
        if not isinstance(amount, Decimal) or not amount.is_finite() or amount <= 0:
            raise ValueError(f"Deposit amount must be a positive Decimal, got {amount!r}")
        with self._lock:
            shares = self.preview_deposit(amount)
            if shares <= 0:
                raise ValueError(f"Deposit of {amount} mints no shares")
            self.total_assets += amount
            self.total_shares += shares
        logger.debug("%s deposit %s -> %s shares", self.wallet_id, amount, shares)
        return shares

    def redeem(self, shares: Decimal) -> Decimal:
        """
        Raises:
            ValueError: If shares is not positive or exceeds the outstanding supply
        """
        if not isinstance(shares, Decimal) or not shares.is_finite() or shares <= 0:
            raise ValueError(f"Redeemed shares must be a positive Decimal, got {shares!r}")
        with self._lock:
            if shares > self.total_shares:
                raise ValueError(f"Cannot redeem {shares} shares, only {self.total_shares} outstanding")
            amount = self.preview_redeem(shares)
            self.total_shares -= shares
            self.total_assets -= amount
        logger.debug("%s redeem %s shares -> %s", self.wallet_id, shares, amount)
        return amount

    def accrue(self, amount: Decimal) -> Decimal:
        """
        Credit venue interest: issued from the system wallet into wallet_id.

        Raises:
            ValueError: If amount is negative
            LedgerError: If the ledger rejects the issuance
        """
        if amount < 0:
            raise ValueError(f"Accrued yield cannot be negative, got {amount}")
        amount = self._round_amount(amount)
        if amount == 0:
            return amount
        with self._lock:
            self._accrual_sequence += 1
            pending = build_transaction(
                self.ledger,
                [Move(amount, self.currency, SYSTEM_WALLET, self.wallet_id,
                      f"{self.wallet_id}:yield:{self._accrual_sequence}")],
                origin=TransactionOrigin(OriginType.VENUE, self.wallet_id, "YIELD"),
            )
            if self.ledger.execute(pending) != ExecuteResult.APPLIED:
                raise LedgerError(f"Yield accrual of {amount} rejected for {self.wallet_id}")
            self.total_assets += amount
        logger.info("%s accrued %s %s", self.wallet_id, amount, self.currency)
        return amount

    def accrue_rate(self, rate: Decimal) -> Decimal:
        """Accrue interest as a fraction of the assets under management."""
        return self.accrue(self.total_assets * rate)

    def __repr__(self):
        return (f"LedgerYieldVault({self.wallet_id}, assets={self.total_assets}, "
                f"shares={self.total_shares})")
