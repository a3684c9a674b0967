"""
conftest.py - Shared pytest fixtures for settlement pool tests

Provides common fixtures used across unit, functional and conformance tests:
- Ledgers (empty, funded with bettors)
- Adapters (ledger-backed vault, static oracle)
- Pools and factories with the standard 60s / 120s round timing
"""

import pytest

from predpool import (
    Ledger, cash,
    LedgerYieldVault, StaticPriceOracle,
    PoolFactory, RoundKeeper,
)

from tests.builders import T0, PRICE_24800, make_ledger, make_pool


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def empty_ledger():
    """Fresh ledger with no units."""
    return Ledger("test", T0)


@pytest.fixture
def basic_ledger():
    """Ledger with ETH and two unfunded wallets."""
    ledger = Ledger("test", T0)
    ledger.register_unit(cash("ETH", "Ether"))
    ledger.register_wallet("alice")
    ledger.register_wallet("bob")
    return ledger


@pytest.fixture
def funded_ledger():
    """Ledger with five bettors holding 10 ETH each."""
    return make_ledger()


# =============================================================================
# ADAPTER FIXTURES
# =============================================================================

@pytest.fixture
def vault(funded_ledger):
    return LedgerYieldVault(funded_ledger, "vault", "ETH")


@pytest.fixture
def oracle(funded_ledger):
    """Static oracle reading 24800 USD, fresh as of T0."""
    return StaticPriceOracle(PRICE_24800, T0, decimals=8)


# =============================================================================
# POOL FIXTURES
# =============================================================================

@pytest.fixture
def pool(funded_ledger, oracle, vault):
    """Pool in BETTING phase: betting ends T0+60s, lock-in ends T0+120s, stake 1 ETH."""
    return make_pool(funded_ledger, oracle=oracle, vault=vault)


@pytest.fixture
def factory(funded_ledger, oracle, vault):
    return PoolFactory(funded_ledger, oracle, vault, currency="ETH")


@pytest.fixture
def keeper(funded_ledger, factory):
    return RoundKeeper(funded_ledger, factory)
