"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of a settlement pool.
Any compliant implementation MUST pass these tests.

The tests are organized by invariant:
1. conservation.py - Funds are never created or destroyed by a round
2. atomicity.py - Failed operations leave pool and ledger untouched
3. idempotency.py - Custody transfers and resolution happen exactly once
4. determinism.py - Winner selection is a pure function of the active set
5. temporal.py - Phase gating by the ledger clock
6. reentrancy.py - Adapter callbacks cannot re-enter a pool

These tests use hypothesis for property-based testing.
"""
