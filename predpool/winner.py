"""
winner.py - Closest-guess winner selection

Pure function, no ledger or pool access:

    winner = argmin over active tickets of (|guess - observed|, ticket_id)

Ordering by the (distance, ticket_id) pair makes the lowest ticket id win
among equally close guesses, so the result does not depend on the order the
candidates are supplied in.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Tuple

from .core import NoParticipants


@dataclass(frozen=True, slots=True)
class WinnerSelection:
    """Outcome of compute_winner()."""
    ticket_id: int
    guess: int
    observed_value: int
    distance: int


def compute_winner(candidates: Iterable[Tuple[int, int]], observed_value: int) -> WinnerSelection:
    """
    Select the candidate whose guess is closest to the observed value.

    Args:
        candidates: (ticket_id, guess) pairs of every eligible ticket
        observed_value: Value read from the price oracle

    Returns:
        WinnerSelection for the minimum distance, ties broken by lowest ticket id

    Raises:
        NoParticipants: If there are no candidates

    Example:
        >>> compute_winner([(2, 21000), (4, 23000), (5, 25000)], 24800).ticket_id
        5
    """
    best = None
    for ticket_id, guess in candidates:
        key = (abs(guess - observed_value), ticket_id)
        if best is None or key < best[0]:
            best = (key, guess)

    if best is None:
        raise NoParticipants("There are no active tickets")

    (distance, ticket_id), guess = best
    return WinnerSelection(
        ticket_id=ticket_id,
        guess=guess,
        observed_value=observed_value,
        distance=distance,
    )
