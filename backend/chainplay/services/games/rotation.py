"""Deterministic partner rotation for party chains.

A party of n players runs n chains at once. For 3 < n <= 26 each chain
follows one row of a seeded n x n Latin square: row i starts with roster[i]
and every row and column holds each player exactly once, so every player
fills every slot position exactly once across the party. The square is built
from a Williams-style column permutation, scaled by a seed-chosen unit of
Z_n so different parties get different (but reproducible) orders.

Smaller and larger rosters fall back to plain round-robin.

Everything here is pure: no database, no app context.
"""

from dataclasses import dataclass
from math import gcd
from typing import List, Optional, Sequence

from chainplay.errors import RotationError

MIN_SQUARE_SIZE = 4
MAX_SQUARE_SIZE = 26


@dataclass(frozen=True)
class TurnContext:
    game_id: str
    season_id: Optional[str]
    completed_player_id: str
    completed_order_index: int
    # Explicit chain -> row mapping recorded when the chain was created
    row: Optional[int] = None


def string_to_seed(value: str) -> int:
    """Stable 32-bit string hash (h = 31 * h + code unit, wrapped signed)."""
    h = 0
    data = value.encode('utf-16-le')
    for i in range(0, len(data), 2):
        code_unit = data[i] | (data[i + 1] << 8)
        h = (h * 31 + code_unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


class SeededRNG:
    """Linear congruential generator; same seed, same sequence."""

    def __init__(self, seed: int):
        self.seed = seed

    def next_int(self) -> int:
        self.seed = (self.seed * 1664525 + 1013904223) % 2 ** 32
        return self.seed

    def next_int_in_range(self, low: int, high: int) -> int:
        return low + (self.next_int() % (high - low + 1))


def coprimes(n: int) -> List[int]:
    return [i for i in range(1, n) if gcd(i, n) == 1]


def williams_permutation(n: int) -> List[int]:
    p = [0] * n
    if n % 2 == 0:
        for j in range(n):
            p[j] = j // 2 if j % 2 == 0 else n - (j + 1) // 2
    else:
        for j in range(1, n):
            p[j] = (j + 1) // 2 if j % 2 else n - j // 2
    return p


def generate_square(n: int, seed: int) -> List[List[int]]:
    """n x n Latin square of roster positions; row i starts with i."""
    if n < MIN_SQUARE_SIZE:
        raise ValueError('n must be greater than 3')
    if n > MAX_SQUARE_SIZE:
        raise ValueError('n cannot be greater than 26')

    rng = SeededRNG(seed)
    units = coprimes(n)
    a = units[rng.next_int_in_range(0, len(units) - 1)]
    # p[0] stays 0 after scaling, which keeps row i starting with i
    columns = [(p * a) % n for p in williams_permutation(n)]
    return [[(i + columns[j]) % n for j in range(n)] for i in range(n)]


def rotation_matrix(roster: Sequence[str], seed: int) -> List[List[str]]:
    square = generate_square(len(roster), seed)
    return [[roster[k] for k in row] for row in square]


def next_player_round_robin(completed_player_id: str, roster: Sequence[str]) -> str:
    try:
        index = list(roster).index(completed_player_id)
    except ValueError:
        raise RotationError(f'Completed turn player not found in party roster: {completed_player_id}')
    return roster[(index + 1) % len(roster)]


def uses_square(n: int) -> bool:
    return MIN_SQUARE_SIZE <= n <= MAX_SQUARE_SIZE


def next_player(context: TurnContext, roster: Sequence[str], chains: Sequence[str] = ()) -> Optional[str]:
    """Who takes the next turn in the chain that just advanced.

    `chains` is the party's chain ids in creation order; it is only consulted
    when the context carries no explicit row. Returns None once the chain's
    row is exhausted.
    """
    n = len(roster)
    if not uses_square(n):
        return next_player_round_robin(context.completed_player_id, roster)

    if not context.season_id:
        raise RotationError('Season id is required for rotation matrix assignment')

    row = context.row
    if row is None:
        try:
            row = list(chains).index(context.game_id)
        except ValueError:
            return next_player_round_robin(context.completed_player_id, roster)
    if not 0 <= row < n:
        return next_player_round_robin(context.completed_player_id, roster)

    column = context.completed_order_index + 1
    if column >= n:
        return None
    return rotation_matrix(roster, string_to_seed(context.season_id))[row][column]
