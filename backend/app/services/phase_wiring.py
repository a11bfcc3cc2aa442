"""
Phase Wiring - pure encounter plans for a resolved phase.

Round robin / pools: circle-method pairings per group.
Brackets: round 1 pairs slots in bracket-fold order (seed 1 meets seed 2 only
in the final if chalk holds), later rounds pair winners of consecutive
encounters. Encounter numbers are assigned so that every encounter's source
encounters come before it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

ROLE_WINNER = "WINNER"
ROLE_LOSER = "LOSER"

BRACKET_POOL = "Pool"
BRACKET_WINNERS = "Winners"
BRACKET_LOSERS = "Losers"
BRACKET_GRAND_FINAL = "GrandFinal"
BRACKET_CONSOLATION = "Consolation"


@dataclass
class SideSource:
    """Either an incoming slot number or the WINNER/LOSER of an earlier encounter."""

    slot_number: Optional[int] = None
    encounter_number: Optional[int] = None
    role: Optional[str] = None

    @classmethod
    def slot(cls, number: int) -> "SideSource":
        return cls(slot_number=number)

    @classmethod
    def winner_of(cls, encounter_number: int) -> "SideSource":
        return cls(encounter_number=encounter_number, role=ROLE_WINNER)

    @classmethod
    def loser_of(cls, encounter_number: int) -> "SideSource":
        return cls(encounter_number=encounter_number, role=ROLE_LOSER)


@dataclass
class EncounterPlan:
    encounter_number: int
    label: str
    round_number: int
    round_name: str
    bracket: str
    bracket_position: int
    side1: SideSource
    side2: SideSource
    winner_exit_rank: Optional[int] = None
    loser_exit_rank: Optional[int] = None
    pool_index: Optional[int] = None  # 0-based


# =============================================================================
# Sizing helpers
# =============================================================================


def next_power_of_two(n: int) -> int:
    size = 1
    while size < n:
        size *= 2
    return size


def round_name(entrants: int) -> str:
    """Name of a bracket round by how many slots it starts with."""
    if entrants == 2:
        return "Finals"
    if entrants == 4:
        return "Semifinals"
    if entrants == 8:
        return "Quarterfinals"
    return f"Round of {entrants}"


def _round_abbreviation(entrants: int) -> str:
    return {2: "F", 4: "SF", 8: "QF"}.get(entrants, f"R{entrants}-")


def pool_name(index: int) -> str:
    """0 -> "A", 1 -> "B", ... ; past "Z" falls back to P27, P28, ..."""
    if index < 26:
        return chr(ord("A") + index)
    return f"P{index + 1}"


def split_pool_sizes(entrants: int, pool_count: int) -> List[int]:
    """Near-equal pool sizes, larger pools first (sizes differ by at most one)."""
    base, extra = divmod(entrants, pool_count)
    return [base + 1] * extra + [base] * (pool_count - extra)


def cross_pool_exit_rank(pool_index: int, pool_rank: int, pool_count: int) -> int:
    """Overall exit position of "pool #rank": Pool A #1, Pool B #1, ..., Pool A #2, ..."""
    return (pool_rank - 1) * pool_count + pool_index + 1


def rr_round_count(group_size: int) -> int:
    """Even n: n-1 rounds. Odd n: n rounds (one sits out each round)."""
    if group_size % 2 == 0:
        return group_size - 1
    return group_size


def rr_pairings_by_round(group_size: int) -> List[Tuple[int, int, int, int]]:
    """
    Round-robin pairings. Returns list of (round_index, sequence_in_round, idx_a, idx_b)
    with 0-based group positions.

    Group size 4 uses the fixed order 1v4, 2v3 / 1v3, 2v4 / 1v2, 3v4 so the top two
    positions meet last. Other sizes use the circle method.
    """
    if group_size == 4:
        return [
            (1, 1, 0, 3),
            (1, 2, 1, 2),
            (2, 1, 0, 2),
            (2, 2, 1, 3),
            (3, 1, 0, 1),
            (3, 2, 2, 3),
        ]

    n = group_size
    n2 = n + 1 if n % 2 == 1 else n
    half = n2 // 2
    sit_out = n if n % 2 == 1 else -1

    result: List[Tuple[int, int, int, int]] = []
    positions = list(range(n2))

    for round_num in range(1, n2):
        seq = 0
        for i in range(half):
            a, b = positions[i], positions[n2 - 1 - i]
            if a == sit_out or b == sit_out:
                continue
            seq += 1
            result.append((round_num, seq, min(a, b), max(a, b)))
        # Keep position 0 fixed, rotate the rest clockwise
        positions = [positions[0]] + [positions[-1]] + positions[1:-1]

    return result


def bracket_fold_positions(n: int) -> List[int]:
    """Standard bracket-fold order for *n* slots (n a power of two).

    Consecutive pairs are the round-1 pairings:
      4  -> [1, 4, 2, 3]
      8  -> [1, 8, 4, 5, 3, 6, 2, 7]
    """
    if n <= 2:
        return list(range(1, n + 1))

    half = bracket_fold_positions(n // 2)

    expanded: List[int] = []
    for s in half:
        expanded.append(s)
        expanded.append(n + 1 - s)

    mid = len(expanded) // 2
    top = expanded[:mid]
    bot = expanded[mid:]
    if len(bot) >= 4:
        bot = bot[:-4] + bot[-2:] + bot[-4:-2]

    return top + bot


def first_round_pairs(size: int, seeded: bool) -> List[Tuple[int, int]]:
    """Slot pairs for the first round of a bracket of *size* slots."""
    if seeded:
        order = bracket_fold_positions(size)
    else:
        order = list(range(1, size + 1))
    return [(order[i], order[i + 1]) for i in range(0, len(order), 2)]


def bye_slots_for(pairs: Sequence[Tuple[int, int]], filled: Sequence[int]) -> List[int]:
    """Filled slots whose paired slot stays empty."""
    filled_set = set(filled)
    byes = []
    for a, b in pairs:
        if a in filled_set and b not in filled_set:
            byes.append(a)
        elif b in filled_set and a not in filled_set:
            byes.append(b)
    return sorted(byes)


# =============================================================================
# Group play
# =============================================================================


def group_plans(
    groups: Sequence[Sequence[int]],
    group_labels: Sequence[str],
    bracket: str = BRACKET_POOL,
) -> List[EncounterPlan]:
    """Round robin inside each group, interleaved by round so every group plays round 1 first."""
    per_group = [rr_pairings_by_round(len(g)) for g in groups]
    max_round = max((p[-1][0] for p in per_group if p), default=0)

    plans: List[EncounterPlan] = []
    counters = [0] * len(groups)
    number = 0
    for round_num in range(1, max_round + 1):
        for gi, pairings in enumerate(per_group):
            for r, seq, idx_a, idx_b in pairings:
                if r != round_num:
                    continue
                number += 1
                counters[gi] += 1
                slots = groups[gi]
                plans.append(
                    EncounterPlan(
                        encounter_number=number,
                        label=f"{group_labels[gi]} M{counters[gi]}",
                        round_number=round_num,
                        round_name=f"Round {round_num}",
                        bracket=bracket,
                        bracket_position=seq,
                        side1=SideSource.slot(slots[idx_a]),
                        side2=SideSource.slot(slots[idx_b]),
                        pool_index=gi,
                    )
                )
    return plans


def assign_pool_slots(pool_sizes: Sequence[int], strategy: str = "Snake") -> List[List[int]]:
    """Distribute incoming slot numbers 1..sum(pool_sizes) across pools.

    Snake: A B C C B A A B C ... (full pools are skipped).
    Sequential: A gets the first pool_sizes[0] slots, then B, ...
    """
    pools: List[List[int]] = [[] for _ in pool_sizes]
    total = sum(pool_sizes)

    if strategy == "Sequential":
        slot = 1
        for i, size in enumerate(pool_sizes):
            pools[i] = list(range(slot, slot + size))
            slot += size
        return pools

    count = len(pool_sizes)
    snake = list(range(count)) + list(range(count - 1, -1, -1))
    pos = 0
    for slot in range(1, total + 1):
        while len(pools[snake[pos % len(snake)]]) >= pool_sizes[snake[pos % len(snake)]]:
            pos += 1
        pools[snake[pos % len(snake)]].append(slot)
        pos += 1
    return pools


# =============================================================================
# Brackets
# =============================================================================


def bracket_round_plans(
    incoming: int,
    seeded: bool,
    is_final: bool,
    include_consolation: bool,
) -> List[EncounterPlan]:
    """A single bracket round materialized as its own phase.

    Exit ranks: winner of bracket position p exits at p. With a consolation final the
    round before it also exits its losers (positions 3, 4), and the final itself is
    played as 1v2 (Champion/Runner-up) plus 3v4 (3rd/4th place).
    """
    if is_final and include_consolation:
        return [
            EncounterPlan(1, "Final", 1, "Finals", BRACKET_WINNERS, 1,
                          SideSource.slot(1), SideSource.slot(2), winner_exit_rank=1, loser_exit_rank=2),
            EncounterPlan(2, "3rd Place", 1, "Finals", BRACKET_CONSOLATION, 1,
                          SideSource.slot(3), SideSource.slot(4), winner_exit_rank=3, loser_exit_rank=4),
        ]

    name = round_name(incoming)
    abbr = _round_abbreviation(incoming)
    plans = []
    for p, (a, b) in enumerate(first_round_pairs(incoming, seeded), start=1):
        if is_final:
            plans.append(EncounterPlan(p, "Final", 1, name, BRACKET_WINNERS, p,
                                       SideSource.slot(a), SideSource.slot(b),
                                       winner_exit_rank=1, loser_exit_rank=2))
            continue
        plans.append(
            EncounterPlan(
                p, f"{abbr}{p}", 1, name, BRACKET_WINNERS, p,
                SideSource.slot(a), SideSource.slot(b),
                winner_exit_rank=p,
                loser_exit_rank=(incoming // 2 + p) if include_consolation else None,
            )
        )
    return plans


def single_elimination_plans(size: int, include_consolation: bool) -> List[EncounterPlan]:
    """Complete single-elimination bracket inside one phase."""
    plans: List[EncounterPlan] = []
    rounds: List[List[int]] = []
    number = 0
    remaining = size
    round_num = 0

    while remaining >= 2:
        round_num += 1
        name = round_name(remaining)
        abbr = _round_abbreviation(remaining)
        current: List[int] = []
        final = remaining == 2
        if round_num == 1:
            sides = [(SideSource.slot(a), SideSource.slot(b)) for a, b in first_round_pairs(remaining, True)]
        else:
            prev = rounds[-1]
            sides = [
                (SideSource.winner_of(prev[2 * i]), SideSource.winner_of(prev[2 * i + 1]))
                for i in range(len(prev) // 2)
            ]
        for p, (s1, s2) in enumerate(sides, start=1):
            number += 1
            current.append(number)
            plans.append(
                EncounterPlan(
                    number, "Final" if final else f"{abbr}{p}", round_num, name, BRACKET_WINNERS, p, s1, s2,
                    winner_exit_rank=1 if final else None,
                    loser_exit_rank=2 if final else None,
                )
            )
        rounds.append(current)
        remaining //= 2

    if include_consolation and size >= 4:
        semis = rounds[-2]
        number += 1
        plans.append(
            EncounterPlan(
                number, "3rd Place", round_num, "Finals", BRACKET_CONSOLATION, 1,
                SideSource.loser_of(semis[0]), SideSource.loser_of(semis[1]),
                winner_exit_rank=3, loser_exit_rank=4,
            )
        )
    return plans


def double_elimination_plans(size: int) -> List[EncounterPlan]:
    """Winners bracket, losers bracket and a single grand final (2*size - 2 encounters).

    Losers rounds alternate: a "minor" round pairs survivors among themselves, a
    "major" round meets the losers dropping down from the next winners round
    (in reverse order to delay rematches).
    """
    plans: List[EncounterPlan] = []
    number = 0

    def add(label, round_num, rname, bracket, position, s1, s2, **kwargs) -> int:
        nonlocal number
        number += 1
        plans.append(EncounterPlan(number, label, round_num, rname, bracket, position, s1, s2, **kwargs))
        return number

    # Winners bracket
    winners: List[List[int]] = []
    remaining = size
    round_num = 0
    while remaining >= 2:
        round_num += 1
        current = []
        if round_num == 1:
            sides = [(SideSource.slot(a), SideSource.slot(b)) for a, b in first_round_pairs(remaining, True)]
        else:
            prev = winners[-1]
            sides = [
                (SideSource.winner_of(prev[2 * i]), SideSource.winner_of(prev[2 * i + 1]))
                for i in range(len(prev) // 2)
            ]
        for p, (s1, s2) in enumerate(sides, start=1):
            current.append(add(f"W{round_num}-{p}", round_num, f"Winners {round_name(remaining)}",
                               BRACKET_WINNERS, p, s1, s2))
        winners.append(current)
        remaining //= 2

    depth = len(winners)

    # Losers bracket
    losers_round = 1
    w1 = winners[0]
    prev = [
        add(f"L1-{i + 1}", losers_round, "Losers Round 1", BRACKET_LOSERS, i + 1,
            SideSource.loser_of(w1[2 * i]), SideSource.loser_of(w1[2 * i + 1]))
        for i in range(len(w1) // 2)
    ]

    for j in range(1, depth):
        dropping = winners[j]
        losers_round += 1
        m = len(dropping)
        major = [
            add(f"L{losers_round}-{i + 1}", losers_round, f"Losers Round {losers_round}", BRACKET_LOSERS, i + 1,
                SideSource.winner_of(prev[i]), SideSource.loser_of(dropping[m - 1 - i]))
            for i in range(m)
        ]
        if j < depth - 1:
            losers_round += 1
            prev = [
                add(f"L{losers_round}-{i + 1}", losers_round, f"Losers Round {losers_round}", BRACKET_LOSERS,
                    i + 1, SideSource.winner_of(major[2 * i]), SideSource.winner_of(major[2 * i + 1]))
                for i in range(len(major) // 2)
            ]
        else:
            prev = major

    # Losers final loser finishes 3rd
    losers_final = plans[prev[0] - 1]
    losers_final.loser_exit_rank = 3

    add("GF", losers_round + 1, "Grand Final", BRACKET_GRAND_FINAL, 1,
        SideSource.winner_of(winners[-1][0]), SideSource.winner_of(prev[0]),
        winner_exit_rank=1, loser_exit_rank=2)
    return plans
