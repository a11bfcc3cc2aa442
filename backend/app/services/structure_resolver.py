"""
Structure Resolver - template structure + unit count -> ordered phase specs.

Pure and deterministic: no session, no side effects. Given (structure, N) the
output is always the same, so preview and generation share one code path.

Rules enforced here (violations raise, nothing is silently corrected):
- N must be inside the template's [min_units, max_units]
- bracket size = next power of two >= entrants; byes go to the top slots (1 upward)
- pools split entrants near-equally, larger pools first
- every non-terminal phase's exit count == number of advancement rules sourced from it
- no incoming slot is the target of two rules, and every target slot exists
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence

from app.models.phase import (
    PHASE_AWARD,
    PHASE_BRACKET_ROUND,
    PHASE_DOUBLE_ELIMINATION,
    PHASE_DRAW,
    PHASE_POOLS,
    PHASE_ROUND_ROBIN,
    PHASE_SINGLE_ELIMINATION,
)
from app.services.errors import InvalidStructure, UnitCountOutOfRange
from app.services.phase_wiring import (
    bye_slots_for,
    cross_pool_exit_rank,
    first_round_pairs,
    next_power_of_two,
    pool_name,
    round_name,
    rr_round_count,
    split_pool_sizes,
)
from app.services.template_structure import (
    AdvancementRuleDefinition,
    AwardPhase,
    BracketPhase,
    DrawPhase,
    PoolsPhase,
    RoundRobinPhase,
    TemplateStructure,
)

logger = logging.getLogger(__name__)

FINAL_PLACE_LABELS = ["Champion", "Runner-up", "3rd Place", "4th Place"]

# Bracket definitions with these names get plain round names ("Semifinals")
_PLAIN_BRACKET_NAMES = ("Bracket", "Playoffs")


@dataclass
class PhaseSpec:
    order: int
    name: str
    phase_type: str
    incoming_slots: int
    exiting_slots: int
    encounter_count: int
    round_count: int
    definition_index: int  # 1-based index of the structure phase this spec came from
    entrants: int = 0
    pool_count: Optional[int] = None
    pool_sizes: List[int] = field(default_factory=list)
    advance_per_pool: Optional[int] = None
    include_consolation: bool = False
    seeded: bool = False
    is_final_round: bool = False
    bye_slots: List[int] = field(default_factory=list)
    exit_labels: List[str] = field(default_factory=list)

    @property
    def bye_count(self) -> int:
        return len(self.bye_slots)

    @property
    def is_terminal(self) -> bool:
        return self.exiting_slots == 0

    def to_dict(self) -> Dict:
        return {
            "order": self.order,
            "name": self.name,
            "type": self.phase_type,
            "incoming_slots": self.incoming_slots,
            "exiting_slots": self.exiting_slots,
            "pool_count": self.pool_count,
            "pool_sizes": list(self.pool_sizes),
            "encounter_count": self.encounter_count,
            "round_count": self.round_count,
            "bye_count": self.bye_count,
            "bye_slots": list(self.bye_slots),
            "include_consolation": self.include_consolation,
            "exit_labels": list(self.exit_labels),
        }


@dataclass
class AdvancementRuleSpec:
    source_order: int
    source_rank: int
    target_order: int
    target_slot: int
    description: str
    source_pool: Optional[str] = None
    source_pool_rank: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class ResolvedSchedule:
    unit_count: int
    phases: List[PhaseSpec]
    advancement_rules: List[AdvancementRuleSpec]
    seeding_strategy: str = "Snake"

    @property
    def total_encounters(self) -> int:
        return sum(p.encounter_count for p in self.phases)

    @property
    def total_rounds(self) -> int:
        return sum(p.round_count for p in self.phases)

    def phase(self, order: int) -> PhaseSpec:
        return self.phases[order - 1]

    def rules_from(self, order: int) -> List[AdvancementRuleSpec]:
        return [r for r in self.advancement_rules if r.source_order == order]

    def rules_into(self, order: int) -> List[AdvancementRuleSpec]:
        return [r for r in self.advancement_rules if r.target_order == order]

    def to_dict(self) -> Dict:
        return {
            "unit_count": self.unit_count,
            "phases": [p.to_dict() for p in self.phases],
            "advancement_rules": [r.to_dict() for r in self.advancement_rules],
            "total_encounters": self.total_encounters,
            "total_rounds": self.total_rounds,
        }


# =============================================================================
# Per-definition expansion
# =============================================================================


def _round_robin_spec(d: RoundRobinPhase, index: int, entrants: int, order: int) -> List[PhaseSpec]:
    incoming = d.incoming_slots or entrants
    if incoming < entrants:
        raise InvalidStructure(f"Phase {index} '{d.name}': incomingSlots {incoming} < {entrants} entrants")
    if incoming < 2:
        raise InvalidStructure(f"Phase {index} '{d.name}': round robin needs at least 2 entrants")
    exits = d.advance_count if d.advance_count is not None else incoming
    if exits > incoming:
        raise InvalidStructure(f"Phase {index} '{d.name}': advanceCount {exits} exceeds {incoming} entrants")
    return [
        PhaseSpec(
            order=order,
            name=d.name,
            phase_type=PHASE_ROUND_ROBIN,
            incoming_slots=incoming,
            exiting_slots=exits,
            encounter_count=incoming * (incoming - 1) // 2,
            round_count=rr_round_count(incoming),
            definition_index=index,
            entrants=entrants,
            exit_labels=[f"{d.name} #{k}" for k in range(1, exits + 1)],
        )
    ]


def _pools_spec(d: PoolsPhase, index: int, entrants: int, order: int) -> List[PhaseSpec]:
    incoming = d.incoming_slots or entrants
    if incoming < entrants:
        raise InvalidStructure(f"Phase {index} '{d.name}': incomingSlots {incoming} < {entrants} entrants")
    pool_count = d.pool_count or math.ceil(incoming / d.pool_size)
    if incoming < 2 * pool_count:
        raise InvalidStructure(
            f"Phase {index} '{d.name}': {incoming} entrants cannot fill {pool_count} pools of at least 2"
        )

    sizes = split_pool_sizes(incoming, pool_count)
    if d.advance_per_pool > min(sizes):
        raise InvalidStructure(
            f"Phase {index} '{d.name}': advancePerPool {d.advance_per_pool} exceeds smallest pool ({min(sizes)})"
        )

    labels = [
        f"Pool {pool_name(pi)} #{rank}"
        for rank in range(1, d.advance_per_pool + 1)
        for pi in range(pool_count)
    ]
    return [
        PhaseSpec(
            order=order,
            name=d.name,
            phase_type=PHASE_POOLS,
            incoming_slots=incoming,
            exiting_slots=pool_count * d.advance_per_pool,
            encounter_count=sum(p * (p - 1) // 2 for p in sizes),
            round_count=max(rr_round_count(p) for p in sizes),
            definition_index=index,
            entrants=entrants,
            pool_count=pool_count,
            pool_sizes=sizes,
            advance_per_pool=d.advance_per_pool,
            exit_labels=labels,
        )
    ]


def _bracket_size(d: BracketPhase, index: int, entrants: int) -> int:
    size = d.incoming_slots or next_power_of_two(max(entrants, 2))
    if size & (size - 1):
        raise InvalidStructure(f"Phase {index} '{d.name}': bracket size {size} is not a power of two")
    if size < entrants:
        raise InvalidStructure(f"Phase {index} '{d.name}': bracket size {size} < {entrants} entrants")
    return size


def _bracket_specs(
    d: BracketPhase, index: int, entrants: int, filled: Sequence[int], order: int
) -> List[PhaseSpec]:
    size = _bracket_size(d, index, entrants)
    byes = bye_slots_for(first_round_pairs(size, True), filled)
    depth = int(math.log2(size))

    if d.elimination == "Double":
        if size < 4:
            raise InvalidStructure(f"Phase {index} '{d.name}': double elimination needs at least 3 entrants")
        return [
            PhaseSpec(
                order=order,
                name=d.name,
                phase_type=PHASE_DOUBLE_ELIMINATION,
                incoming_slots=size,
                exiting_slots=3,
                encounter_count=2 * size - 2,
                round_count=depth + 2 * (depth - 1) + 1,
                definition_index=index,
                entrants=entrants,
                seeded=True,
                bye_slots=byes,
                exit_labels=FINAL_PLACE_LABELS[:3],
            )
        ]

    consolation = d.include_consolation and size >= 4

    if not d.split_rounds:
        exits = 4 if consolation else 2
        return [
            PhaseSpec(
                order=order,
                name=d.name,
                phase_type=PHASE_SINGLE_ELIMINATION,
                incoming_slots=size,
                exiting_slots=exits,
                encounter_count=size - 1 + (1 if consolation else 0),
                round_count=depth,
                definition_index=index,
                entrants=entrants,
                include_consolation=consolation,
                seeded=True,
                bye_slots=byes,
                exit_labels=FINAL_PLACE_LABELS[:exits],
            )
        ]

    specs = []
    remaining = size
    for r in range(1, depth + 1):
        rname = round_name(remaining)
        if d.name not in _PLAIN_BRACKET_NAMES:
            rname = f"{d.name} {rname}"
        final = remaining == 2

        if final and consolation:
            incoming, encounters, exits = 4, 2, 4
            labels = FINAL_PLACE_LABELS[:4]
        elif final:
            incoming, encounters, exits = 2, 1, 2
            labels = FINAL_PLACE_LABELS[:2]
        elif consolation and remaining == 4:
            incoming, encounters, exits = 4, 2, 4
            labels = [f"{rname} Winner 1", f"{rname} Winner 2", f"{rname} Loser 1", f"{rname} Loser 2"]
        else:
            incoming, encounters, exits = remaining, remaining // 2, remaining // 2
            labels = [f"{rname} Winner {p}" for p in range(1, exits + 1)]

        specs.append(
            PhaseSpec(
                order=order + r - 1,
                name=rname,
                phase_type=PHASE_BRACKET_ROUND,
                incoming_slots=incoming,
                exiting_slots=exits,
                encounter_count=encounters,
                round_count=1,
                definition_index=index,
                entrants=entrants if r == 1 else incoming,
                include_consolation=consolation and remaining <= 4,
                seeded=r == 1,
                is_final_round=final,
                bye_slots=byes if r == 1 else [],
                exit_labels=labels,
            )
        )
        remaining //= 2
    return specs


def _award_spec(d: AwardPhase, index: int, entrants: int, order: int) -> List[PhaseSpec]:
    return [
        PhaseSpec(
            order=order,
            name=d.name,
            phase_type=PHASE_AWARD,
            incoming_slots=entrants,
            exiting_slots=0,
            encounter_count=0,
            round_count=0,
            definition_index=index,
            entrants=entrants,
        )
    ]


def _draw_spec(d: DrawPhase, index: int, entrants: int, order: int) -> List[PhaseSpec]:
    incoming = d.incoming_slots or entrants
    if incoming < entrants:
        raise InvalidStructure(f"Phase {index} '{d.name}': incomingSlots {incoming} < {entrants} entrants")
    return [
        PhaseSpec(
            order=order,
            name=d.name,
            phase_type=PHASE_DRAW,
            incoming_slots=incoming,
            exiting_slots=incoming,
            encounter_count=0,
            round_count=0,
            definition_index=index,
            entrants=entrants,
            exit_labels=[f"{d.name} #{k}" for k in range(1, incoming + 1)],
        )
    ]


def _expand(definition, index: int, entrants: int, filled: Sequence[int], order: int) -> List[PhaseSpec]:
    if isinstance(definition, RoundRobinPhase):
        return _round_robin_spec(definition, index, entrants, order)
    if isinstance(definition, PoolsPhase):
        return _pools_spec(definition, index, entrants, order)
    if isinstance(definition, BracketPhase):
        return _bracket_specs(definition, index, entrants, filled, order)
    if isinstance(definition, AwardPhase):
        return _award_spec(definition, index, entrants, order)
    if isinstance(definition, DrawPhase):
        return _draw_spec(definition, index, entrants, order)
    raise InvalidStructure(f"Unknown phase definition {type(definition).__name__}")


# =============================================================================
# Advancement rules
# =============================================================================


def _declared_source_rank(rule: AdvancementRuleDefinition, source: PhaseSpec) -> int:
    if rule.from_pool is None:
        return rule.from_rank
    if source.phase_type != PHASE_POOLS:
        raise InvalidStructure(f"Rule from phase {rule.from_phase}: fromPool used on a {source.phase_type} phase")
    names = [pool_name(i) for i in range(source.pool_count)]
    if rule.from_pool not in names:
        raise InvalidStructure(f"Rule from phase {rule.from_phase}: pool '{rule.from_pool}' does not exist")
    if rule.from_rank > source.advance_per_pool:
        raise InvalidStructure(
            f"Rule from phase {rule.from_phase}: Pool {rule.from_pool} #{rule.from_rank} does not advance"
        )
    return cross_pool_exit_rank(names.index(rule.from_pool), rule.from_rank, source.pool_count)


def _rule_spec(source: PhaseSpec, rank: int, target: PhaseSpec, slot: int) -> AdvancementRuleSpec:
    pool = pool_rank = None
    if source.phase_type == PHASE_POOLS:
        pool_index = (rank - 1) % source.pool_count
        pool = pool_name(pool_index)
        pool_rank = (rank - 1) // source.pool_count + 1
    label = source.exit_labels[rank - 1] if rank <= len(source.exit_labels) else f"#{rank}"
    return AdvancementRuleSpec(
        source_order=source.order,
        source_rank=rank,
        target_order=target.order,
        target_slot=slot,
        description=f"{source.name} {label} -> {target.name} slot {slot}",
        source_pool=pool,
        source_pool_rank=pool_rank,
    )


# =============================================================================
# Entry point
# =============================================================================


def resolve_structure(
    structure: TemplateStructure,
    unit_count: int,
    min_units: Optional[int] = None,
    max_units: Optional[int] = None,
) -> ResolvedSchedule:
    """Resolve a template structure for *unit_count* participating units.

    Raises:
        UnitCountOutOfRange: unit_count outside [min_units, max_units] (or < 1)
        InvalidStructure: exits cannot be partitioned into the declared rules, or
            the structure cannot be built for this many units
    """
    if unit_count < 1:
        raise UnitCountOutOfRange(f"Unit count must be positive, got {unit_count}")
    if min_units is not None and unit_count < min_units:
        raise UnitCountOutOfRange(f"{unit_count} units is below the template minimum of {min_units}")
    if max_units is not None and unit_count > max_units:
        raise UnitCountOutOfRange(f"{unit_count} units is above the template maximum of {max_units}")

    definitions = structure.phases
    last_index = len(definitions)

    declared_from: Dict[int, List[AdvancementRuleDefinition]] = defaultdict(list)
    declared_into: Dict[int, List[AdvancementRuleDefinition]] = defaultdict(list)
    for rule in structure.advancement_rules:
        if rule.from_phase > last_index or rule.to_phase > last_index:
            raise InvalidStructure(f"Advancement rule references phase outside 1..{last_index}")
        if rule.to_phase <= rule.from_phase:
            raise InvalidStructure(
                f"Advancement rule from phase {rule.from_phase} must target a later phase (got {rule.to_phase})"
            )
        declared_from[rule.from_phase].append(rule)
        declared_into[rule.to_phase].append(rule)

    specs_by_definition: Dict[int, List[PhaseSpec]] = {}
    phases: List[PhaseSpec] = []
    order = 1

    for index, definition in enumerate(definitions, start=1):
        if index == 1:
            entrants = unit_count
            filled = list(range(1, unit_count + 1))
        elif declared_into.get(index):
            entrants = len(declared_into[index])
            filled = [r.to_slot for r in declared_into[index]]
        else:
            previous = specs_by_definition[index - 1][-1]
            if declared_from.get(index - 1):
                raise InvalidStructure(
                    f"Phase {index} '{definition.name}' receives no entrants: "
                    f"phase {index - 1} declares its own advancement rules"
                )
            entrants = previous.exiting_slots
            filled = list(range(1, entrants + 1))

        if entrants < 1:
            raise InvalidStructure(f"Phase {index} '{definition.name}' receives no entrants")

        expanded = _expand(definition, index, entrants, filled, order)
        specs_by_definition[index] = expanded
        phases.extend(expanded)
        order += len(expanded)

    rules: List[AdvancementRuleSpec] = []

    # Rounds split out of one bracket definition feed each other rank k -> slot k
    for expanded in specs_by_definition.values():
        for source, target in zip(expanded, expanded[1:]):
            rules.extend(_rule_spec(source, k, target, k) for k in range(1, source.exiting_slots + 1))

    for index in range(1, last_index + 1):
        source = specs_by_definition[index][-1]
        declared = declared_from.get(index, [])

        if not declared:
            if index == last_index or source.is_terminal:
                continue
            if declared_into.get(index + 1):
                raise InvalidStructure(
                    f"Phase {index} '{source.name}' exits have no advancement rules while phase "
                    f"{index + 1} declares explicit ones"
                )
            target = specs_by_definition[index + 1][0]
            rules.extend(_rule_spec(source, k, target, k) for k in range(1, source.exiting_slots + 1))
            continue

        ranks = [_declared_source_rank(r, source) for r in declared]
        if sorted(ranks) != list(range(1, source.exiting_slots + 1)):
            raise InvalidStructure(
                f"Phase {index} '{source.name}' has {source.exiting_slots} exits but its advancement rules "
                f"cover ranks {sorted(ranks)}"
            )
        for rule, rank in zip(declared, ranks):
            target = specs_by_definition[rule.to_phase][0]
            rules.append(_rule_spec(source, rank, target, rule.to_slot))

    seen_targets = set()
    for rule in rules:
        target = phases[rule.target_order - 1]
        if not 1 <= rule.target_slot <= target.incoming_slots:
            raise InvalidStructure(
                f"Advancement target slot {rule.target_slot} does not exist in '{target.name}' "
                f"({target.incoming_slots} slots)"
            )
        key = (rule.target_order, rule.target_slot)
        if key in seen_targets:
            raise InvalidStructure(f"Slot {rule.target_slot} of '{target.name}' is fed by more than one rule")
        seen_targets.add(key)

    resolved = ResolvedSchedule(
        unit_count=unit_count,
        phases=phases,
        advancement_rules=rules,
        seeding_strategy=structure.seeding_strategy,
    )
    logger.debug(
        "Resolved %d units into %d phases, %d encounters, %d rules",
        unit_count,
        len(phases),
        resolved.total_encounters,
        len(rules),
    )
    return resolved
