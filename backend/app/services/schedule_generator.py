"""
Schedule Generator - template + division -> persisted phases, slots, rules and encounters

Steps (single transaction):
0. Validate (division, template/structure, unit count)
1. Resolve the structure for N units (pure, app.services.structure_resolver)
2. Clear existing schedule (only with clear_existing_phases=True)
3. Create phases, pools, incoming/advancing slots
4. Create advancement rules
5. Create encounters (round robin per group, bracket wiring with WINNER/LOSER sources)
6. Annotate encounters with resolved game settings
7. Commit; any failure rolls back every row written for the division
"""

import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import delete, update
from sqlmodel import Session, select

from app.models.advancement_rule import AdvancementRule
from app.models.division import SCHEDULE_GENERATED, SCHEDULE_NOT_GENERATED, Division
from app.models.drawing_session import DrawingSession
from app.models.encounter import Encounter
from app.models.match_format import PhaseMatchSettings
from app.models.phase import (
    PHASE_BRACKET_ROUND,
    PHASE_DOUBLE_ELIMINATION,
    PHASE_POOLS,
    PHASE_ROUND_ROBIN,
    PHASE_SINGLE_ELIMINATION,
    Phase,
)
from app.models.phase_pool import PhasePool
from app.models.phase_slot import (
    SLOT_ADVANCING,
    SLOT_INCOMING,
    SOURCE_BYE,
    SOURCE_LOSER_OF,
    SOURCE_RANK_FROM_PHASE,
    SOURCE_SEEDED,
    SOURCE_WINNER_OF,
    PhaseSlot,
)
from app.models.phase_template import PhaseTemplate
from app.models.unit import INELIGIBLE_UNIT_STATUSES, Unit
from app.services.drawing_broadcast import DrawCancelled
from app.services.drawing_orchestrator import Publisher
from app.services.errors import InvalidStructure, NotFound, ScheduleAlreadyExists, SchedulingError
from app.services.match_format_resolver import annotate_division_encounters
from app.services.phase_wiring import (
    EncounterPlan,
    assign_pool_slots,
    bracket_round_plans,
    double_elimination_plans,
    group_plans,
    pool_name,
    single_elimination_plans,
)
from app.services.structure_resolver import PhaseSpec, ResolvedSchedule, resolve_structure
from app.services.template_structure import TemplateStructure, parse_structure
from app.utils.sql import count_rows

logger = logging.getLogger(__name__)


# ============================================================================
# Result
# ============================================================================


class ScheduleGenerationResult:
    """Outcome of one generate call"""

    def __init__(self):
        self.division_id: Optional[int] = None
        self.template_id: Optional[int] = None
        self.unit_count = 0
        self.cleared_existing = False
        self.phase_ids: List[int] = []
        self.slots_created = 0
        self.rules_created = 0
        self.encounters_created = 0
        self.resolved: Optional[ResolvedSchedule] = None

    def to_dict(self):
        return {
            "division_id": self.division_id,
            "template_id": self.template_id,
            "unit_count": self.unit_count,
            "cleared_existing": self.cleared_existing,
            "phase_ids": list(self.phase_ids),
            "phases_created": len(self.phase_ids),
            "slots_created": self.slots_created,
            "rules_created": self.rules_created,
            "encounters_created": self.encounters_created,
            "structure": self.resolved.to_dict() if self.resolved else None,
        }


# ============================================================================
# Helpers
# ============================================================================


def count_eligible_units(session: Session, division_id: int) -> int:
    return count_rows(
        session, Unit.id, Unit.division_id == division_id, Unit.status.not_in(INELIGIBLE_UNIT_STATUSES)
    )


def _drawing_session_id(session: Session, division_id: int) -> Optional[int]:
    return session.exec(select(DrawingSession.id).where(DrawingSession.division_id == division_id)).first()


def _announce_discarded_drawing(
    publisher: Optional[Publisher], division_id: int, drawing_id: Optional[int], reason: str
) -> None:
    if publisher is None or drawing_id is None:
        return
    publisher(division_id, DrawCancelled(division_id=division_id, session_id=drawing_id, reason=reason))


def clear_division_schedule(session: Session, division_id: int) -> int:
    """Delete every phase-owned row of a division. Returns number of phases removed. Does not commit."""
    phase_ids = session.exec(select(Phase.id).where(Phase.division_id == division_id)).all()
    if not phase_ids:
        return 0

    session.execute(delete(DrawingSession).where(DrawingSession.division_id == division_id))
    session.execute(delete(PhaseMatchSettings).where(PhaseMatchSettings.phase_id.in_(phase_ids)))
    session.execute(delete(AdvancementRule).where(AdvancementRule.division_id == division_id))
    # Advancing slots point at encounters and encounters point at slots; break the cycle first
    session.execute(
        update(PhaseSlot).where(PhaseSlot.phase_id.in_(phase_ids)).values(source_encounter_id=None)
    )
    session.execute(delete(Encounter).where(Encounter.division_id == division_id))
    session.execute(delete(PhaseSlot).where(PhaseSlot.phase_id.in_(phase_ids)))
    session.execute(delete(PhasePool).where(PhasePool.phase_id.in_(phase_ids)))
    session.execute(delete(Phase).where(Phase.division_id == division_id))
    session.expire_all()
    logger.info("Cleared %d phases for division %s", len(phase_ids), division_id)
    return len(phase_ids)


def _plans_for(spec: PhaseSpec, pool_slots: List[List[int]]) -> List[EncounterPlan]:
    if spec.phase_type == PHASE_ROUND_ROBIN:
        return group_plans([list(range(1, spec.incoming_slots + 1))], [spec.name])
    if spec.phase_type == PHASE_POOLS:
        return group_plans(pool_slots, [f"Pool {pool_name(i)}" for i in range(len(pool_slots))])
    if spec.phase_type == PHASE_BRACKET_ROUND:
        return bracket_round_plans(
            spec.incoming_slots, spec.seeded, spec.is_final_round, spec.include_consolation
        )
    if spec.phase_type == PHASE_SINGLE_ELIMINATION:
        return single_elimination_plans(spec.incoming_slots, spec.include_consolation)
    if spec.phase_type == PHASE_DOUBLE_ELIMINATION:
        return double_elimination_plans(spec.incoming_slots)
    return []


def _incoming_labels(spec: PhaseSpec, resolved: ResolvedSchedule, pool_slots: List[List[int]]) -> Dict[int, str]:
    labels: Dict[int, str] = {}
    feeding = resolved.rules_into(spec.order)
    if feeding:
        for rule in feeding:
            source = resolved.phase(rule.source_order)
            labels[rule.target_slot] = source.exit_labels[rule.source_rank - 1]
        return labels
    if spec.order == 1:
        for k in range(1, spec.incoming_slots + 1):
            labels[k] = f"Seed {k}"
        for pi, slots in enumerate(pool_slots):
            for position, k in enumerate(slots, start=1):
                labels[k] = f"Pool {pool_name(pi)} Seed {position}"
    return labels


# ============================================================================
# Main entry point
# ============================================================================


def generate_division_schedule(
    session: Session,
    division_id: int,
    template_id: Optional[int] = None,
    structure: Optional[Union[str, Dict[str, Any], TemplateStructure]] = None,
    unit_count: Optional[int] = None,
    clear_existing_phases: bool = False,
    publisher: Optional[Publisher] = None,
) -> ScheduleGenerationResult:
    """
    Materialize a division schedule from a template (or an ad-hoc structure).

    Unit count defaults to the division's eligible units, then to the template default.
    A drawing session discarded by the regeneration is announced through publisher.

    Raises:
        NotFound: division or template missing
        InvalidStructure / UnitCountOutOfRange: from the structure resolver
        ScheduleAlreadyExists: phases exist and clear_existing_phases is False
    """
    result = ScheduleGenerationResult()
    result.division_id = division_id
    result.template_id = template_id
    discarded_drawing = None

    try:
        # ====================================================================
        # Step 0: Validate
        # ====================================================================
        division = session.get(Division, division_id)
        if not division:
            raise NotFound(f"Division {division_id} not found")

        template = None
        if template_id is not None:
            template = session.get(PhaseTemplate, template_id)
            if not template:
                raise NotFound(f"Template {template_id} not found")
        if structure is None:
            if template is None:
                raise InvalidStructure("Either template_id or structure is required")
            structure = template.structure_json
        parsed = parse_structure(structure)

        n = unit_count or count_eligible_units(session, division_id)
        if not n and template is not None:
            n = template.default_units

        # ====================================================================
        # Step 1: Resolve (pure)
        # ====================================================================
        resolved = resolve_structure(
            parsed,
            n,
            min_units=template.min_units if template else None,
            max_units=template.max_units if template else None,
        )
        result.unit_count = n
        result.resolved = resolved

        # ====================================================================
        # Step 2: Clear existing
        # ====================================================================
        existing = count_rows(session, Phase.id, Phase.division_id == division_id)
        if existing and not clear_existing_phases:
            raise ScheduleAlreadyExists(
                f"Division {division_id} already has {existing} phases; pass clear_existing_phases to regenerate"
            )
        if existing:
            discarded_drawing = _drawing_session_id(session, division_id)
            clear_division_schedule(session, division_id)
            result.cleared_existing = True
            division = session.get(Division, division_id)

        # ====================================================================
        # Step 3: Phases, pools, slots
        # ====================================================================
        phases_by_order: Dict[int, Phase] = {}
        incoming_by_order: Dict[int, Dict[int, PhaseSlot]] = {}
        advancing_by_order: Dict[int, Dict[int, PhaseSlot]] = {}
        pools_by_order: Dict[int, List[PhasePool]] = {}
        pool_slots_by_order: Dict[int, List[List[int]]] = {}

        for spec in resolved.phases:
            phase = Phase(
                division_id=division_id,
                template_id=template_id,
                phase_order=spec.order,
                phase_type=spec.phase_type,
                name=spec.name,
                incoming_slot_count=spec.incoming_slots,
                advancing_slot_count=spec.exiting_slots,
                pool_count=spec.pool_count,
                include_consolation=spec.include_consolation,
                seeded=spec.seeded,
            )
            session.add(phase)
            session.flush()
            phases_by_order[spec.order] = phase
            result.phase_ids.append(phase.id)

            pools: List[PhasePool] = []
            pool_slots: List[List[int]] = []
            if spec.phase_type == PHASE_POOLS:
                pool_slots = assign_pool_slots(spec.pool_sizes, resolved.seeding_strategy)
                for pi, size in enumerate(spec.pool_sizes):
                    pool = PhasePool(phase_id=phase.id, pool_name=pool_name(pi), pool_order=pi + 1, slot_count=size)
                    session.add(pool)
                    pools.append(pool)
                session.flush()
            pools_by_order[spec.order] = pools
            pool_slots_by_order[spec.order] = pool_slots

            slot_pool = {}
            for pi, slots in enumerate(pool_slots):
                for position, k in enumerate(slots, start=1):
                    slot_pool[k] = (pools[pi].id, position)

            fed_by_rule = {r.target_slot for r in resolved.rules_into(spec.order)}
            labels = _incoming_labels(spec, resolved, pool_slots)
            incoming: Dict[int, PhaseSlot] = {}
            for k in range(1, spec.incoming_slots + 1):
                pool_id, position = slot_pool.get(k, (None, None))
                slot = PhaseSlot(
                    phase_id=phase.id,
                    slot_type=SLOT_INCOMING,
                    slot_number=k,
                    pool_id=pool_id,
                    pool_position=position,
                    source_type=SOURCE_SEEDED if spec.order == 1 else SOURCE_RANK_FROM_PHASE,
                    placeholder_label=labels.get(k),
                )
                if spec.order > 1 and k not in fed_by_rule:
                    # Nothing ever advances into this slot
                    slot.source_type = SOURCE_BYE
                    slot.placeholder_label = "Bye"
                    slot.is_resolved = True
                session.add(slot)
                incoming[k] = slot

            advancing: Dict[int, PhaseSlot] = {}
            for k in range(1, spec.exiting_slots + 1):
                slot = PhaseSlot(
                    phase_id=phase.id,
                    slot_type=SLOT_ADVANCING,
                    slot_number=k,
                    source_type=SOURCE_RANK_FROM_PHASE,
                    exit_label=spec.exit_labels[k - 1] if k <= len(spec.exit_labels) else None,
                    placeholder_label=spec.exit_labels[k - 1] if k <= len(spec.exit_labels) else None,
                )
                session.add(slot)
                advancing[k] = slot
            session.flush()

            incoming_by_order[spec.order] = incoming
            advancing_by_order[spec.order] = advancing
            result.slots_created += len(incoming) + len(advancing)

        # ====================================================================
        # Step 4: Advancement rules
        # ====================================================================
        for process_order, rule in enumerate(resolved.advancement_rules, start=1):
            source_pool_id = None
            if rule.source_pool is not None:
                source_pool_id = next(
                    p.id for p in pools_by_order[rule.source_order] if p.pool_name == rule.source_pool
                )
            session.add(
                AdvancementRule(
                    division_id=division_id,
                    source_phase_id=phases_by_order[rule.source_order].id,
                    source_rank=rule.source_rank,
                    source_pool_id=source_pool_id,
                    source_pool_rank=rule.source_pool_rank,
                    target_phase_id=phases_by_order[rule.target_order].id,
                    target_slot_number=rule.target_slot,
                    description=rule.description,
                    process_order=process_order,
                )
            )
            result.rules_created += 1
        session.flush()

        # ====================================================================
        # Step 5: Encounters
        # ====================================================================
        for spec in resolved.phases:
            phase = phases_by_order[spec.order]
            incoming = incoming_by_order[spec.order]
            advancing = advancing_by_order[spec.order]
            pools = pools_by_order[spec.order]
            plans = _plans_for(spec, pool_slots_by_order[spec.order])
            if len(plans) != spec.encounter_count:
                raise InvalidStructure(
                    f"Phase '{spec.name}' wiring produced {len(plans)} encounters, expected {spec.encounter_count}"
                )

            created: Dict[int, Encounter] = {}
            for plan in plans:
                enc = Encounter(
                    division_id=division_id,
                    phase_id=phase.id,
                    pool_id=pools[plan.pool_index].id if pools and plan.pool_index is not None else None,
                    encounter_number=plan.encounter_number,
                    label=plan.label,
                    round_number=plan.round_number,
                    round_name=plan.round_name,
                    bracket=plan.bracket,
                    bracket_position=plan.bracket_position,
                    winner_exit_rank=plan.winner_exit_rank,
                    loser_exit_rank=plan.loser_exit_rank,
                )
                for side, source in ((1, plan.side1), (2, plan.side2)):
                    if source.slot_number is not None:
                        slot = incoming[source.slot_number]
                        setattr(enc, f"slot{side}_id", slot.id)
                        setattr(enc, f"side{side}_label", slot.placeholder_label)
                    else:
                        upstream = created[source.encounter_number]
                        setattr(enc, f"source{side}_encounter_id", upstream.id)
                        setattr(enc, f"source{side}_role", source.role)
                        prefix = "Winner" if source.role == "WINNER" else "Loser"
                        setattr(enc, f"side{side}_label", f"{prefix} {upstream.label}")
                session.add(enc)
                session.flush()
                created[plan.encounter_number] = enc

                for rank, source_type, prefix in (
                    (plan.winner_exit_rank, SOURCE_WINNER_OF, "Winner"),
                    (plan.loser_exit_rank, SOURCE_LOSER_OF, "Loser"),
                ):
                    if rank is not None and rank in advancing:
                        advancing[rank].source_type = source_type
                        advancing[rank].source_encounter_id = enc.id
                        advancing[rank].placeholder_label = f"{prefix} {plan.label}"
            result.encounters_created += len(plans)
        session.flush()

        # ====================================================================
        # Step 6: Game settings + division bookkeeping
        # ====================================================================
        annotate_division_encounters(session, division_id)

        division.applied_template_id = template_id
        division.schedule_status = SCHEDULE_GENERATED
        session.add(division)

        session.commit()
        logger.info(
            "Generated schedule for division %s: %d phases, %d slots, %d rules, %d encounters (N=%d)",
            division_id,
            len(result.phase_ids),
            result.slots_created,
            result.rules_created,
            result.encounters_created,
            n,
        )
        _announce_discarded_drawing(publisher, division_id, discarded_drawing, "regenerated")
        return result

    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Schedule generation failed for division %s", division_id)
        raise


def delete_division_schedule(session: Session, division_id: int, publisher: Optional[Publisher] = None) -> int:
    """Remove a division's generated schedule. Commits."""
    try:
        division = session.get(Division, division_id)
        if not division:
            raise NotFound(f"Division {division_id} not found")
        discarded_drawing = _drawing_session_id(session, division_id)
        removed = clear_division_schedule(session, division_id)
        division = session.get(Division, division_id)
        division.schedule_status = SCHEDULE_NOT_GENERATED
        session.add(division)
        session.commit()
        _announce_discarded_drawing(publisher, division_id, discarded_drawing, "schedule_deleted")
        return removed
    except SchedulingError:
        session.rollback()
        raise
    except Exception:
        session.rollback()
        logger.exception("Failed to delete schedule for division %s", division_id)
        raise
