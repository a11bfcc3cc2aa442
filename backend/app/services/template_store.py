"""
Template Store

CRUD over PhaseTemplate rows plus the built-in system templates.

- System templates are immutable (TemplateImmutable) and seeded idempotently by name.
- User templates can only be changed or deleted by their creator.
- A template referenced by a division or a generated phase cannot be deleted (TemplateInUse).
- structure_json is validated through parse_structure() on every write.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import or_
from sqlmodel import Session, select

from app.models.division import Division
from app.models.phase import Phase
from app.models.phase_template import TEMPLATE_CATEGORIES, PhaseTemplate
from app.services.errors import (
    InvalidStructure,
    NotFound,
    SchedulingError,
    TemplateImmutable,
    TemplateInUse,
)
from app.services.structure_resolver import ResolvedSchedule, resolve_structure
from app.services.template_structure import parse_structure
from app.utils.sql import count_rows

logger = logging.getLogger(__name__)


SYSTEM_TEMPLATES: List[Dict[str, Any]] = [
    {
        "name": "Single Elimination",
        "description": "Knockout bracket, one phase per round. Byes go to the top seeds.",
        "category": "SingleElimination",
        "min_units": 4,
        "max_units": 64,
        "default_units": 8,
        "sort_order": 10,
        "tags": "bracket,knockout",
        "structure": {
            "phases": [{"type": "Bracket", "name": "Bracket", "elimination": "Single", "splitRounds": True}],
        },
    },
    {
        "name": "Single Elimination with 3rd Place",
        "description": "Knockout bracket where the semifinal losers play for third place.",
        "category": "SingleElimination",
        "min_units": 4,
        "max_units": 64,
        "default_units": 8,
        "sort_order": 20,
        "tags": "bracket,knockout,consolation",
        "structure": {
            "phases": [
                {
                    "type": "Bracket",
                    "name": "Bracket",
                    "elimination": "Single",
                    "splitRounds": True,
                    "includeConsolation": True,
                }
            ],
        },
    },
    {
        "name": "Double Elimination",
        "description": "Winners and losers brackets with a single grand final.",
        "category": "DoubleElimination",
        "min_units": 4,
        "max_units": 32,
        "default_units": 8,
        "sort_order": 30,
        "tags": "bracket,double",
        "structure": {
            "phases": [{"type": "Bracket", "name": "Double Elimination", "elimination": "Double"}],
        },
    },
    {
        "name": "Round Robin",
        "description": "Everyone plays everyone once.",
        "category": "RoundRobin",
        "min_units": 3,
        "max_units": 10,
        "default_units": 6,
        "sort_order": 40,
        "tags": "round-robin",
        "structure": {"phases": [{"type": "RoundRobin", "name": "Round Robin"}]},
    },
    {
        "name": "Pools to Bracket",
        "description": "Pools of four, top two of each pool advance to a knockout bracket.",
        "category": "Combined",
        "min_units": 8,
        "max_units": 32,
        "default_units": 12,
        "sort_order": 50,
        "tags": "pools,bracket",
        "structure": {
            "isFlexible": True,
            "generateFormat": {"poolSize": 4, "advancePerPool": 2},
        },
    },
]


def _normalized_structure_json(raw: Any) -> str:
    """Validate a structure payload and return its canonical JSON text."""
    parse_structure(raw)
    return raw if isinstance(raw, str) else json.dumps(raw)


def _check_units(min_units: int, max_units: int, default_units: int) -> None:
    if min_units < 2:
        raise InvalidStructure(f"min_units must be at least 2, got {min_units}")
    if max_units < min_units:
        raise InvalidStructure(f"max_units {max_units} is below min_units {min_units}")
    if not min_units <= default_units <= max_units:
        raise InvalidStructure(f"default_units {default_units} is outside [{min_units}, {max_units}]")


def _check_category(category: str) -> None:
    if category not in TEMPLATE_CATEGORIES:
        raise InvalidStructure(f"Unknown template category '{category}'")


def get_template(session: Session, template_id: int) -> PhaseTemplate:
    template = session.get(PhaseTemplate, template_id)
    if not template:
        raise NotFound(f"Template {template_id} not found")
    return template


def list_templates(
    session: Session,
    category: Optional[str] = None,
    unit_count: Optional[int] = None,
    include_inactive: bool = False,
    created_by_user_id: Optional[int] = None,
) -> List[PhaseTemplate]:
    """Active templates ordered by sort_order, then name.

    created_by_user_id narrows to that user's own templates ("my templates").
    """
    query = select(PhaseTemplate)
    if not include_inactive:
        query = query.where(PhaseTemplate.is_active == True)  # noqa: E712
    if category:
        query = query.where(PhaseTemplate.category == category)
    if unit_count is not None:
        query = query.where(PhaseTemplate.min_units <= unit_count, PhaseTemplate.max_units >= unit_count)
    if created_by_user_id is not None:
        query = query.where(
            PhaseTemplate.created_by_user_id == created_by_user_id,
            PhaseTemplate.is_system_template == False,  # noqa: E712
        )
    return list(session.exec(query.order_by(PhaseTemplate.sort_order, PhaseTemplate.name)).all())


def create_template(session: Session, data: Dict[str, Any], created_by_user_id: Optional[int] = None) -> PhaseTemplate:
    """Create a user template. data carries the PhaseTemplate fields plus 'structure' (dict or JSON text)."""
    try:
        min_units = data.get("min_units", 2)
        max_units = data.get("max_units", 64)
        default_units = data.get("default_units") or min(max(8, min_units), max_units)
        category = data.get("category") or "Custom"
        _check_units(min_units, max_units, default_units)
        _check_category(category)

        template = PhaseTemplate(
            name=data["name"],
            description=data.get("description"),
            category=category,
            min_units=min_units,
            max_units=max_units,
            default_units=default_units,
            is_system_template=False,
            is_active=data.get("is_active", True),
            sort_order=data.get("sort_order", 100),
            structure_json=_normalized_structure_json(data["structure"]),
            diagram_text=data.get("diagram_text"),
            tags=data.get("tags"),
            created_by_user_id=created_by_user_id,
        )
        session.add(template)
        session.commit()
        session.refresh(template)
        logger.info("Template %s '%s' created by user %s", template.id, template.name, created_by_user_id)
        return template
    except SchedulingError:
        session.rollback()
        raise


def _require_editable(template: PhaseTemplate, user_id: Optional[int], action: str) -> None:
    if template.is_system_template:
        raise TemplateImmutable(f"System template '{template.name}' cannot be {action}")
    if template.created_by_user_id is not None and template.created_by_user_id != user_id:
        raise TemplateImmutable(f"Template '{template.name}' can only be {action} by its creator")


def update_template(
    session: Session, template_id: int, changes: Dict[str, Any], user_id: Optional[int] = None
) -> PhaseTemplate:
    """Apply a partial update. Only keys present in changes are touched."""
    try:
        template = get_template(session, template_id)
        _require_editable(template, user_id, "modified")

        if "structure" in changes and changes["structure"] is not None:
            template.structure_json = _normalized_structure_json(changes["structure"])
        for field in ("name", "description", "category", "min_units", "max_units", "default_units",
                      "is_active", "sort_order", "diagram_text", "tags"):
            if field in changes and changes[field] is not None:
                setattr(template, field, changes[field])

        _check_units(template.min_units, template.max_units, template.default_units)
        _check_category(template.category)

        template.updated_at = datetime.utcnow()
        session.add(template)
        session.commit()
        session.refresh(template)
        logger.info("Template %s updated by user %s", template_id, user_id)
        return template
    except SchedulingError:
        session.rollback()
        raise


def template_usage_count(session: Session, template_id: int) -> int:
    divisions = count_rows(session, Division.id, Division.applied_template_id == template_id)
    phases = count_rows(session, Phase.id, Phase.template_id == template_id)
    return divisions + phases


def delete_template(session: Session, template_id: int, user_id: Optional[int] = None) -> None:
    try:
        template = get_template(session, template_id)
        _require_editable(template, user_id, "deleted")
        used = template_usage_count(session, template_id)
        if used:
            raise TemplateInUse(f"Template '{template.name}' is referenced by {used} divisions/phases")
        session.delete(template)
        session.commit()
        logger.info("Template %s deleted by user %s", template_id, user_id)
    except SchedulingError:
        session.rollback()
        raise


def preview_template(
    session: Session,
    unit_count: int,
    template_id: Optional[int] = None,
    structure: Any = None,
) -> ResolvedSchedule:
    """Resolve a stored template (or an unsaved structure) for unit_count without writing anything."""
    if template_id is not None:
        template = get_template(session, template_id)
        return resolve_structure(
            parse_structure(structure if structure is not None else template.structure_json),
            unit_count,
            min_units=template.min_units,
            max_units=template.max_units,
        )
    if structure is None:
        raise InvalidStructure("Either template_id or structure is required")
    return resolve_structure(parse_structure(structure), unit_count)


def seed_system_templates(session: Session) -> int:
    """Insert any missing system template. Existing rows (matched by name) are left alone."""
    existing = set(
        session.exec(select(PhaseTemplate.name).where(PhaseTemplate.is_system_template == True)).all()  # noqa: E712
    )
    created = 0
    for definition in SYSTEM_TEMPLATES:
        if definition["name"] in existing:
            continue
        session.add(
            PhaseTemplate(
                name=definition["name"],
                description=definition["description"],
                category=definition["category"],
                min_units=definition["min_units"],
                max_units=definition["max_units"],
                default_units=definition["default_units"],
                is_system_template=True,
                sort_order=definition["sort_order"],
                structure_json=json.dumps(definition["structure"]),
                tags=definition["tags"],
            )
        )
        created += 1
    if created:
        session.commit()
        logger.info("Seeded %d system templates", created)
    return created


def search_templates(session: Session, text: str) -> List[PhaseTemplate]:
    pattern = f"%{text}%"
    return list(
        session.exec(
            select(PhaseTemplate)
            .where(
                PhaseTemplate.is_active == True,  # noqa: E712
                or_(PhaseTemplate.name.ilike(pattern), PhaseTemplate.tags.ilike(pattern)),
            )
            .order_by(PhaseTemplate.sort_order, PhaseTemplate.name)
        ).all()
    )
