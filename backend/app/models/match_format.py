from typing import Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, SQLModel


class EncounterMatchFormat(SQLModel, table=True):
    """One match inside a multi-match team encounter (e.g. "Men's Doubles" in a scrimmage)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    match_order: int = Field(default=1)
    name: str
    code: Optional[str] = Field(default=None)

    # Required player composition
    male_count: int = Field(default=0)
    female_count: int = Field(default=0)
    unisex_count: int = Field(default=2)

    best_of: Optional[int] = Field(default=None)
    score_format_id: Optional[int] = Field(default=None)
    is_active: bool = Field(default=True)


class PhaseMatchSettings(SQLModel, table=True):
    """Per-phase game settings override. match_format_id=None is the phase-wide default."""

    __table_args__ = (
        SAUniqueConstraint("phase_id", "match_format_id", name="uq_phase_match_format"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    phase_id: int = Field(foreign_key="phase.id", index=True)
    match_format_id: Optional[int] = Field(default=None, foreign_key="encountermatchformat.id")
    best_of: Optional[int] = Field(default=None)
    score_format_id: Optional[int] = Field(default=None)
