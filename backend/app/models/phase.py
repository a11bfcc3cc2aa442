from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.division import Division
    from app.models.encounter import Encounter
    from app.models.phase_pool import PhasePool
    from app.models.phase_slot import PhaseSlot

PHASE_ROUND_ROBIN = "RoundRobin"
PHASE_POOLS = "Pools"
PHASE_SINGLE_ELIMINATION = "SingleElimination"
PHASE_DOUBLE_ELIMINATION = "DoubleElimination"
PHASE_BRACKET_ROUND = "BracketRound"
PHASE_AWARD = "Award"
PHASE_DRAW = "Draw"

BRACKET_PHASE_TYPES = (PHASE_SINGLE_ELIMINATION, PHASE_DOUBLE_ELIMINATION, PHASE_BRACKET_ROUND)


class Phase(SQLModel, table=True):
    """One stage of a division's schedule, materialized from a resolved phase spec."""

    __table_args__ = (SAUniqueConstraint("division_id", "phase_order", name="uq_division_phase_order"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    template_id: Optional[int] = Field(default=None, foreign_key="phasetemplate.id")
    phase_order: int  # 1-based
    phase_type: str  # "RoundRobin" | "Pools" | "SingleElimination" | "DoubleElimination" | "BracketRound" | "Award" | "Draw"
    name: str

    incoming_slot_count: int
    advancing_slot_count: int
    pool_count: Optional[int] = Field(default=None)
    include_consolation: bool = Field(default=False)
    seeded: bool = Field(default=False)  # Entry pairing uses bracket-fold order

    # Phase-level game settings (override division defaults)
    best_of: Optional[int] = Field(default=None)
    score_format_id: Optional[int] = Field(default=None)

    status: str = Field(default="Pending")  # "Pending" | "InProgress" | "Completed" | "Locked"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    division: "Division" = Relationship(back_populates="phases")
    slots: List["PhaseSlot"] = Relationship(back_populates="phase")
    pools: List["PhasePool"] = Relationship(back_populates="phase")
    encounters: List["Encounter"] = Relationship(back_populates="phase")
