from typing import Optional

from sqlalchemy import UniqueConstraint as SAUniqueConstraint
from sqlmodel import Field, SQLModel


class AdvancementRule(SQLModel, table=True):
    """Finish position in a source phase -> incoming slot of a later phase."""

    # A target slot is fed by exactly one rule
    __table_args__ = (
        SAUniqueConstraint("target_phase_id", "target_slot_number", name="uq_advancement_target_slot"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    source_phase_id: int = Field(foreign_key="phase.id", index=True)
    source_rank: int  # Overall exit position (advancing slot number) in the source phase
    source_pool_id: Optional[int] = Field(default=None, foreign_key="phasepool.id")
    source_pool_rank: Optional[int] = Field(default=None)
    target_phase_id: int = Field(foreign_key="phase.id", index=True)
    target_slot_number: int
    description: Optional[str] = Field(default=None)
    process_order: int = Field(default=0)
