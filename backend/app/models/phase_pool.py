from typing import TYPE_CHECKING, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.phase import Phase


class PhasePool(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    phase_id: int = Field(foreign_key="phase.id", index=True)
    pool_name: str  # "A", "B", ...
    pool_order: int  # 1-based
    slot_count: int

    phase: "Phase" = Relationship(back_populates="pools")
