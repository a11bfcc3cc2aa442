from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlmodel import Field, Relationship, SQLModel

if TYPE_CHECKING:
    from app.models.division import Division

UNIT_STATUS_CANCELLED = "Cancelled"
UNIT_STATUS_WAITLISTED = "Waitlisted"

# Units in these states never take part in a draw
INELIGIBLE_UNIT_STATUSES = (UNIT_STATUS_CANCELLED, UNIT_STATUS_WAITLISTED)


class Unit(SQLModel, table=True):
    """A registered participant (player, pair or team) in a division."""

    id: Optional[int] = Field(default=None, primary_key=True)
    division_id: int = Field(foreign_key="division.id", index=True)
    name: str
    status: str = Field(default="Registered")  # "Registered" | "Confirmed" | "CheckedIn" | "Cancelled" | "Waitlisted"
    created_at: datetime = Field(default_factory=datetime.utcnow)

    # Relationships
    division: "Division" = Relationship(back_populates="units")
    members: List["UnitMember"] = Relationship(back_populates="unit")

    @property
    def is_eligible(self) -> bool:
        return self.status not in INELIGIBLE_UNIT_STATUSES


class UnitMember(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    unit_id: int = Field(foreign_key="unit.id", index=True)
    name: str
    invite_status: str = Field(default="Accepted")  # "Accepted" | "Pending" | "Declined"

    unit: "Unit" = Relationship(back_populates="members")
