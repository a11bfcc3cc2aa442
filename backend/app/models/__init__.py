from app.models.advancement_rule import AdvancementRule
from app.models.division import Division
from app.models.drawing_session import DrawingSession
from app.models.encounter import Encounter
from app.models.match_format import EncounterMatchFormat, PhaseMatchSettings
from app.models.phase import Phase
from app.models.phase_pool import PhasePool
from app.models.phase_slot import PhaseSlot
from app.models.phase_template import PhaseTemplate
from app.models.unit import Unit, UnitMember

__all__ = [
    "PhaseTemplate",
    "Division",
    "Unit",
    "UnitMember",
    "Phase",
    "PhasePool",
    "PhaseSlot",
    "AdvancementRule",
    "Encounter",
    "DrawingSession",
    "EncounterMatchFormat",
    "PhaseMatchSettings",
]
