# Force SQLModel table registration at test discovery time
# This ensures all models are registered before any test database creation
from app.models.advancement_rule import AdvancementRule  # noqa: F401
from app.models.division import Division  # noqa: F401
from app.models.drawing_session import DrawingSession  # noqa: F401
from app.models.encounter import Encounter  # noqa: F401
from app.models.match_format import EncounterMatchFormat, PhaseMatchSettings  # noqa: F401
from app.models.phase import Phase  # noqa: F401
from app.models.phase_pool import PhasePool  # noqa: F401
from app.models.phase_slot import PhaseSlot  # noqa: F401
from app.models.phase_template import PhaseTemplate  # noqa: F401
from app.models.unit import Unit, UnitMember  # noqa: F401
