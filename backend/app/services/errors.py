"""
Scheduling/Drawing error taxonomy.

Services raise these; routes translate them to HTTPException with a
"CODE: message" detail (see app.utils.guards.to_http_exception).
"""


class SchedulingError(Exception):
    code = "SCHEDULING_ERROR"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFound(SchedulingError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidStructure(SchedulingError):
    code = "INVALID_STRUCTURE"
    status_code = 422


class UnitCountOutOfRange(SchedulingError):
    code = "UNIT_COUNT_OUT_OF_RANGE"
    status_code = 422


class ScheduleAlreadyExists(SchedulingError):
    code = "SCHEDULE_ALREADY_EXISTS"
    status_code = 409


class ScheduleNotGenerated(SchedulingError):
    code = "SCHEDULE_NOT_GENERATED"
    status_code = 409


class NoEligibleUnits(SchedulingError):
    code = "NO_ELIGIBLE_UNITS"
    status_code = 422


class NoUnitsRemaining(SchedulingError):
    code = "NO_UNITS_REMAINING"
    status_code = 409


class DrawNotFinished(SchedulingError):
    code = "DRAW_NOT_FINISHED"
    status_code = 409


class DrawAlreadyInProgress(SchedulingError):
    code = "DRAW_ALREADY_IN_PROGRESS"
    status_code = 409


class DrawAlreadyConfirmed(SchedulingError):
    code = "DRAW_ALREADY_CONFIRMED"
    status_code = 409


class ConcurrentDrawConflict(SchedulingError):
    code = "CONCURRENT_DRAW_CONFLICT"
    status_code = 409


class SlotConflict(SchedulingError):
    code = "SLOT_CONFLICT"
    status_code = 409


class TemplateInUse(SchedulingError):
    code = "TEMPLATE_IN_USE"
    status_code = 409


class TemplateImmutable(SchedulingError):
    code = "TEMPLATE_IMMUTABLE"
    status_code = 403


class ConnectionLost(SchedulingError):
    """Delivery to a drawing-room subscriber failed. Never surfaced over HTTP."""

    code = "CONNECTION_LOST"
    status_code = 500
