# errors.py — Domain error taxonomy for the XP / rank / eligibility engine
#
# Every engine denial is a GamificationError carrying the HTTP status and
# a stable machine code; main.py turns them into JSON responses.


class GamificationError(Exception):
    """Base exception for engine operations."""

    status_code = 400
    code = "RF-GEN-000"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.details = details


class ValidationError(GamificationError):
    """Malformed input, raised before any mutation."""
    status_code = 400
    code = "RF-VAL-001"


class NotFound(GamificationError):
    status_code = 404
    code = "RF-DB-404"


class Forbidden(GamificationError):
    status_code = 403
    code = "RF-AUTH-003"


class NotEligible(Forbidden):
    code = "RF-ELIG-001"


class NotParticipant(Forbidden):
    code = "RF-TOUR-002"


class Conflict(GamificationError):
    status_code = 409
    code = "RF-DB-409"


class AlreadyJoined(Conflict):
    code = "RF-TOUR-003"


class LimitReached(GamificationError):
    status_code = 403
    code = "RF-TASK-001"


class OnCooldown(GamificationError):
    status_code = 429
    code = "RF-TASK-002"


class TaskInactive(GamificationError):
    status_code = 403
    code = "RF-TASK-003"


class NotActive(GamificationError):
    status_code = 403
    code = "RF-TOUR-001"


class Full(GamificationError):
    status_code = 409
    code = "RF-TOUR-004"


class ConfigurationError(GamificationError):
    """Operator misconfiguration (empty rank table, dangling rank reference)."""
    status_code = 500
    code = "RF-SYS-001"


class DeliveryError(GamificationError):
    """Notification could not be delivered. Never aborts engine transactions."""
    status_code = 502
    code = "RF-NET-001"
