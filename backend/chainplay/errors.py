"""Error taxonomy for the turn engine.

Every error carries the HTTP status the JSON layer answers with. Callers
branch on the category (ValidationError, ConflictError, ...) rather than on
individual classes.
"""


class EngineError(Exception):
    status_code = 500
    message = 'Unexpected engine error'

    def __init__(self, message=None):
        super().__init__(message or self.message)

    def to_dict(self):
        return {'error': str(self), 'code': type(self).__name__}


class ValidationError(EngineError, ValueError):
    status_code = 400
    message = 'Invalid request'


class WrongTurnType(ValidationError):
    message = 'Submitted content does not match the turn type'


class EmptyContent(ValidationError):
    message = 'Turn content is required'


class InvalidDuration(ValidationError):
    message = 'Invalid duration format. Use format like "1h", "30m", "2h30m", "1d2h30m"'


class InvalidPartySettings(ValidationError):
    message = 'Invalid party settings'


class ForbiddenError(EngineError):
    status_code = 403
    message = 'Not allowed'


class NotPartyCreator(ForbiddenError):
    message = 'Only the party creator can do that'


class NotFoundError(EngineError, LookupError):
    status_code = 404
    message = 'Not found'


class GameNotFound(NotFoundError):
    message = 'Game not found'


class TurnNotFound(NotFoundError):
    message = 'Turn not found'


class FlagNotFound(NotFoundError):
    message = 'Flag not found'


class PartyNotFound(NotFoundError):
    message = 'Party not found'


class ConfigNotFound(NotFoundError):
    message = 'Game config not found'


class ConflictError(EngineError):
    status_code = 409
    message = 'Conflict'


class PendingGameExists(ConflictError):
    message = 'Player already has a pending turn'


class DuplicatePendingFlag(ConflictError):
    message = 'Player already has a pending flag'


class GameAlreadyCompleted(ConflictError):
    message = 'Game already completed'


class TurnAlreadyRejected(ConflictError):
    message = 'Turn already rejected'


class PartyNotOpen(ConflictError):
    message = 'Party is not open'


class ExpiredError(EngineError):
    status_code = 410
    message = 'Expired'


class TurnExpired(ExpiredError):
    message = 'Turn expired'


class RotationError(EngineError):
    message = 'Unable to assign the next player'


class TransientInfrastructureError(EngineError):
    status_code = 503
    message = 'Infrastructure temporarily unavailable'


class JobQueueUnavailable(TransientInfrastructureError):
    message = 'Job queue unavailable'
