class RoundError(Exception):
    """Base error for round handling. ``status`` maps to the HTTP response."""

    status = 400
    default_message = 'round error'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)


class ConfigurationError(RoundError):
    status = 500
    default_message = 'Server not configured'


class SigningNotConfigured(ConfigurationError):
    default_message = 'Round signing secret is not configured'


class RealtimeNotConfigured(ConfigurationError):
    default_message = 'Realtime channel secret is not configured'


class RoundValidationError(RoundError):
    status = 400
    default_message = 'Bad payload'


class AuthenticityError(RoundError):
    status = 403
    default_message = 'Rejected'


class InvalidSignature(AuthenticityError):
    default_message = 'Invalid signature'


class OutsideTimeWindow(AuthenticityError):
    default_message = 'Outside time window'


class RoundConflict(RoundError):
    status = 409
    default_message = 'Round already exists with different parameters'


class RoundNotFound(RoundError):
    status = 404
    default_message = 'Round not found'


class RoundGenerationError(RoundError):
    # Generated a round whose target is not strictly reachable
    status = 500
    default_message = 'Generated round violates target invariant'
