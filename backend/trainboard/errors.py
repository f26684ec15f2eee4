"""Domain errors raised by the session services.

Every error carries a short, user-facing message and the HTTP status the
API layer answers with. Store exceptions are never passed through to
clients; services translate them into one of these.
"""


class TrainboardError(Exception):
    status_code = 400
    message = 'Request failed'

    def __init__(self, message=None):
        super().__init__(message or self.message)
        if message:
            self.message = message

    def to_dict(self):
        return {'error': self.message, 'kind': type(self).__name__}


class ValidationError(TrainboardError):
    message = 'Invalid request'


class SessionNotFound(TrainboardError):
    status_code = 404
    message = 'Session not found'


class InvalidJoinCode(TrainboardError):
    status_code = 404
    message = 'Invalid or expired join code'


class RegistrationClosed(TrainboardError):
    status_code = 403
    message = 'Registration for this session is closed'


class AlreadyJoined(TrainboardError):
    status_code = 409
    message = 'You have already joined this session'

    def __init__(self, participant_id=None, message=None):
        super().__init__(message)
        self.participant_id = participant_id

    def to_dict(self):
        payload = super().to_dict()
        payload['participant_id'] = self.participant_id
        return payload


class EmailTaken(TrainboardError):
    status_code = 409
    message = 'Another participant in this session already uses that email'


class ParticipantNotFound(TrainboardError):
    status_code = 404
    message = 'Participant not found'


class UnknownCategory(TrainboardError):
    message = 'Unknown scoring category'


class OutOfRange(TrainboardError):
    message = 'Score change would leave the allowed range'

    def __init__(self, category, attempted, minimum, maximum):
        super().__init__(
            f'{category} score would be {attempted}, allowed range is {minimum} to {maximum}'
        )
        self.category = category
        self.attempted = attempted
        self.minimum = minimum
        self.maximum = maximum


class PermissionDenied(TrainboardError):
    status_code = 403
    message = 'Only session admins may do that'


class ConcurrentUpdateError(TrainboardError):
    status_code = 409
    message = 'Participant was changed by someone else, please retry'
