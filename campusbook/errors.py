"""Error taxonomy for booking operations.

Each error carries the HTTP status the API layer answers with, so the
service can raise without knowing about Flask.
"""


class BookingError(Exception):
    status_code = 400
    default_message = 'Booking request failed'

    def __init__(self, message=None, errors=None):
        self.message = message or self.default_message
        self.errors = errors or {}
        super().__init__(self.message)

    def to_dict(self):
        body = {'success': False, 'message': self.message}
        if self.errors:
            body['errors'] = self.errors
        return body


class ValidationError(BookingError):
    default_message = 'Validation error'


class ConflictError(BookingError):
    default_message = 'Time slot is already booked'


class ResourceUnavailableError(BookingError):
    default_message = 'Resource is not available'


class InvalidTransitionError(BookingError):
    default_message = 'Invalid status transition'


class AuthenticationError(BookingError):
    status_code = 401
    default_message = 'Unauthorized'


class AuthorizationError(BookingError):
    status_code = 403
    default_message = 'Forbidden'


class NotFoundError(BookingError):
    status_code = 404
    default_message = 'Not found'


class StoreError(BookingError):
    status_code = 500
    default_message = 'Internal server error'
