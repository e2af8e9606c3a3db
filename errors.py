"""Error types raised by the finance services.

Each error knows the HTTP status it maps to, so the app can render it
the same way whether it came from a payable, a budget or a notification.
"""


class FinanceError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message=None, **payload):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.payload = payload

    def to_dict(self):
        body = {'error': self.message}
        body.update(self.payload)
        return body


class InvalidInput(FinanceError):
    status_code = 400
    default_message = 'Invalid input'


class Unauthenticated(FinanceError):
    status_code = 401
    default_message = 'Unauthorized'


class NotFound(FinanceError):
    """Entity is missing or owned by someone else; callers can't tell which."""
    status_code = 404
    default_message = 'Not found'


class AlreadySettled(FinanceError):
    status_code = 400
    default_message = 'This payable is already fully paid'


class ExceedsRemaining(FinanceError):
    status_code = 400

    def __init__(self, remaining):
        super().__init__(
            f'Payment exceeds remaining amount. Remaining: {remaining}',
            remaining=remaining,
        )
        self.remaining = remaining


class Conflict(FinanceError):
    """The row changed between read and write; the client should retry."""
    status_code = 409
    default_message = 'Record changed, please retry'


class Internal(FinanceError):
    status_code = 500
