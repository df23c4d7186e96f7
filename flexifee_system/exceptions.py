"""
Errors raised by the BNPL lifecycle services.

None of these change domain state: the call that raised is rejected as a
whole. ``retryable`` tells the caller whether the same call may succeed if
repeated (after re-fetching, for conflicts).
"""


class BNPLError(Exception):
    retryable = False
    status_code = 400

    def __init__(self, message):
        super().__init__(message)
        self.message = message


class ValidationError(BNPLError):
    """Malformed or missing input"""

    def __init__(self, message, field=None):
        super().__init__(message)
        self.field = field


class PreconditionError(BNPLError):
    """The entity is not in a state that permits the operation"""
    status_code = 409


class DependencyError(BNPLError):
    """File storage or payment gateway failed or timed out"""
    retryable = True
    status_code = 503


class ConcurrencyConflict(BNPLError):
    """The entity changed since it was read"""
    retryable = True
    status_code = 409
