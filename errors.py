"""
Error taxonomy shared by the store, the workflow engine and the HTTP layer.

Each error knows the HTTP status it maps to and a message that is safe to
show the caller.
"""
from typing import Optional


class VisitorAppError(Exception):
    status_code = 500
    message = "Something went wrong!"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        self.message = message or self.message
        self.error = error
        super().__init__(self.message)


class ValidationError(VisitorAppError):
    status_code = 400
    message = "Invalid request"


class Unauthenticated(VisitorAppError):
    status_code = 401
    message = "Access token is required"


class Forbidden(VisitorAppError):
    status_code = 403
    message = "Insufficient permissions"


class NotFound(VisitorAppError):
    status_code = 404
    message = "Not found"


class InvalidTransition(VisitorAppError):
    status_code = 409
    message = "Action not allowed in the current state"


class StoreUnavailable(VisitorAppError):
    status_code = 500
    message = "Datastore unavailable"


class StoreTimeout(StoreUnavailable):
    status_code = 504
    message = "Datastore request timed out"
