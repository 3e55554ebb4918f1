"""
Domain errors raised by the service modules.

Each class carries the HTTP status the API answers with; main.py installs a
single exception handler that turns any ServiceError into {"detail": message}.
"""


class ServiceError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(ServiceError):
    status_code = 400


class Unauthenticated(ServiceError):
    status_code = 401


class Forbidden(ServiceError):
    status_code = 403


class NotFound(ServiceError):
    status_code = 404


class Conflict(ServiceError):
    status_code = 409


class FailedPrecondition(ServiceError):
    status_code = 400


class Unavailable(ServiceError):
    status_code = 500
