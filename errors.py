"""Operational errors raised by the service.

Every error carries an HTTP status code and a status classification:
``fail`` for client errors (4xx) and ``error`` for server errors (5xx).
"""


class AppError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    @property
    def status(self) -> str:
        return "fail" if str(self.status_code).startswith("4") else "error"

    def to_dict(self):
        return {"status": self.status, "message": self.message}


class BadRequest(AppError):
    status_code = 400


class ValidationError(AppError):
    status_code = 400


class Unauthorized(AppError):
    status_code = 401


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class InternalError(AppError):
    status_code = 500
