"""
Error taxonomy shared by the services and the HTTP layer.

Services raise these; `server.py` installs one exception handler that turns
them into `{"detail": ..., "code": ...}` responses.
"""


class AppError(Exception):
    status_code = 500
    code = "error"

    def __init__(self, message: str = "", *, code: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class NotFound(AppError):
    status_code = 404
    code = "resourceNotFound"


class Unauthorized(AppError):
    status_code = 401
    code = "unauthorized"


class Conflict(AppError):
    status_code = 409
    code = "resourceUsed"


class BadRequest(AppError):
    status_code = 400
    code = "badRequest"


class PayloadIncorrect(BadRequest):
    code = "payloadIncorrect"


class UnprocessableState(AppError):
    status_code = 422
    code = "unprocessableState"


class UnableToComplete(AppError):
    # downstream provider failed or timed out; safe to retry later
    status_code = 502
    code = "unableToComplete"
