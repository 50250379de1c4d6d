"""HTTP-facing application errors.

Raised from routers and dependencies; rendered by the handlers registered in
``app.main`` as ``{"success": false, "error": <message>}``.
"""


class AppError(Exception):
    status_code: int = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
        self.message = message


class BadRequestError(AppError):
    status_code = 400


class UnauthorizedError(AppError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class NotFoundError(AppError):
    status_code = 404


class ServiceUnavailableError(AppError):
    status_code = 503
