"""Error taxonomy shared by services and routers."""


class GreenhouseError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500
    default_message = "Internal server error."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidArgument(GreenhouseError):
    status_code = 400
    default_message = "Invalid request."


class Unauthorized(GreenhouseError):
    status_code = 401
    default_message = "Authentication failed."


class Forbidden(GreenhouseError):
    status_code = 403
    default_message = "Access denied."


class NotFound(GreenhouseError):
    status_code = 404
    default_message = "Not found."


class Conflict(GreenhouseError):
    status_code = 409
    default_message = "Conflict."


class InternalError(GreenhouseError):
    status_code = 500


class Unavailable(GreenhouseError):
    status_code = 503
    default_message = "Database is not initialized."
