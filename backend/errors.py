from typing import Optional


class ApiError(Exception):
    """Base class for failures that map onto an error envelope."""

    status_code = 500
    default_message = "Something went wrong. Please try again later."

    def __init__(self, message: Optional[str] = None, data=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.data = data


class InvalidPayload(ApiError):
    status_code = 400
    default_message = "Invalid payload"


class TooManyFiles(InvalidPayload):
    default_message = "Please upload a single file at a time"


class UnsupportedMediaType(ApiError):
    status_code = 415
    default_message = "Please upload a valid image or video file"


class Unauthorized(ApiError):
    status_code = 401
    default_message = "Authentication is required."


class Forbidden(ApiError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFound(ApiError):
    status_code = 404
    default_message = "Resource not found"


class InvalidTransition(ApiError):
    status_code = 409
    default_message = "This order cannot move to the requested status."


class ConcurrentUpdate(ApiError):
    status_code = 409
    default_message = "The order was modified by another request. Please retry."


class UpstreamFailure(ApiError):
    status_code = 502
    default_message = "An upstream service failed to respond."


class Timeout(ApiError):
    status_code = 504
    default_message = "The report took too long to compute."
