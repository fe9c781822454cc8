"""Typed failures raised by the stores and the auth gateway.

Each carries the HTTP status the API layer answers with; the message is safe
to show to the client.
"""
from typing import Optional


class TaskFlowError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(TaskFlowError):
    status_code = 400
    default_message = "Please check your input and try again"


class DuplicateEmail(TaskFlowError):
    status_code = 400
    default_message = "User already exists with this email"


class Unauthorized(TaskFlowError):
    status_code = 401
    default_message = "Access token required"


class InvalidToken(TaskFlowError):
    status_code = 401
    default_message = "Invalid or expired token"


class UserNotFound(TaskFlowError):
    status_code = 401
    default_message = "User not found"


class NotFound(TaskFlowError):
    status_code = 404
    default_message = "Task not found"


class Conflict(TaskFlowError):
    status_code = 409
    default_message = "Task was modified concurrently, please retry"


class InternalError(TaskFlowError):
    status_code = 500
