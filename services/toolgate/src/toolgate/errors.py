"""Error taxonomy for tool invocation.

Every error raised inside the orchestrator is one of these; the boundary turns
them into the failure response shape using `code` and `status_code`.
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "ToolgateError",
    "InvalidRequest",
    "UnsupportedTool",
    "InvalidArguments",
    "Forbidden",
    "InvalidOrExpiredConfirmation",
    "ExecutionFailure",
    "NotFound",
]


class ToolgateError(Exception):
    code = "ToolgateError"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidRequest(ToolgateError):
    """Malformed invocation envelope."""

    code = "InvalidRequest"
    status_code = 400


class UnsupportedTool(ToolgateError):
    code = "UnsupportedTool"
    status_code = 400

    def __init__(self, tool: str) -> None:
        self.tool = tool
        super().__init__(f"Unsupported tool: {tool}", {"tool": tool})


class InvalidArguments(ToolgateError):
    """Tool arguments violate the tool's schema. `fields` lists the offending paths."""

    code = "InvalidArguments"
    status_code = 422

    def __init__(self, fields: list[str], message: str | None = None) -> None:
        self.fields = fields
        super().__init__(
            message or f"Invalid arguments: {', '.join(fields)}",
            {"fields": fields},
        )


class Forbidden(ToolgateError):
    code = "Forbidden"
    status_code = 403

    def __init__(self, reasons: list[str]) -> None:
        self.reasons = reasons
        super().__init__("Access denied by policy", {"reasons": reasons})


class InvalidOrExpiredConfirmation(ToolgateError):
    code = "InvalidOrExpiredConfirmation"
    status_code = 400

    def __init__(self, confirmation_id: str) -> None:
        self.confirmation_id = confirmation_id
        super().__init__("Invalid or expired confirmation", {"confirmation_id": confirmation_id})


class ExecutionFailure(ToolgateError):
    """Wraps the underlying collaborator error message."""

    code = "ExecutionFailure"
    status_code = 502


class NotFound(ToolgateError):
    """Referenced record (e.g. a patient) does not exist."""

    code = "NotFound"
    status_code = 404
