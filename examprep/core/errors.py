"""
Domain errors raised by the exam services.

Routers never catch these; the handlers registered in ``examprep.main`` turn
them into JSON responses with the matching status code.
"""


class ExamError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(ExamError):
    """Session, section or answer is absent, or not owned by the caller."""

    status_code = 404
    error_type = "not_found"


class InvalidInputError(ExamError):
    status_code = 400
    error_type = "invalid_input"


class ConfigurationError(ExamError):
    """The catalog has no sections for a required level/mode/language."""

    status_code = 500
    error_type = "configuration_error"


class ConflictError(ExamError):
    status_code = 409
    error_type = "conflict"
