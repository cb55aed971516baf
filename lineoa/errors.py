"""Domain errors raised by operator-facing services."""


class ConsoleError(Exception):
    """Base class; `str(err)` is shown to the operator."""

    status_code = 400


class NotFoundError(ConsoleError):
    status_code = 404


class ConflictError(ConsoleError):
    status_code = 409


class ValidationError(ConsoleError):
    status_code = 400


class RichMenuRegistrationError(ConsoleError):
    """Registering or unregistering a rich menu with LINE failed."""

    status_code = 502
