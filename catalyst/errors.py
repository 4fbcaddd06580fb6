"""Application exceptions.

Services raise these; create_app() registers one handler that renders any
CatalystError as ``{"error": message}`` with the class's status code.
"""


class CatalystError(Exception):
    """Base exception for the Monetary Catalyst API."""

    status_code = 500

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


class ValidationError(CatalystError):
    """Missing or invalid request field."""

    status_code = 400


class UnauthorizedError(CatalystError):
    """Unauthorized"""

    status_code = 401


class NotFoundError(CatalystError):
    """Requested record does not exist."""

    status_code = 404


class LedgerWriteError(CatalystError):
    """A local subscription/payment write failed."""

    status_code = 500
