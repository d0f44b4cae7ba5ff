"""
Errors raised across the analyzer boundary
"""


class UpstreamError(Exception):
    """The data store failed (network, auth, query). Carries a human readable message."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> dict:
        return {'error': self.message, 'status': self.status, 'retryable': True}


class AlertNotFoundError(LookupError):
    pass


class AlertStateError(ValueError):
    """Requested lifecycle transition is not allowed from the current status"""
