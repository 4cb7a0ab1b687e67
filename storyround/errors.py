class ValidationError(Exception):
    """Bad caller input. Raised before any state is touched."""

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class DuplicateError(Exception):
    """The payment reference was already processed."""


class ExternalServiceError(Exception):
    """Market buy, token transfer or balance query failed after retries."""


class PersistenceWarning(Exception):
    """Snapshot write failed. The in-memory state stays authoritative."""


class StartupError(Exception):
    """Required credentials or configuration are missing."""
