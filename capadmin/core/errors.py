class BotError(Exception):
    """Base bot error."""


class UpstreamError(BotError):
    """Raised when an upstream API is unavailable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class LedgerError(UpstreamError):
    """Raised when a backend ledger write fails."""


class OracleError(UpstreamError):
    """Raised when a chain transaction cannot be resolved."""


class ValidationError(BotError):
    """Raised for invalid operator input or a missing domain precondition."""


class ItemNotFoundError(BotError):
    """Raised when no announced item matches a key or number."""


class DeliveryError(BotError):
    """Raised when Telegram refuses a send/edit/delete."""
