class ScreenTimeError(RuntimeError):
    pass


class GrantValidationError(ScreenTimeError):
    """Malformed command, rejected before it reaches the queue."""


class ProviderError(ScreenTimeError):
    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class TimeoutExpired(ScreenTimeError):
    pass


class DuplicateCommand(ScreenTimeError):
    """A grant record already exists for this idempotency key."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(f"already recorded: {idempotency_key}")
        self.idempotency_key = idempotency_key
