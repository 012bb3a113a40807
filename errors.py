class TraceChainError(Exception):
    """Base class for errors raised by the ledger core."""


class ValidationError(TraceChainError):
    """A transaction broke a rule and was not appended."""

    def __init__(self, reason: str, tx_type: str = None):
        super().__init__(reason)
        self.reason = reason
        self.tx_type = tx_type


class NotFoundError(TraceChainError):
    def __init__(self, batch_id: str):
        super().__init__(f"batch {batch_id} not found")
        self.batch_id = batch_id


class StorageError(TraceChainError):
    """Reading or flushing the ledger failed."""
