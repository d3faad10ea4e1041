class TransactionValidationError(ValueError):
    pass


class TransactionNotFound(ValueError):
    pass


class StoreWriteFailure(RuntimeError):
    def __init__(self, operation: str, collection: str, detail: str = "") -> None:
        message = f"{operation} on {collection} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.collection = collection


class StoreReadFailure(RuntimeError):
    def __init__(self, operation: str, collection: str, detail: str = "") -> None:
        message = f"{operation} on {collection} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.operation = operation
        self.collection = collection


class ConcurrentEditError(StoreWriteFailure):
    """The record changed since the caller read it."""

    def __init__(self, collection: str, identity: int, expected: int, actual: int):
        super().__init__(
            "update",
            collection,
            f"record {identity} is at version {actual}, expected {expected}",
        )
        self.identity = identity
        self.expected = expected
        self.actual = actual
