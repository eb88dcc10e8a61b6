class ScrapeStoreError(Exception):
    """Base class for every error the store surfaces to its callers."""


class ValidationError(ScrapeStoreError):
    """Malformed or missing required input. Not worth retrying."""


class NotFoundError(ScrapeStoreError):
    pass


class ConflictError(ScrapeStoreError):
    """A uniqueness constraint rejected the write."""


class StorageError(ScrapeStoreError):
    """Connectivity, timeout or any other backend failure.

    Safe to retry with backoff; the original driver error is chained as
    ``__cause__``.
    """


class DeadlineExceeded(StorageError):
    pass
