class StorageError(Exception):
    """Raised by a backing store when a key could not be written."""


class StorageQuotaExceeded(StorageError):
    """The backing store has no room left for the value being written."""


class CryptoUnavailable(Exception):
    """No secret cipher or hashing provider is configured."""
