"""Exception types for stationsearch.

Most components return typed outcomes (SessionResult, RequestOutcome,
BatchResult) instead of raising. Exceptions are reserved for the credential
store boundary and for conditions that should abort the whole run.
"""


class StationSearchError(Exception):
    """Base class for all stationsearch errors."""


class ConfigurationError(StationSearchError):
    """Integration disabled or missing URL/credentials."""


class PersistenceError(StationSearchError):
    """A credential was obtained but could not be written to disk."""


class CredentialStoreCorruptError(StationSearchError):
    """A stored credential document exists but cannot be parsed."""


class QueueFormatError(StationSearchError):
    """A pending update row could not be parsed."""
