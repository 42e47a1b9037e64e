from __future__ import annotations


class ScrobblerError(RuntimeError):
    """Base class for expected scrobbler failures."""


class ConfigurationError(ScrobblerError):
    """A required user credential or setting is missing; the event is skipped."""


class DecryptionError(ScrobblerError):
    """A stored token could not be decrypted with the configured key."""


class LookupMiss(ScrobblerError):
    """The primary service has no record for the played item."""


class JobStoreUnavailable(ScrobblerError):
    """The delayed-job store rejected or could not accept an operation."""
