"""Exceptions raised by the snapshot engine"""

class OsuTrackError(Exception):
    """Base class for engine errors"""

class ValidationError(OsuTrackError):
    """Malformed or missing input, rejected before any write"""

class ConcurrencyConflict(OsuTrackError):
    """Two ingestions raced on the same (user, mode) key"""

class StorageFailure(OsuTrackError):
    """The underlying database failed; the transaction was rolled back"""

class QueryTimeout(OsuTrackError):
    """A read query exceeded its deadline"""
