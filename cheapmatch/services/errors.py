"""
Error types raised inside the matching service.

Transient I/O and malformed-response faults are absorbed where they happen
(adapters return worst-case values), so only the two faults below travel
across module boundaries.
"""


class ConfigurationError(ValueError):
    """Required credentials are missing; the pipeline cannot run."""


class CacheWriteError(Exception):
    """The result store rejected or could not complete a write."""
