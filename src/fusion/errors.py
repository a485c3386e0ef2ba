"""Exception taxonomy for the fusion engine.

Only ``ConfigurationError`` is allowed to escape to the host process; the
other errors are raised close to their source and caught one frame up, where
the failing contribution is logged and skipped.  Missing data is never an
exception; rules and templates that cannot be satisfied return ``None``.
"""

from __future__ import annotations


class FusionError(Exception):
    """Base class for all fusion engine errors."""


class ConfigurationError(FusionError, ValueError):
    """Raised at startup when the rule/template registry is malformed."""


class CorruptEventError(FusionError, ValueError):
    """A raw event failed shape validation (missing timestamp, unknown type...).

    Attributes:
        payload: The offending input, kept for the warning log.
    """

    def __init__(self, message: str, payload: object = None) -> None:
        super().__init__(message)
        self.payload = payload


class SourceUnavailableError(FusionError):
    """A shadow or historical-pattern lookup failed or timed out.

    Attributes:
        source:    Data source or lookup name that failed.
        operation: Store operation that was attempted.
    """

    def __init__(self, source: str, operation: str, cause: BaseException | None = None) -> None:
        detail = f": {cause!r}" if cause is not None else ""
        super().__init__(f"{operation} unavailable for '{source}'{detail}")
        self.source = source
        self.operation = operation
