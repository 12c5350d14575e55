"""Pipeline error taxonomy."""

from __future__ import annotations


class AdwatchError(RuntimeError):
    pass


class ConfigurationError(AdwatchError):
    """Missing credentials or connection settings. Nothing is attempted."""


class SourceUnavailable(AdwatchError):
    """The ad source could not be reached or answered with a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class MalformedSourceData(AdwatchError):
    """The ad source answered with a payload that cannot be decoded."""


class PersistenceError(AdwatchError):
    """A read or write against the database failed."""


class BrandNotFound(PersistenceError):
    pass
