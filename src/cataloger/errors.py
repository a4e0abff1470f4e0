"""Exception hierarchy shared by all cataloger components."""

from __future__ import annotations


class CatalogerError(Exception):
    """Base class for every error raised by cataloger."""


class ConfigurationError(CatalogerError):
    """Invalid configuration, scan type or output format."""


class ExtractionError(CatalogerError):
    """A source file could not be parsed or analyzed."""

    def __init__(self, path: str, message: str) -> None:
        super().__init__(f"{path}: {message}")
        self.path = path


class SamplingError(CatalogerError):
    """The live database could not be sampled."""


class SamplingTimeoutError(SamplingError):
    """Sampling exceeded its time limit or was cancelled."""


class SynchronizationError(CatalogerError):
    """A synchronization run could not produce any result."""
