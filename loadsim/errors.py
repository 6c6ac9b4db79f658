from __future__ import annotations


class LoadSimError(Exception):
    """Base class for every error raised by loadsim."""


class ConfigError(LoadSimError, ValueError):
    """Raised when run configuration or a load profile is malformed."""


class FixtureLoadError(LoadSimError):
    """Raised when fixture data is missing, malformed or empty."""


class CallError(LoadSimError):
    """A single call against the target failed.

    Never propagates past the session step that produced it.
    """

    kind = "failure"

    def __init__(self, message: str, status: int | str | None = None) -> None:
        super().__init__(message)
        self.status = status


class TransportConnectionError(CallError):
    kind = "connection"


class CallTimeoutError(CallError):
    kind = "timeout"


class CallFailure(CallError):
    kind = "failure"


class DecodeError(CallError):
    kind = "decode"


__all__ = [
    "LoadSimError",
    "ConfigError",
    "FixtureLoadError",
    "CallError",
    "TransportConnectionError",
    "CallTimeoutError",
    "CallFailure",
    "DecodeError",
]
