"""Exception hierarchy shared by every ta-watcher component."""

from __future__ import annotations

from collections.abc import Mapping


class WatcherError(Exception):
    """Base class for all ta-watcher errors."""


class DataFetchError(WatcherError):
    """An exchange request failed or returned an unusable payload."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ClientRequestError(DataFetchError):
    """The exchange rejected the request (HTTP 4xx). Never retried."""


class KlineParseError(DataFetchError):
    """A kline row could not be decoded."""


class UnsupportedSourceError(WatcherError, ValueError):
    pass


class UnsupportedTimeframeError(WatcherError, ValueError):
    pass


class ConfigError(WatcherError, ValueError):
    pass


class AssetValidationError(WatcherError):
    pass


class NotifierError(WatcherError):
    pass


class AllNotifiersFailedError(NotifierError):
    """Raised by a fan-out when no channel delivered the notification.

    ``errors`` maps each channel name to the exception it raised.
    """

    def __init__(self, errors: Mapping[str, BaseException]) -> None:
        self.errors = dict(errors)
        if self.errors:
            detail = "; ".join(f"{name}: {exc}" for name, exc in self.errors.items())
        else:
            detail = "no enabled notifiers"
        super().__init__(f"all notifiers failed: {detail}")
