"""Exception hierarchy shared by the check and backup engines."""

from __future__ import annotations

from typing import Any


class RankwatchError(Exception):
    pass


class ConflictError(RankwatchError):
    """A job is already running, or a settings change races an enabled schedule."""


class ConfigurationError(RankwatchError):
    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StaleSettingsError(RankwatchError):
    """The settings row changed between read and write."""


class NoActiveKeyError(RankwatchError):
    pass


class SerpQueryError(RankwatchError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QuotaExhaustedError(SerpQueryError):
    pass


class TelegramError(RankwatchError):
    def __init__(self, message: str, *, target: str | None = None) -> None:
        super().__init__(message)
        self.target = target


class BackupDeliveryError(RankwatchError):
    """A backup unit reached none of the configured targets."""

    def __init__(self, message: str, *, failures: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.failures = failures or {}


class BackupAbortedError(RankwatchError):
    """Raised by the exporter with the progress made before the failure."""

    def __init__(self, cause: BaseException, progress: Any) -> None:
        super().__init__(str(cause) or cause.__class__.__name__)
        self.cause = cause
        self.progress = progress
