from __future__ import annotations

from typing import Optional


class HouseholdScanError(Exception):
    pass


class InputValidationError(HouseholdScanError, ValueError):
    """Missing or malformed required input; never retried."""


class ConfigurationError(HouseholdScanError):
    pass


class ExtractionError(HouseholdScanError):
    """Base for every failure raised by the structured extractor."""


class ExtractionServiceError(ExtractionError):
    """Non-2xx or transport failure talking to the model API.

    ``str(exc)`` is the user-safe message; raw provider details stay in
    ``details`` for logging only.
    """

    retryable = False

    def __init__(self, message: str, *, status: Optional[int] = None, details: str = "") -> None:
        super().__init__(message)
        self.status = status
        self.details = details


class RetryableServiceError(ExtractionServiceError):
    """Rate limited (HTTP 429) and out of retry attempts."""

    retryable = True


class FatalServiceError(ExtractionServiceError):
    pass


class MalformedResponseError(ExtractionError):
    """Model output failed every JSON repair tier."""


class OverlayUnavailableError(HouseholdScanError):
    """Ingredient store cannot be read; callers treat it as "no override"."""
