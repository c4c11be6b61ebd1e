"""Exception types raised across the scheduler core."""

from __future__ import annotations


class SavvyPirateError(Exception):
    """Base class for domain errors."""


class ScheduleValidationError(SavvyPirateError, ValueError):
    """Schedule payload failed validation; nothing was persisted."""


class AuthenticationRequiredError(SavvyPirateError):
    """The auth collaborator could not produce an access token."""


class ConfigurationError(SavvyPirateError):
    """A run cannot start because a source has no units or no workbook mapping."""


class LinkedInSessionError(SavvyPirateError):
    """The scraper found LinkedIn signed out or behind a security checkpoint."""

    def __init__(self, status: str, message: str) -> None:
        super().__init__(f"LinkedIn auth failure ({status}): {message}")
        self.status = status
