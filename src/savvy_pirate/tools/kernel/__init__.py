"""Kernel-level collaborator implementations."""

from .google_auth import GoogleOAuthProvider, get_google_access_token
from .google_sheets import GoogleSheetsClient, InputSheetSearchCatalog, weekly_tab_name
from .webhook_notifier import WebhookNotifier

__all__ = [
    "GoogleOAuthProvider",
    "GoogleSheetsClient",
    "InputSheetSearchCatalog",
    "WebhookNotifier",
    "get_google_access_token",
    "weekly_tab_name",
]
