"""External collaborators: Google OAuth, Google Sheets, and webhook notifications."""
