"""Gmail API client module.

Provides everything finmail needs from Google:
- Base client with retry logic, token refresh and rate limiting
- Message search, parsing, and label assignment
- Label listing and creation
- OAuth2 authorization-code flow

Usage:
    from finmail.gmail import GmailClient, GoogleOAuth, LabelManager, MessageManager

    oauth = GoogleOAuth.from_config(config.google)
    client = GmailClient(user.access_token, user.refresh_token, oauth)
    emails = MessageManager(client).get_financial_emails(config.gmail.financial_queries)
"""

from finmail.gmail.client import GmailClient
from finmail.gmail.labels import LabelManager
from finmail.gmail.messages import MessageManager, ParsedEmail, parse_message
from finmail.gmail.oauth import GoogleOAuth

__all__ = [
    "GmailClient",
    "GoogleOAuth",
    "LabelManager",
    "MessageManager",
    "ParsedEmail",
    "parse_message",
]
