from .google_auth import GoogleAuth, OAuthError
from .gmail import GmailClient, GmailAPIError, create_gmail_client_for_user
from .classifier import (
    Bucket,
    ClassificationError,
    classify_email,
    classify_email_content,
    classify_emails_bulk,
    analyze_important_emails,
    store_classification,
)
from .mailbox import (
    save_email_metadata,
    fetch_recent_emails,
    sync_mailbox,
    sync_labels,
)

__all__ = [
    "GoogleAuth",
    "OAuthError",
    "GmailClient",
    "GmailAPIError",
    "create_gmail_client_for_user",
    "Bucket",
    "ClassificationError",
    "classify_email",
    "classify_email_content",
    "classify_emails_bulk",
    "analyze_important_emails",
    "store_classification",
    "save_email_metadata",
    "fetch_recent_emails",
    "sync_mailbox",
    "sync_labels",
]
