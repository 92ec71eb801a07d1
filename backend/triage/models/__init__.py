from .user import User
from .email import Email
from .label import Label
from .preference import UserPreference
from .classification import EmailClassification
from .classified_email import ClassifiedEmail
from .processing_stats import ProcessingStats
from .waitlist import WaitlistEntry

__all__ = [
    "User",
    "Email",
    "Label",
    "UserPreference",
    "EmailClassification",
    "ClassifiedEmail",
    "ProcessingStats",
    "WaitlistEntry",
]
