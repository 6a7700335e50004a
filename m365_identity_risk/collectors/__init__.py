from .base import AccountCollector, AccountTarget, CollectorResult, ConnectivityError
from .identity import IdentityCollector
from .signins import SignInCollector
from .mailbox import MailboxCollector
from .conditional_access import ConditionalAccessCollector
from .apps import AppCollector

# Run after IdentityCollector has resolved the user id
ACCOUNT_COLLECTORS = [
    SignInCollector,
    MailboxCollector,
    ConditionalAccessCollector,
    AppCollector,
]

__all__ = [
    "AccountCollector",
    "AccountTarget",
    "CollectorResult",
    "ConnectivityError",
    "IdentityCollector",
    "SignInCollector",
    "MailboxCollector",
    "ConditionalAccessCollector",
    "AppCollector",
    "ACCOUNT_COLLECTORS",
]
