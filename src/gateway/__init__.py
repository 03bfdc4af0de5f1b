# Gateway: Supabase tables, push channels, auth, storage, outbound email
"""
External collaborators consumed by the sync core through narrow interfaces.
"""

from .auth import AuthEvent, AuthSession, SessionHandle, SessionProvider, SessionState
from .client import SupabaseGateway, Subscription
from .email import EmailNotifier, RequestCreatedEmail, StatusUpdateEmail
from .storage import MediaFile, MediaStorage, UploadResult

__all__ = [
    "AuthEvent",
    "AuthSession",
    "EmailNotifier",
    "MediaFile",
    "MediaStorage",
    "RequestCreatedEmail",
    "SessionHandle",
    "SessionProvider",
    "SessionState",
    "StatusUpdateEmail",
    "Subscription",
    "SupabaseGateway",
    "UploadResult",
]
