# Desk: the client-side sync core of the repair service desk
"""
Session-scoped state and intents for one signed-in actor:
- status: request workflow and transition rules
- repository: request list, creation and staff/customer mutations
- notes: per-request note threads (append + push merge)
- unread: "has unread message" tracking
- notifications: notification feed, sending, volume preference
- controller: fetch lifecycle with timeout/retry per data domain
- directory: admin CRM listing and inventory
- service: ServiceDesk facade wiring it all to push events
"""

from .controller import DomainStatus, LoadMode, LoadState, SyncController
from .retry import RetryPolicy
from .service import DeskState, ServiceDesk, parse_request_link

__all__ = [
    "DeskState",
    "DomainStatus",
    "LoadMode",
    "LoadState",
    "RetryPolicy",
    "ServiceDesk",
    "SyncController",
    "parse_request_link",
]
