"""
pos_client - session and resource synchronization layer of the POS client.
"""

from .outcomes import OutcomeKind, RequestOutcome
from .request_client import RequestClient, RequestSpec
from .resource_sync import Phase, ResourceState, ResourceSync
from .realtime import CoordinatorOptions, RealtimeCoordinator, RealtimeManager
from .session_store import Session, SessionStore

__all__ = [
    "OutcomeKind",
    "RequestOutcome",
    "RequestClient",
    "RequestSpec",
    "Phase",
    "ResourceState",
    "ResourceSync",
    "CoordinatorOptions",
    "RealtimeCoordinator",
    "RealtimeManager",
    "Session",
    "SessionStore",
]
