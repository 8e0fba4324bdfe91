from .auto_login import MAX_EXPIRATION_HOURS, AutoLoginGrant, AutoLoginTokenStore
from .client_context import LocalStore, PortalSession, PortalSessionError

__all__ = [
    "MAX_EXPIRATION_HOURS",
    "AutoLoginGrant",
    "AutoLoginTokenStore",
    "LocalStore",
    "PortalSession",
    "PortalSessionError",
]
