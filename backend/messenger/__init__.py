from .chain import (
    ChatReference,
    MessengerSessionChain,
    ServiceTokenCache,
    UserSession,
    build_chat_url,
    extract_chat_id,
    login_url_token,
)

__all__ = [
    "ChatReference",
    "MessengerSessionChain",
    "ServiceTokenCache",
    "UserSession",
    "build_chat_url",
    "extract_chat_id",
    "login_url_token",
]
