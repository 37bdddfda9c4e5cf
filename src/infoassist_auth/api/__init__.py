"""認証付きAPI呼び出しの公開API。"""

from infoassist_auth.api.client import ApiDispatcher, AuthenticatedRequest, TokenSource
from infoassist_auth.api.diagnostics import AuthCapabilities, check_authentication_capabilities
from infoassist_auth.api.endpoints import ChatOverrides, ChatRequest, InfoAssistApi, UploadStatusRequest

__all__ = [
    "ApiDispatcher",
    "AuthCapabilities",
    "AuthenticatedRequest",
    "ChatOverrides",
    "ChatRequest",
    "InfoAssistApi",
    "TokenSource",
    "UploadStatusRequest",
    "check_authentication_capabilities",
]
