"""認証セッションとIDクライアントの公開API。"""

from __future__ import annotations

from infoassist_auth.auth.base import Account, IdentityClient, IdentityClientFactory
from infoassist_auth.auth.gate import GateRender, GateView, TokenGate, evaluate
from infoassist_auth.auth.session import AuthSessionManager, SessionPhase, SessionState
from infoassist_auth.auth.storage import TokenStore

__all__ = [
    "Account",
    "AuthSessionManager",
    "GateRender",
    "GateView",
    "IdentityClient",
    "IdentityClientFactory",
    "SessionPhase",
    "SessionState",
    "TokenGate",
    "TokenStore",
    "evaluate",
]
