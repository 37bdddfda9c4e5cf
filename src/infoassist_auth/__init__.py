"""Information Assistant の認証付きAPIクライアント"""

__version__ = "0.1.0"

from infoassist_auth.api import ApiDispatcher, InfoAssistApi  # noqa: E402
from infoassist_auth.auth import AuthSessionManager, SessionState, TokenGate  # noqa: E402
from infoassist_auth.config import ConfigResolver, RuntimeConfig, load_runtime_config  # noqa: E402

__all__ = [
    "ApiDispatcher",
    "AuthSessionManager",
    "ConfigResolver",
    "InfoAssistApi",
    "RuntimeConfig",
    "SessionState",
    "TokenGate",
    "__version__",
    "load_runtime_config",
]
