"""
エラー定義

認証設定の解決・セッション管理・API呼び出しで使用されるエラーコードと例外クラス
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """エラーコード

    カテゴリ別にエラーコードを定義:
    - CONFIG_xxx: 設定エラー
    - SESSION_xxx: セッションエラー
    - TOKEN_xxx: トークン取得エラー
    - TRANSPORT_xxx: 通信エラー
    - API_xxx: APIエラー
    """
    # 設定エラー
    CONFIG_MISSING_CLIENT_ID = "CONFIG_001"
    CONFIG_INVALID_VALUE = "CONFIG_002"

    # セッションエラー
    SESSION_NOT_INITIALIZED = "SESSION_001"
    SESSION_LOGIN_FAILED = "SESSION_002"
    SESSION_LOGOUT_FAILED = "SESSION_003"
    SESSION_REDIRECT_FAILED = "SESSION_004"

    # トークン取得エラー
    TOKEN_INTERACTION_REQUIRED = "TOKEN_001"
    TOKEN_ACQUISITION_FAILED = "TOKEN_002"

    # 通信エラー
    TRANSPORT_FAILURE = "TRANSPORT_001"

    # APIエラー
    API_ERROR = "API_001"
    API_REQUEST_ABORTED = "API_002"


@dataclass
class AuthError:
    """認証エラー情報

    Attributes:
        code: エラーコード文字列
        message: エラーメッセージ
        details: 追加のエラー詳細情報
        recoverable: 復旧可能かどうか
    """
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None
    recoverable: bool = False
    log_level: int = logging.ERROR


class AuthException(Exception):
    """認証例外クラス

    AuthErrorをラップする例外クラス
    """

    def __init__(self, error: AuthError):
        """AuthExceptionを初期化

        Args:
            error: AuthErrorインスタンス
        """
        self.error = error
        self.log_level = error.log_level
        super().__init__(f"[{error.code}] {error.message}")


class ConfigurationError(AuthException):
    """必須の認証設定が解決できなかった場合の例外"""


class NotInitializedError(AuthException):
    """クライアント初期化前に操作が呼び出された場合の例外"""


class InteractionRequiredError(AuthException):
    """サイレント取得にユーザー操作が必要な場合の例外"""


class TransportFailure(AuthException):
    """外部ソースへの通信に失敗した場合の例外"""


class ApiRequestError(AuthException):
    """APIが成功以外のステータスを返した場合の例外"""

    @property
    def status_code(self) -> Optional[int]:
        details = self.error.details or {}
        return details.get("status_code")


class RequestAbortedError(AuthException):
    """外部シグナルによりリクエストが中断された場合の例外"""


ERROR_CODE_LOG_LEVEL: Dict[ErrorCode, int] = {
    ErrorCode.CONFIG_MISSING_CLIENT_ID: logging.ERROR,
    ErrorCode.TOKEN_INTERACTION_REQUIRED: logging.INFO,
    ErrorCode.TRANSPORT_FAILURE: logging.WARNING,
    ErrorCode.API_REQUEST_ABORTED: logging.INFO,
}


# よく使用されるエラーのファクトリ関数
def create_config_error(message: str, details: Optional[Dict[str, Any]] = None) -> AuthError:
    """設定エラーを作成

    Args:
        message: エラーメッセージ
        details: 追加詳細

    Returns:
        AuthError: 設定エラー
    """
    return AuthError(
        code=ErrorCode.CONFIG_MISSING_CLIENT_ID.value,
        message=message,
        details=details,
        recoverable=False,
        log_level=logging.ERROR,
    )


def create_session_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> AuthError:
    """セッションエラーを作成

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 追加詳細

    Returns:
        AuthError: セッションエラー
    """
    return AuthError(
        code=code.value,
        message=message,
        details=details,
        recoverable=False,
        log_level=ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )


def create_token_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> AuthError:
    """トークン取得エラーを作成

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 追加詳細（IdPが返したerror/error_descriptionなど）

    Returns:
        AuthError: トークン取得エラー
    """
    return AuthError(
        code=code.value,
        message=message,
        details=details,
        recoverable=True,
        log_level=ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )


def create_transport_error(message: str, details: Optional[Dict[str, Any]] = None) -> AuthError:
    """通信エラーを作成"""
    return AuthError(
        code=ErrorCode.TRANSPORT_FAILURE.value,
        message=message,
        details=details,
        recoverable=True,
        log_level=ERROR_CODE_LOG_LEVEL[ErrorCode.TRANSPORT_FAILURE],
    )


def create_api_error(
    code: ErrorCode,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    recoverable: bool = True,
    log_level: Optional[int] = None,
) -> AuthError:
    """APIエラーを作成

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 追加詳細
        recoverable: 復旧可能かどうか

    Returns:
        AuthError: APIエラー
    """
    return AuthError(
        code=code.value,
        message=message,
        details=details,
        recoverable=recoverable,
        log_level=log_level or ERROR_CODE_LOG_LEVEL.get(code, logging.ERROR),
    )
