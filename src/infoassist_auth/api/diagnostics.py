"""認証構成の診断。"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import httpx

from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import APP_SERVICE_AUTH_PATH, has_static_client_id


@dataclass(frozen=True)
class AuthCapabilities:
    """認証構成の診断結果

    Attributes:
        has_authentication: 何らかの認証構成があるかどうか
        has_valid_tokens: App Service がトークンを保持しているかどうか
        supports_silent_auth: IDクライアントによるサイレント認証が可能かどうか
        error_message: 構成が見つからない場合などのメッセージ
    """
    has_authentication: bool
    has_valid_tokens: bool
    supports_silent_auth: bool
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


async def check_authentication_capabilities(
    settings: AuthSettings,
    http_client: Optional[httpx.AsyncClient] = None,
) -> AuthCapabilities:
    """App Service 認証と静的なクライアント設定の有無を確認する"""
    owns_client = http_client is None
    client = http_client or httpx.AsyncClient(timeout=settings.request_timeout)
    try:
        try:
            response = await client.get(f"{settings.base_url}{APP_SERVICE_AUTH_PATH}")
        except httpx.HTTPError as exc:
            return AuthCapabilities(
                has_authentication=False,
                has_valid_tokens=False,
                supports_silent_auth=False,
                error_message=f"Authentication check failed: {exc}",
            )
    finally:
        if owns_client:
            await client.aclose()

    has_app_service_auth = response.is_success
    has_client_config = has_static_client_id(settings)
    return AuthCapabilities(
        has_authentication=has_app_service_auth or has_client_config,
        has_valid_tokens=has_app_service_auth,
        supports_silent_auth=has_client_config,
        error_message=(
            None
            if has_app_service_auth or has_client_config
            else "No authentication configuration found"
        ),
    )
