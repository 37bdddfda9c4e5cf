"""msal を利用したIDクライアント実装。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Mapping, Sequence

import httpx
import msal

from infoassist_auth.auth.base import Account, IdentityClient
from infoassist_auth.auth.storage import AUTH_FLOW_KEY, TOKEN_CACHE_KEY, TokenStore
from infoassist_auth.config.runtime import RuntimeConfig
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.errors import (
    AuthException,
    ConfigurationError,
    ErrorCode,
    InteractionRequiredError,
    create_config_error,
    create_session_error,
    create_token_error,
)

logger = logging.getLogger(__name__)

# ユーザー操作なしでは解決できないエラー種別
INTERACTION_REQUIRED_ERRORS = frozenset(
    {"interaction_required", "login_required", "consent_required", "invalid_grant"}
)


class MsalIdentityClient(IdentityClient):
    """msal.PublicClientApplication をラップするIDクライアント。

    msal の呼び出しとキーリングへのアクセスは同期I/Oのためスレッドにオフロードする。
    コンストラクタもオーソリティの検出とキーリングの読み込みを行うため、
    イベントループ上ではなくスレッドで呼び出すこと。
    トークンキャッシュは操作のたびに TokenStore へ永続化され、
    リダイレクト往復後の再初期化で復元される。
    """

    def __init__(
        self,
        config: RuntimeConfig,
        settings: AuthSettings,
        token_store: TokenStore | None = None,
        app: Any | None = None,
    ) -> None:
        """MsalIdentityClientを初期化する。

        Args:
            config: 解決済みの認証設定。
            settings: クライアント設定。
            token_store: 状態の保存先。
            app: 事前に生成済みのmsalアプリケーション（テスト用）。
        """

        if not config.client_id:
            raise ConfigurationError(create_config_error("client_idが未設定です。"))

        self._config = config
        self._settings = settings
        self._store = token_store or TokenStore(
            keyring_service=settings.token_store_service,
            fallback_path=settings.token_cache_path,
        )
        self._cache = msal.SerializableTokenCache()
        serialized = self._store.get(TOKEN_CACHE_KEY)
        if serialized:
            self._cache.deserialize(serialized)
        self._app = app or msal.PublicClientApplication(
            config.client_id,
            authority=config.authority,
            token_cache=self._cache,
        )

    @classmethod
    def create(cls, config: RuntimeConfig, settings: AuthSettings) -> "MsalIdentityClient":
        """IdentityClientFactory として使用する生成関数"""
        return cls(config, settings)

    async def get_accounts(self) -> list[Account]:
        raw_accounts = await asyncio.to_thread(self._app.get_accounts)
        return [Account.from_msal(raw) for raw in raw_accounts or []]

    async def acquire_token_silent(
        self,
        scopes: Sequence[str],
        account: Account,
        force_refresh: bool = False,
    ) -> str:
        raw_account = await self._find_raw_account(account)
        if raw_account is None:
            raise InteractionRequiredError(
                create_token_error(
                    ErrorCode.TOKEN_INTERACTION_REQUIRED,
                    "キャッシュにアカウントが見つかりません。",
                )
            )

        result = await asyncio.to_thread(
            self._app.acquire_token_silent_with_error,
            list(scopes),
            account=raw_account,
            force_refresh=force_refresh,
        )
        await self._save_cache()

        # キャッシュミスかつリフレッシュトークンなしの場合はNoneが返る
        if result is None:
            raise InteractionRequiredError(
                create_token_error(
                    ErrorCode.TOKEN_INTERACTION_REQUIRED,
                    "キャッシュに有効なトークンがありません。",
                )
            )
        return self._extract_token(result)

    async def acquire_token_interactive(self, scopes: Sequence[str], account: Account) -> str:
        result = await asyncio.to_thread(
            self._app.acquire_token_interactive,
            list(scopes),
            login_hint=account.username,
            timeout=self._settings.interactive_timeout,
        )
        await self._save_cache()
        return self._extract_token(result)

    async def initiate_login(self, scopes: Sequence[str], prompt: str | None = None) -> str:
        flow = await asyncio.to_thread(
            self._app.initiate_auth_code_flow,
            list(scopes),
            redirect_uri=self._settings.effective_redirect_uri,
            prompt=prompt,
        )
        if "error" in flow or "auth_uri" not in flow:
            raise AuthException(
                create_session_error(
                    ErrorCode.SESSION_LOGIN_FAILED,
                    "リダイレクトログインを開始できませんでした。",
                    details={"error": flow.get("error"), "description": flow.get("error_description")},
                )
            )
        await asyncio.to_thread(self._store.set_json, AUTH_FLOW_KEY, flow)
        return flow["auth_uri"]

    async def has_pending_login(self) -> bool:
        return await asyncio.to_thread(self._store.get_json, AUTH_FLOW_KEY) is not None

    async def complete_login(self, auth_response: Mapping[str, str]) -> Account | None:
        flow = await asyncio.to_thread(self._store.get_json, AUTH_FLOW_KEY)
        if flow is None:
            logger.warning("保留中のログインフローが見つかりません。新しくログインを開始してください。")
            return None

        try:
            result = await asyncio.to_thread(
                self._app.acquire_token_by_auth_code_flow,
                flow,
                dict(auth_response),
            )
        except ValueError as exc:
            # state不一致など（CSRFの可能性）
            raise AuthException(
                create_session_error(
                    ErrorCode.SESSION_REDIRECT_FAILED,
                    "リダイレクト応答を検証できませんでした。",
                    details={"reason": str(exc)},
                )
            ) from exc
        finally:
            await asyncio.to_thread(self._store.delete, AUTH_FLOW_KEY)

        if "error" in result:
            raise AuthException(
                create_session_error(
                    ErrorCode.SESSION_REDIRECT_FAILED,
                    "リダイレクトログインが失敗しました。",
                    details={"error": result.get("error"), "description": result.get("error_description")},
                )
            )
        await self._save_cache()

        claims = result.get("id_token_claims") or {}
        return Account(
            home_account_id=self._home_account_id(claims),
            username=claims.get("preferred_username"),
            name=claims.get("name"),
            tenant_id=claims.get("tid"),
        )

    def build_logout_url(self, account: Account, post_logout_redirect_uri: str) -> str:
        params = {"post_logout_redirect_uri": post_logout_redirect_uri}
        if account.username:
            params["logout_hint"] = account.username
        query = httpx.QueryParams(params)
        return f"{self._config.authority.rstrip('/')}/oauth2/v2.0/logout?{query}"

    async def remove_account(self, account: Account) -> None:
        raw_account = await self._find_raw_account(account)
        if raw_account is not None:
            await asyncio.to_thread(self._app.remove_account, raw_account)
            await self._save_cache()

    async def _find_raw_account(self, account: Account) -> dict | None:
        raw_accounts = await asyncio.to_thread(self._app.get_accounts)
        for raw in raw_accounts or []:
            if raw.get("home_account_id") == account.home_account_id:
                return raw
        return None

    def _extract_token(self, result: Mapping[str, Any]) -> str:
        if "access_token" in result:
            return result["access_token"]

        error = result.get("error")
        details = {"error": error, "description": result.get("error_description")}
        if error in INTERACTION_REQUIRED_ERRORS:
            raise InteractionRequiredError(
                create_token_error(
                    ErrorCode.TOKEN_INTERACTION_REQUIRED,
                    "ユーザー操作が必要です。",
                    details=details,
                )
            )
        raise AuthException(
            create_token_error(
                ErrorCode.TOKEN_ACQUISITION_FAILED,
                "アクセストークンが取得できませんでした。",
                details=details,
            )
        )

    async def _save_cache(self) -> None:
        if self._cache.has_state_changed:
            serialized = self._cache.serialize()
            self._cache.has_state_changed = False
            await asyncio.to_thread(self._store.set, TOKEN_CACHE_KEY, serialized)

    @staticmethod
    def _home_account_id(claims: Mapping[str, Any]) -> str:
        oid = claims.get("oid") or claims.get("sub") or ""
        tid = claims.get("tid")
        return f"{oid}.{tid}" if tid else str(oid)
