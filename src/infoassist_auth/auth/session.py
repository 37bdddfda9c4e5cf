"""
認証セッション管理

IDクライアントを所有し、ログイン・ログアウト・サイレントトークン取得と
認証状態（読み込み中・認証済み・エラー）を提供する。

状態遷移:
    uninitialized → initializing → {ready, init_failed}
    ready の中で signed_out ⇄ signed_in（ログイン/ログアウト）

リダイレクトによるログインは2段階で扱う。login() はナビゲーションを開始するだけで、
戻ってきた後の initialize(auth_response=...) または handle_redirect() が
永続化されたフローを完了させる。
"""

from __future__ import annotations

import asyncio
import logging
import webbrowser
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Callable, List, Mapping, Optional, Sequence

from infoassist_auth.auth.base import Account, IdentityClient, IdentityClientFactory
from infoassist_auth.config.runtime import (
    BASELINE_SCOPE,
    ConfigResolver,
    RuntimeConfig,
    get_default_resolver,
)
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.errors import (
    ConfigurationError,
    ErrorCode,
    InteractionRequiredError,
    NotInitializedError,
    create_config_error,
    create_session_error,
)

logger = logging.getLogger(__name__)

LOGIN_PROMPT = "select_account"

MISSING_CLIENT_ID_MESSAGE = (
    "Azure のクライアントIDが設定されていません。"
    "環境変数または App Service の設定で AZURE_CLIENT_ID を設定してください。"
)
LOGIN_FAILED_MESSAGE = "ログインに失敗しました"
LOGOUT_FAILED_MESSAGE = "ログアウトに失敗しました"
TOKEN_FAILED_MESSAGE = "トークンを取得できませんでした"
SILENT_TOKEN_FAILED_MESSAGE = "サイレントでのトークン取得に失敗しました"
INIT_FAILED_MESSAGE = "認証の初期化に失敗しました"


class SessionPhase(Enum):
    """セッションの初期化フェーズ"""
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    INIT_FAILED = "init_failed"


@dataclass(frozen=True, slots=True)
class SessionState:
    """認証セッションのスナップショット

    Attributes:
        phase: 初期化フェーズ
        client_handle: IDクライアント（初期化成功までNone）
        accounts: キャッシュ済みアカウント（IdPの報告順）
        is_loading: 初期化・ログイン・ログアウトの実行中かどうか
        last_error: 直近の操作の失敗内容（新しい操作の開始時にクリア）
        token_refresh_in_flight: トークン取得中の表示用マーカー（他の操作は妨げない）
    """
    phase: SessionPhase = SessionPhase.UNINITIALIZED
    client_handle: Optional[IdentityClient] = None
    accounts: tuple[Account, ...] = ()
    is_loading: bool = False
    last_error: Optional[str] = None
    token_refresh_in_flight: bool = False

    @property
    def is_authenticated(self) -> bool:
        return len(self.accounts) > 0

    @property
    def account(self) -> Optional[Account]:
        """主アカウント（先頭のキャッシュ済みアカウント）"""
        return self.accounts[0] if self.accounts else None

    @property
    def signed_in(self) -> bool:
        return self.phase is SessionPhase.READY and self.is_authenticated

    @property
    def signed_out(self) -> bool:
        return self.phase is SessionPhase.READY and not self.is_authenticated


SessionListener = Callable[[SessionState], None]
Navigator = Callable[[str], object]


@dataclass(eq=False)
class _Outcome:
    error: Optional[str] = None


def _default_client_factory(config, settings) -> IdentityClient:
    from infoassist_auth.auth.msal_client import MsalIdentityClient

    return MsalIdentityClient.create(config, settings)


class AuthSessionManager:
    """認証セッションの管理

    SessionState はこのクラスだけが更新し、更新は常にスナップショット全体の差し替えで行う。
    """

    def __init__(
        self,
        resolver: Optional[ConfigResolver] = None,
        settings: Optional[AuthSettings] = None,
        client_factory: Optional[IdentityClientFactory] = None,
        navigator: Optional[Navigator] = None,
    ):
        """初期化

        Args:
            resolver: 設定リゾルバ（省略時はプロセス全体の既定リゾルバ）
            settings: クライアント設定（省略時はリゾルバの設定）
            client_factory: IDクライアントの生成関数（省略時は msal 実装）
            navigator: 対話的リダイレクトの遷移処理（省略時はブラウザを開く）
        """
        self._resolver = resolver or get_default_resolver()
        self._settings = settings
        self._client_factory = client_factory or _default_client_factory
        self._navigator = navigator or webbrowser.open
        self._state = SessionState()
        self._listeners: List[SessionListener] = []
        self._token_ops = 0
        self._outcomes: List[_Outcome] = []
        self._config: Optional[RuntimeConfig] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def settings(self) -> AuthSettings:
        if self._settings is None:
            self._settings = self._resolver.settings
        return self._settings

    @property
    def default_scopes(self) -> tuple[str, ...]:
        """スコープ未指定時に要求するスコープ（初期化後は解決済み設定の silent_scopes）"""
        if self._config is None:
            return (BASELINE_SCOPE,)
        return self._config.silent_scopes

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """状態変更の通知を購読する

        Returns:
            購読を解除する関数
        """
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def authenticated_user(self) -> Optional[Account]:
        """現在のユーザー（未認証ならNone）"""
        return self._state.account

    async def initialize(self, auth_response: Optional[Mapping[str, str]] = None) -> SessionState:
        """設定を解決してIDクライアントを構築する

        構成エラーは例外として送出せず、init_failed フェーズと last_error で報告する。
        保留中のリダイレクトログインがあり auth_response が渡された場合は、
        準備完了の前にそのログインを完了させる。

        Args:
            auth_response: リダイレクトで戻ってきた際のクエリパラメータ

        Returns:
            SessionState: 初期化後の状態
        """
        if self._state.phase is SessionPhase.READY:
            if auth_response is not None:
                await self.handle_redirect(auth_response)
            return self._state

        async with self._loading() as outcome:
            self._update(phase=SessionPhase.INITIALIZING)
            client = await self._build_client(outcome)
            if client is not None:
                if auth_response is not None and await client.has_pending_login():
                    try:
                        await self._complete_redirect(client, auth_response)
                    except Exception:
                        logger.exception("リダイレクトログインの完了に失敗しました")
                        outcome.error = LOGIN_FAILED_MESSAGE
                self._update(phase=SessionPhase.READY)
                logger.info("認証の初期化が完了しました")
        return self._state

    async def _build_client(self, outcome: _Outcome) -> Optional[IdentityClient]:
        try:
            config = await self._resolver.resolve()
            if not config.client_id:
                raise ConfigurationError(create_config_error(MISSING_CLIENT_ID_MESSAGE))

            logger.info(
                "IDクライアントを生成します: %s",
                {"clientId": "***configured***", "authority": config.authority},
            )
            # msal の生成はオーソリティ検出とキーリング読み込みを伴う
            client = await asyncio.to_thread(self._client_factory, config, self.settings)
            accounts = await client.get_accounts()
        except ConfigurationError as exc:
            logger.error("認証設定エラー: %s", exc.error.message)
            outcome.error = exc.error.message
            self._update(phase=SessionPhase.INIT_FAILED)
            return None
        except Exception as exc:
            logger.exception("認証の初期化に失敗しました")
            outcome.error = str(exc) or INIT_FAILED_MESSAGE
            self._update(phase=SessionPhase.INIT_FAILED)
            return None

        self._config = config
        self._update(client_handle=client, accounts=tuple(accounts))
        return client

    async def handle_redirect(self, auth_response: Mapping[str, str]) -> Optional[Account]:
        """リダイレクトで戻ってきた応答から保留中のログインを完了する

        Raises:
            NotInitializedError: クライアント未初期化の場合
        """
        client = self._require_client()
        async with self._loading() as outcome:
            try:
                return await self._complete_redirect(client, auth_response)
            except Exception:
                logger.exception("リダイレクトログインの完了に失敗しました")
                outcome.error = LOGIN_FAILED_MESSAGE
                raise

    async def login(self) -> Optional[str]:
        """対話的なリダイレクトログインを開始する

        キャッシュ済みアカウントがあれば往復せずにサインイン済みとして扱う。

        Returns:
            遷移先の認可URL。既にサインイン済みの場合はNone。

        Raises:
            NotInitializedError: クライアント未初期化の場合
        """
        client = self._require_client()
        async with self._loading() as outcome:
            try:
                accounts = await client.get_accounts()
                if accounts:
                    self._update(accounts=tuple(accounts))
                    return None

                auth_url = await client.initiate_login([BASELINE_SCOPE], prompt=LOGIN_PROMPT)
                await self._navigate(auth_url)
                return auth_url
            except Exception:
                logger.exception("ログインエラー")
                outcome.error = LOGIN_FAILED_MESSAGE
                raise

    async def logout(self) -> Optional[str]:
        """対話的なリダイレクトサインアウトを行い、ローカルのアカウントを破棄する

        Returns:
            遷移先のサインアウトURL。アカウントがない場合はNone。

        Raises:
            NotInitializedError: クライアント未初期化の場合
        """
        client = self._require_client()
        async with self._loading() as outcome:
            try:
                logout_url = None
                accounts = await client.get_accounts()
                if accounts:
                    logout_url = client.build_logout_url(
                        accounts[0],
                        self.settings.effective_post_logout_redirect_uri,
                    )
                    await self._navigate(logout_url)
                    await client.remove_account(accounts[0])
                self._update(accounts=())
                return logout_url
            except Exception:
                logger.exception("ログアウトエラー")
                outcome.error = LOGOUT_FAILED_MESSAGE
                raise

    async def acquire_token_silently(
        self,
        scopes: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
    ) -> Optional[str]:
        """アクセストークンをサイレントに取得する

        ユーザー操作が必要な場合に限り、同じアカウントで1回だけ対話的取得にエスカレーションする。
        想定内の失敗（未初期化・未認証・取得失敗）はすべてNoneで返し、例外は送出しない。
        読み込み中に失敗した場合、エラーは読み込みの解除と同時に報告する。

        Args:
            scopes: 要求するスコープ（省略時は default_scopes）
            force_refresh: キャッシュ済みのアクセストークンを使わずに再発行するかどうか

        Returns:
            アクセストークン。取得できない場合はNone。
        """
        state = self._state
        client = state.client_handle
        if client is None or not state.is_authenticated or state.account is None:
            return None

        account = state.account
        requested = list(scopes) if scopes else list(self.default_scopes)
        error: Optional[str] = None
        self._begin_token_operation()
        try:
            try:
                return await client.acquire_token_silent(requested, account, force_refresh=force_refresh)
            except InteractionRequiredError:
                logger.info("ユーザー操作が必要なため対話的なトークン取得を行います")
                try:
                    return await client.acquire_token_interactive(requested, account)
                except Exception:
                    logger.exception("対話的なトークン取得に失敗しました")
                    error = TOKEN_FAILED_MESSAGE
                    return None
            except Exception:
                logger.exception("サイレントでのトークン取得に失敗しました")
                error = SILENT_TOKEN_FAILED_MESSAGE
                return None
        finally:
            self._end_token_operation(error)

    async def _complete_redirect(
        self,
        client: IdentityClient,
        auth_response: Mapping[str, str],
    ) -> Optional[Account]:
        account = await client.complete_login(auth_response)
        accounts = await client.get_accounts()
        self._update(accounts=tuple(accounts))
        if account is not None:
            logger.info("リダイレクトログインを完了しました")
        return account

    async def _navigate(self, url: str) -> None:
        await asyncio.to_thread(self._navigator, url)

    def _require_client(self) -> IdentityClient:
        client = self._state.client_handle
        if client is None:
            raise NotInitializedError(
                create_session_error(
                    ErrorCode.SESSION_NOT_INITIALIZED,
                    "IDクライアントが初期化されていません",
                )
            )
        return client

    @asynccontextmanager
    async def _loading(self) -> AsyncIterator[_Outcome]:
        """読み込み状態を確実に解除するスコープ

        開始時に last_error をクリアし、終了時は例外の有無に関わらず is_loading を解除する。
        エラーは読み込み解除と同じスナップショットで設定する。
        他の読み込みスコープがまだ開いている場合は、エラーをそちらに引き継いで解除を待つ。
        """
        outcome = _Outcome()
        self._outcomes.append(outcome)
        self._update(is_loading=True, last_error=None)
        try:
            yield outcome
        finally:
            self._outcomes.remove(outcome)
            if self._outcomes:
                self._defer_error(outcome.error)
            else:
                self._update(is_loading=False, last_error=outcome.error)

    def _defer_error(self, error: Optional[str]) -> None:
        # 操作自身の失敗はあとから上書きする
        pending = self._outcomes[-1]
        if error is not None and pending.error is None:
            pending.error = error

    def _begin_token_operation(self) -> None:
        self._token_ops += 1
        if self._outcomes:
            self._update(token_refresh_in_flight=True)
        else:
            self._update(token_refresh_in_flight=True, last_error=None)

    def _end_token_operation(self, error: Optional[str]) -> None:
        self._token_ops -= 1
        changes = {"token_refresh_in_flight": self._token_ops > 0}
        if self._outcomes:
            self._defer_error(error)
        elif error is not None:
            changes["last_error"] = error
        self._update(**changes)

    def _update(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("セッション状態の通知に失敗しました")
