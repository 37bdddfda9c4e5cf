"""IDライブラリ連携の基盤。

セッション管理が利用するIDクライアントの共通インターフェースを定義する。
OAuthプロトコル自体（認可コード交換・PKCE・署名検証）は実装側のライブラリに委ねる。
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence, TYPE_CHECKING

if TYPE_CHECKING:
    from infoassist_auth.config.runtime import RuntimeConfig
    from infoassist_auth.config.settings import AuthSettings


@dataclass(frozen=True, slots=True)
class Account:
    """IDクライアントがキャッシュしているアカウント"""

    home_account_id: str
    username: str | None = None
    name: str | None = None
    environment: str | None = None
    tenant_id: str | None = None

    @classmethod
    def from_msal(cls, raw: Mapping[str, Any]) -> "Account":
        """msal のアカウント辞書から生成する。"""
        claims = raw.get("id_token_claims") or {}
        return cls(
            home_account_id=str(raw.get("home_account_id") or raw.get("local_account_id") or ""),
            username=raw.get("username"),
            name=raw.get("name") or claims.get("name"),
            environment=raw.get("environment"),
            tenant_id=raw.get("realm"),
        )

    @property
    def display_name(self) -> str:
        return self.name or self.username or self.home_account_id


class IdentityClient(ABC):
    """IDプロバイダクライアントの抽象基底クラス

    リダイレクトによるログインは2段階で扱う。
    initiate_login() でナビゲーション先を返し、戻ってきた後に
    complete_login() で保留中のフローを完了させる。
    """

    @abstractmethod
    async def get_accounts(self) -> list[Account]:
        """キャッシュ済みアカウントをIdPの報告順で返す。"""

    @abstractmethod
    async def acquire_token_silent(
        self,
        scopes: Sequence[str],
        account: Account,
        force_refresh: bool = False,
    ) -> str:
        """キャッシュまたはリフレッシュトークンでアクセストークンを取得する。

        force_refresh が真の場合はキャッシュ済みのアクセストークンを使わず、
        リフレッシュトークンで発行し直す。

        Raises:
            InteractionRequiredError: ユーザー操作が必要な場合
            AuthException: その他の取得失敗
        """

    @abstractmethod
    async def acquire_token_interactive(self, scopes: Sequence[str], account: Account) -> str:
        """ポップアップ相当の対話フローでアクセストークンを取得する。"""

    @abstractmethod
    async def initiate_login(self, scopes: Sequence[str], prompt: str | None = None) -> str:
        """リダイレクトログインを開始し、遷移先URLを返す。フロー状態は永続化される。"""

    @abstractmethod
    async def has_pending_login(self) -> bool:
        """完了待ちのリダイレクトログインが永続化されているかどうか"""

    @abstractmethod
    async def complete_login(self, auth_response: Mapping[str, str]) -> Account | None:
        """リダイレクトの応答パラメータで保留中のログインを完了する。"""

    @abstractmethod
    def build_logout_url(self, account: Account, post_logout_redirect_uri: str) -> str:
        """サインアウト用のリダイレクトURLを組み立てる。"""

    @abstractmethod
    async def remove_account(self, account: Account) -> None:
        """ローカルキャッシュからアカウントを削除する。"""


IdentityClientFactory = Callable[["RuntimeConfig", "AuthSettings"], IdentityClient]
