"""
実行時の認証設定解決

複数のソースを優先順位に従って問い合わせ、RuntimeConfig を組み立てる。
優先順位（高い順）:
1. バックエンドの設定エンドポイント
2. App Service 認証 (/.auth/me)
3. 実行時に注入された設定
4. ビルド時の環境変数
5. 既定値

上位のソースが設定済みの項目は下位のソースで上書きされない。
ソースの失敗は常に次のソースへのフォールバックとして扱い、解決自体は失敗しない。
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import httpx

from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import (
    AppServiceAuthSource,
    BackendConfigSource,
    BuildEnvSource,
    ConfigFragment,
    ConfigSource,
    InjectedConfigSource,
)
from infoassist_auth.errors import AuthException

logger = logging.getLogger(__name__)

ISSUER_BASE = "https://login.microsoftonline.com"
DEFAULT_AUTHORITY = f"{ISSUER_BASE}/common"
BASELINE_SCOPE = "User.Read"
API_SCOPE_TEMPLATE = "api://{client_id}/access_as_user"


@dataclass(frozen=True, slots=True)
class RuntimeConfig:
    """解決済みの認証設定

    Attributes:
        client_id: IdPに登録されたアプリケーションID
        tenant_id: ディレクトリ（テナント）ID
        authority: 発行者URL（解決後は常に空でない）
        api_scopes: API呼び出し用のスコープ（最低1つのベースラインスコープを含む）
    """
    authority: str
    api_scopes: tuple[str, ...]
    client_id: Optional[str] = None
    tenant_id: Optional[str] = None

    @property
    def silent_scopes(self) -> tuple[str, ...]:
        """サイレント取得用のスコープ（ベースラインスコープを必ず含む）"""
        if BASELINE_SCOPE in self.api_scopes:
            return self.api_scopes
        return (BASELINE_SCOPE, *self.api_scopes)

    def to_log_dict(self) -> Dict[str, Any]:
        """ログ出力用に識別子をマスクした辞書を返す"""
        return {
            "clientId": "***configured***" if self.client_id else "not set",
            "tenantId": "***configured***" if self.tenant_id else "not set",
            "authority": self.authority,
            "scopes": list(self.api_scopes),
        }


def derive_authority(tenant_id: str) -> str:
    """テナントIDから authority を導出する"""
    return f"{ISSUER_BASE}/{tenant_id}"


def default_scopes(client_id: Optional[str]) -> tuple[str, ...]:
    """既定のAPIスコープ（client_idが既知の場合はアプリ固有スコープを追加）"""
    if client_id:
        return (BASELINE_SCOPE, API_SCOPE_TEMPLATE.format(client_id=client_id))
    return (BASELINE_SCOPE,)


def merge_fragments(fragments: Sequence[ConfigFragment]) -> RuntimeConfig:
    """優先順位順のフラグメントを統合し、既定値を適用する

    Args:
        fragments: 優先順位の高い順に並んだフラグメント

    Returns:
        RuntimeConfig: 統合結果
    """
    client_id: Optional[str] = None
    tenant_id: Optional[str] = None
    authority: Optional[str] = None
    api_scopes: Optional[tuple[str, ...]] = None

    for fragment in fragments:
        client_id = client_id or fragment.client_id
        tenant_id = tenant_id or fragment.tenant_id
        authority = authority or fragment.authority
        api_scopes = api_scopes or fragment.api_scopes

    if tenant_id and not authority:
        authority = derive_authority(tenant_id)
    if not authority:
        authority = DEFAULT_AUTHORITY
    if not api_scopes:
        api_scopes = default_scopes(client_id)

    return RuntimeConfig(
        client_id=client_id,
        tenant_id=tenant_id,
        authority=authority,
        api_scopes=api_scopes,
    )


class ConfigResolver:
    """認証設定の解決とキャッシュ

    最初に成功した解決結果をキャッシュし、clear_cache() が呼ばれるまで再利用する。
    解決中に並行して呼ばれた場合は同じタスクの結果を待ち合わせる。
    """

    def __init__(
        self,
        settings: Optional[AuthSettings] = None,
        sources: Optional[Sequence[ConfigSource]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """ConfigResolverを初期化

        Args:
            settings: クライアント設定（省略時は環境から読み込む）
            sources: 優先順位順のソース（省略時は標準の4ソース）
            http_client: HTTPソースが使用するクライアント（省略時は解決ごとに生成）
        """
        self._settings = settings
        self._sources = list(sources) if sources is not None else None
        self._http_client = http_client
        self._cached: Optional[RuntimeConfig] = None
        self._inflight: Optional[asyncio.Future] = None
        self._generation = 0

    @property
    def settings(self) -> AuthSettings:
        if self._settings is None:
            self._settings = AuthSettings()
        return self._settings

    @property
    def cached(self) -> Optional[RuntimeConfig]:
        return self._cached

    async def resolve(self) -> RuntimeConfig:
        """設定を解決する（2回目以降はキャッシュを返す）

        Returns:
            RuntimeConfig: 解決済みの設定
        """
        if self._cached is not None:
            return self._cached

        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._resolve_uncached(self._generation))
        inflight = self._inflight
        try:
            return await asyncio.shield(inflight)
        finally:
            if self._inflight is inflight and inflight.done():
                self._inflight = None

    def clear_cache(self) -> None:
        """キャッシュを破棄し、次回の resolve() で再解決させる"""
        self._generation += 1
        self._cached = None
        self._inflight = None

    async def _resolve_uncached(self, generation: int) -> RuntimeConfig:
        if self._sources is not None:
            fragments = await self._load_all(self._sources)
        elif self._http_client is not None:
            fragments = await self._load_all(self._default_sources(self._http_client))
        else:
            async with httpx.AsyncClient(timeout=self.settings.request_timeout) as client:
                fragments = await self._load_all(self._default_sources(client))

        config = merge_fragments(fragments)
        if generation == self._generation:
            self._cached = config
        logger.info("実行時の認証設定を読み込みました: %s", config.to_log_dict())
        return config

    def _default_sources(self, client: httpx.AsyncClient) -> list[ConfigSource]:
        settings = self.settings
        return [
            BackendConfigSource(client, settings.base_url),
            AppServiceAuthSource(client, settings.base_url),
            InjectedConfigSource(settings),
            BuildEnvSource(settings),
        ]

    async def _load_all(self, sources: Sequence[ConfigSource]) -> list[ConfigFragment]:
        fragments: list[ConfigFragment] = []
        for source in sources:
            try:
                fragment = await source.load()
            except (AuthException, httpx.HTTPError) as exc:
                logger.info("設定ソース %s をスキップします: %s", source.name, exc)
                continue
            if not fragment.is_empty:
                logger.debug("設定ソース %s から値を取得しました", source.name)
            fragments.append(fragment)
        return fragments


# プロセス全体で共有する既定のリゾルバ
_default_resolver: Optional[ConfigResolver] = None


def get_default_resolver() -> ConfigResolver:
    """プロセス全体の既定リゾルバを返す（初回呼び出し時に生成）"""
    global _default_resolver
    if _default_resolver is None:
        _default_resolver = ConfigResolver()
    return _default_resolver


def set_default_resolver(resolver: Optional[ConfigResolver]) -> None:
    """既定リゾルバを差し替える（テスト・再構成用）"""
    global _default_resolver
    _default_resolver = resolver


async def load_runtime_config() -> RuntimeConfig:
    """既定リゾルバで設定を解決する"""
    return await get_default_resolver().resolve()


def clear_config_cache() -> None:
    """既定リゾルバのキャッシュを破棄する"""
    if _default_resolver is not None:
        _default_resolver.clear_cache()


def get_cached_config() -> Optional[RuntimeConfig]:
    """キャッシュ済みの設定を同期的に返す（未解決ならNone）"""
    if _default_resolver is None:
        return None
    return _default_resolver.cached
