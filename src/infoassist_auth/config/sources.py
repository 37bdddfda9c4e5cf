"""認証設定のソース定義。

各ソースは `ConfigFragment` を返す。取得に失敗したソースは空のフラグメントを返し、
解決処理は次のソースへ進む。
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import httpx
import yaml

from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.errors import TransportFailure, create_transport_error

logger = logging.getLogger(__name__)

BACKEND_CONFIG_PATH = "/getMsalConfig"
APP_SERVICE_AUTH_PATH = "/.auth/me"

# authority末尾のテナント識別子（GUID または common / organizations / consumers）
TENANT_PATTERN = re.compile(
    r"/([0-9a-f-]{36}|common|organizations|consumers)/?$",
    re.IGNORECASE,
)

INJECTED_KEYS = ("AZURE_CLIENT_ID", "AZURE_TENANT_ID", "AZURE_AUTHORITY", "API_SCOPES")


@dataclass(frozen=True, slots=True)
class ConfigFragment:
    """1つのソースから得られた部分的な設定"""

    client_id: str | None = None
    tenant_id: str | None = None
    authority: str | None = None
    api_scopes: tuple[str, ...] | None = None
    source: str = ""

    @classmethod
    def build(cls, source: str, **values: Any) -> "ConfigFragment":
        """空文字列やNoneを未設定として正規化して生成する。"""
        scopes = values.get("api_scopes")
        return cls(
            client_id=_clean(values.get("client_id")),
            tenant_id=_clean(values.get("tenant_id")),
            authority=_clean(values.get("authority")),
            api_scopes=_clean_scopes(scopes),
            source=source,
        )

    @property
    def is_empty(self) -> bool:
        return not any((self.client_id, self.tenant_id, self.authority, self.api_scopes))


def _clean(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def _clean_scopes(value: Any) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, (list, tuple)):
        return None
    scopes = tuple(item.strip() for item in value if isinstance(item, str) and item.strip())
    return scopes or None


def extract_tenant_id(authority: str | None) -> str | None:
    """authority URL の末尾セグメントからテナントIDを抽出する。"""
    if not authority:
        return None
    match = TENANT_PATTERN.search(authority)
    return match.group(1) if match else None


class ConfigSource(ABC):
    """設定ソースの抽象基底クラス"""

    name: str = "source"

    @abstractmethod
    async def load(self) -> ConfigFragment:
        """ソースから設定を取得する。失敗時は空のフラグメントを返す。"""


class _HttpConfigSource(ConfigSource):
    """同一オリジンのエンドポイントから設定を取得するソースの共通処理"""

    path: str = ""

    def __init__(self, http_client: httpx.AsyncClient, base_url: str) -> None:
        self._http_client = http_client
        self._url = f"{base_url.rstrip('/')}{self.path}"

    async def load(self) -> ConfigFragment:
        try:
            payload = await self._fetch_json()
        except TransportFailure as exc:
            logger.info("%s の取得に失敗しました: %s", self._url, exc.error.message)
            return ConfigFragment(source=self.name)
        if payload is None:
            return ConfigFragment(source=self.name)
        return self._parse(payload)

    async def _fetch_json(self) -> Any:
        """JSONを取得する。ステータスが成功以外の場合はNoneを返す。

        Raises:
            TransportFailure: ネットワークエラーまたはJSONとして解釈できない場合
        """
        try:
            # クッキーはクライアントのcookie jarから送信される（credentials: include相当）
            response = await self._http_client.get(self._url, headers={"Accept": "application/json"})
        except httpx.HTTPError as exc:
            raise TransportFailure(
                create_transport_error(str(exc) or type(exc).__name__, {"url": self._url})
            ) from exc

        if not response.is_success:
            logger.info("%s は利用できません (status=%s)", self._url, response.status_code)
            return None

        try:
            return response.json()
        except ValueError as exc:
            raise TransportFailure(
                create_transport_error("レスポンスがJSONではありません", {"url": self._url})
            ) from exc

    @abstractmethod
    def _parse(self, payload: Any) -> ConfigFragment:
        """レスポンスを設定フラグメントに変換する。"""


class BackendConfigSource(_HttpConfigSource):
    """バックエンドの設定エンドポイント（GET /getMsalConfig）"""

    name = "backend"
    path = BACKEND_CONFIG_PATH

    def _parse(self, payload: Any) -> ConfigFragment:
        if not isinstance(payload, dict):
            logger.info("バックエンド設定の形式が不正です: %s", type(payload).__name__)
            return ConfigFragment(source=self.name)
        logger.debug("バックエンドの認証設定を取得しました")
        return ConfigFragment.build(
            self.name,
            client_id=payload.get("clientId"),
            tenant_id=payload.get("tenantId"),
            authority=payload.get("authority"),
        )


class AppServiceAuthSource(_HttpConfigSource):
    """ホストプラットフォームのセッション確認エンドポイント（GET /.auth/me）"""

    name = "app_service"
    path = APP_SERVICE_AUTH_PATH

    def _parse(self, payload: Any) -> ConfigFragment:
        if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
            return ConfigFragment(source=self.name)
        info = payload[0]
        authority = _clean(info.get("authority"))
        logger.debug("App Service の認証情報を取得しました")
        return ConfigFragment.build(
            self.name,
            client_id=info.get("client_id"),
            authority=authority,
            tenant_id=extract_tenant_id(authority),
        )

    async def probe(self) -> list[dict[str, Any]] | None:
        """診断用にクレーム一覧を取得する。認証状態には影響しない。"""
        try:
            payload = await self._fetch_json()
        except TransportFailure:
            return None
        if not isinstance(payload, list):
            return None
        return [item for item in payload if isinstance(item, dict)]


# プロセス全体で共有される注入設定（サーバーテンプレートのグローバル値に相当）
_injected_config: dict[str, Any] | None = None


def set_injected_config(values: Mapping[str, Any] | None) -> None:
    """注入設定を差し替える。Noneで解除する。"""
    global _injected_config
    _injected_config = dict(values) if values is not None else None


def get_injected_config() -> dict[str, Any] | None:
    return dict(_injected_config) if _injected_config is not None else None


class InjectedConfigSource(ConfigSource):
    """プロセス全体に注入された設定オブジェクト

    優先順位: set_injected_config() > 実行時設定ファイル > JSON文字列
    """

    name = "injected"

    def __init__(self, settings: AuthSettings, values: Mapping[str, Any] | None = None) -> None:
        self._settings = settings
        self._values = values

    async def load(self) -> ConfigFragment:
        values = self.read_values()
        if not values:
            return ConfigFragment(source=self.name)
        return ConfigFragment.build(
            self.name,
            client_id=values.get("AZURE_CLIENT_ID"),
            tenant_id=values.get("AZURE_TENANT_ID"),
            authority=values.get("AZURE_AUTHORITY"),
            api_scopes=values.get("API_SCOPES"),
        )

    def read_values(self) -> dict[str, Any] | None:
        """注入設定の生の値を返す。"""
        if self._values is not None:
            return dict(self._values)
        injected = get_injected_config()
        if injected is not None:
            return injected
        if self._settings.runtime_config_file is not None:
            return self._load_file(self._settings.runtime_config_file)
        if self._settings.runtime_config:
            return self._load_string(self._settings.runtime_config)
        return None

    def _load_file(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            logger.warning("実行時設定ファイルが見つかりません: %s", path)
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("実行時設定ファイルを読み込めません: %s (%s)", path, exc)
            return None
        return self._as_mapping(data)

    def _load_string(self, raw: str) -> dict[str, Any] | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("実行時設定のJSONが不正です: %s", exc)
            return None
        return self._as_mapping(data)

    def _as_mapping(self, data: Any) -> dict[str, Any] | None:
        if not isinstance(data, dict):
            return None
        return {key: data[key] for key in INJECTED_KEYS if key in data}


class BuildEnvSource(ConfigSource):
    """ビルド時に埋め込まれた環境変数（VITE_AZURE_*）"""

    name = "build_env"

    def __init__(self, settings: AuthSettings) -> None:
        self._fragment = ConfigFragment.build(
            self.name,
            client_id=settings.build_client_id,
            tenant_id=settings.build_tenant_id,
            authority=settings.build_authority,
        )

    async def load(self) -> ConfigFragment:
        return self._fragment


def has_static_client_id(settings: AuthSettings) -> bool:
    """注入設定またはビルド時設定にクライアントIDがあるかどうか"""
    injected = InjectedConfigSource(settings).read_values() or {}
    return bool(_clean(injected.get("AZURE_CLIENT_ID")) or _clean(settings.build_client_id))

