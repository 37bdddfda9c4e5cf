"""Pydantic V2 ベースのクライアント設定モデル"""

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class AuthSettings(BaseSettings):
    """認証クライアントの統合設定

    VITE_AZURE_* はビルド時に埋め込まれる値に相当し、設定オブジェクト生成時に
    一度だけ読み込まれて以後は変化しない。
    """

    model_config = SettingsConfigDict(
        env_prefix="INFOASSIST_",
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    # 接続先設定
    base_url: str = Field(default="http://localhost:5000")
    redirect_uri: Optional[str] = None
    post_logout_redirect_uri: Optional[str] = None
    request_timeout: float = Field(default=30.0, gt=0)
    interactive_timeout: float = Field(default=180.0, gt=0)

    # 実行時注入設定（サーバーテンプレートのグローバル値に相当）
    runtime_config_file: Optional[Path] = None
    runtime_config: Optional[str] = None

    # ビルド時設定
    build_client_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("VITE_AZURE_CLIENT_ID", "build_client_id"),
    )
    build_tenant_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("VITE_AZURE_TENANT_ID", "build_tenant_id"),
    )
    build_authority: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("VITE_AZURE_AUTHORITY", "build_authority"),
    )

    # トークン保存設定
    token_store_service: str = "infoassist-auth"
    token_cache_path: Optional[Path] = None

    # ログ設定
    log_level: str = "WARNING"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """base_url の末尾スラッシュを除去する"""
        value = value.strip()
        if not value:
            raise ValueError("base_url は空にできません")
        return value.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in logging.getLevelNamesMapping():
            raise ValueError(f"未対応のログレベルです: {value}")
        return normalized

    @property
    def origin(self) -> str:
        """アプリケーションのオリジン（scheme://host[:port]）"""
        parts = urlsplit(self.base_url)
        return f"{parts.scheme}://{parts.netloc}"

    @property
    def effective_redirect_uri(self) -> str:
        return self.redirect_uri or self.origin

    @property
    def effective_post_logout_redirect_uri(self) -> str:
        return self.post_logout_redirect_uri or self.origin

    def dump_masked(self) -> dict:
        """識別子をマスクした設定を返却する"""
        data = self.model_dump(mode="json")
        for key in ("build_client_id", "build_tenant_id"):
            if data.get(key):
                data[key] = "***configured***"
        if data.get("runtime_config"):
            data["runtime_config"] = "***"
        return data
