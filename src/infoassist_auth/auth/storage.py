"""IDクライアント状態の安全な保存を提供する。

トークンキャッシュと保留中のリダイレクトフローを keyring に保存し、
keyring が使えない環境ではパーミッション 0600 のローカルファイルに退避する。
"""

from __future__ import annotations

import json
import os
from pathlib import Path
import warnings

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

TOKEN_CACHE_KEY = "token_cache"
AUTH_FLOW_KEY = "auth_flow"


class TokenStore:
    """IDクライアント状態の保存と取得を管理する。"""

    def __init__(self, keyring_service: str = "infoassist-auth", fallback_path: Path | None = None) -> None:
        """TokenStoreを初期化する。

        Args:
            keyring_service: keyringに保存する際のサービス名。
            fallback_path: keyringが使えない場合の保存先。
        """

        self._keyring_service = keyring_service
        self._fallback_path = fallback_path or Path.home() / ".infoassist" / "auth_state.json"
        self._use_keyring = True

    def set(self, key: str, value: str) -> None:
        """値を保存する。

        Args:
            key: 保存キー（例: token_cache）。
            value: 保存する文字列。
        """

        if self._use_keyring:
            try:
                keyring.set_password(self._keyring_service, key, value)
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        self._set_fallback(key, value)

    def get(self, key: str) -> str | None:
        """値を取得する。

        Args:
            key: 保存キー。

        Returns:
            保存値。存在しない場合はNone。
        """

        if self._use_keyring:
            try:
                return keyring.get_password(self._keyring_service, key)
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        return self._get_fallback(key)

    def delete(self, key: str) -> None:
        """値を削除する。存在しない場合は何もしない。"""

        if self._use_keyring:
            try:
                keyring.delete_password(self._keyring_service, key)
                return
            except PasswordDeleteError:
                return
            except KeyringError as exc:
                self._switch_to_fallback(exc)

        self._delete_fallback(key)

    def get_json(self, key: str) -> dict | None:
        """JSONとして保存された値を取得する。壊れている場合はNone。"""
        raw = self.get(key)
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def set_json(self, key: str, value: dict) -> None:
        self.set(key, json.dumps(value, ensure_ascii=False))

    def _switch_to_fallback(self, exc: Exception) -> None:
        if self._use_keyring:
            warnings.warn(
                "keyringが利用できないため、ローカルファイルに保存します。",
                RuntimeWarning,
                stacklevel=3,
            )
            self._use_keyring = False

    def _read_fallback(self) -> dict[str, str]:
        if not self._fallback_path.exists():
            return {}

        self._ensure_fallback_permissions(self._fallback_path)
        try:
            with self._fallback_path.open("r", encoding="utf-8") as file:
                data = json.load(file)
        except json.JSONDecodeError:
            warnings.warn(
                "認証状態の保存ファイルの形式が不正です。空として扱います。",
                RuntimeWarning,
                stacklevel=3,
            )
            return {}

        if not isinstance(data, dict):
            return {}

        return {str(key): str(value) for key, value in data.items()}

    def _write_fallback(self, values: dict[str, str]) -> None:
        self._fallback_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        with self._fallback_path.open("w", encoding="utf-8") as file:
            json.dump(values, file, ensure_ascii=False, indent=2)
        self._ensure_fallback_permissions(self._fallback_path)

    def _ensure_fallback_permissions(self, path: Path) -> None:
        if path.exists():
            os.chmod(path, 0o600)

    def _set_fallback(self, key: str, value: str) -> None:
        values = self._read_fallback()
        values[key] = value
        self._write_fallback(values)

    def _get_fallback(self, key: str) -> str | None:
        return self._read_fallback().get(key)

    def _delete_fallback(self, key: str) -> None:
        values = self._read_fallback()
        if key in values:
            values.pop(key)
            self._write_fallback(values)
