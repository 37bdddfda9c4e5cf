"""
AuthCLIメインモジュール

認証セッション・トークンゲート・APIディスパッチャをコマンドから操作する
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from infoassist_auth import __version__
from infoassist_auth.api.client import ApiDispatcher
from infoassist_auth.api.diagnostics import check_authentication_capabilities
from infoassist_auth.auth.base import IdentityClientFactory
from infoassist_auth.auth.callback import RedirectCallbackServer
from infoassist_auth.auth.gate import GateView, TokenGate
from infoassist_auth.auth.session import AuthSessionManager
from infoassist_auth.cli.parser import VALID_COMMANDS
from infoassist_auth.config.runtime import ConfigResolver
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import AppServiceAuthSource
from infoassist_auth.errors import AuthException

logger = logging.getLogger(__name__)


@dataclass
class _Runtime:
    """1コマンド分の認証コンポーネント"""
    resolver: ConfigResolver
    session: AuthSessionManager
    dispatcher: ApiDispatcher
    gate: TokenGate


class AuthCLI:
    """InfoAssist認証クライアントのエントリーポイント"""

    def __init__(
        self,
        settings: AuthSettings,
        output_format: str = "text",
        client_factory: Optional[IdentityClientFactory] = None,
        navigator: Optional[Callable[[str], Any]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """初期化

        Args:
            settings: クライアント設定
            output_format: 出力形式（text / json）
            client_factory: IDクライアントの生成関数（省略時は msal 実装）
            navigator: 認可URLを開く処理（省略時はブラウザ）
            http_client: 使用する httpx クライアント（省略時はコマンドごとに生成）
        """
        self.settings = settings
        self.output_format = output_format
        self._client_factory = client_factory
        self._navigator = navigator
        self._http_client = http_client

    def run(self, command: str, args: List[str], options: Dict[str, Any] | None = None) -> int:
        """コマンドを実行し、Exit Codeを返す

        Args:
            command: コマンド名
            args: コマンド引数
            options: 解析済みオプション辞書

        Returns:
            int: 終了コード（0: 成功、非0: エラー）
        """
        options = options or {}

        if command == "help":
            self.show_help()
            return 0

        if command == "version":
            self.show_version()
            return 0

        handlers = {
            "config": self._run_config_command,
            "status": self._run_status_command,
            "login": self._run_login_command,
            "logout": self._run_logout_command,
            "call": self._run_call_command,
            "capabilities": self._run_capabilities_command,
        }
        handler = handlers.get(command)
        if handler is None:
            print(
                f"Unknown command: '{command}'. "
                f"Available commands: {', '.join(sorted(VALID_COMMANDS))}",
                file=sys.stderr,
            )
            return 1

        logger.debug("コマンドを実行します: %s", command)
        try:
            return asyncio.run(handler(args, options))
        except AuthException as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1

    def show_help(self) -> None:
        print_help()

    def show_version(self) -> None:
        print(f"infoassist-auth {__version__}")

    async def _run_config_command(self, args: List[str], options: Dict[str, Any]) -> int:
        """解決済みの認証設定を表示（IDはマスク）"""
        async with self._runtime() as runtime:
            config = await runtime.resolver.resolve()
        self._emit({"settings": self.settings.dump_masked(), "runtime": config.to_log_dict()})
        return 0

    async def _run_status_command(self, args: List[str], options: Dict[str, Any]) -> int:
        """セッション状態とゲート表示を出力"""
        async with self._runtime() as runtime:
            state = await runtime.session.initialize()
            render = runtime.gate.render

        user = state.account
        if self.output_format == "json":
            self._emit(
                {
                    "phase": state.phase.value,
                    "view": render.view.value,
                    "loading": state.is_loading,
                    "signed_in": state.signed_in,
                    "accounts": [account.username or account.home_account_id for account in state.accounts],
                    "user": user.username if user else None,
                    "error": state.last_error,
                }
            )
        elif render.view is GateView.CONTENT and user is not None:
            print(f"Signed in as {user.display_name}")
        else:
            print(render.to_text())
        return 1 if render.view is GateView.CONFIG_ERROR else 0

    async def _run_login_command(self, args: List[str], options: Dict[str, Any]) -> int:
        """ブラウザでサインインし、ローカルのリダイレクトURIで応答を受け取る"""
        async with self._runtime() as runtime:
            await runtime.session.initialize()
            if runtime.gate.render.view is GateView.CONFIG_ERROR:
                print(runtime.gate.render.to_text(), file=sys.stderr)
                return 1

            try:
                server = RedirectCallbackServer.for_redirect_uri(self.settings.effective_redirect_uri)
            except OSError as exc:
                print(f"コールバックサーバーを起動できません: {exc}", file=sys.stderr)
                return 1

            try:
                auth_url = await runtime.gate.sign_in()
            except Exception:
                server.server_close()
                raise

            if auth_url is None:
                server.server_close()
                self._print_signed_in(runtime.session)
                return 0

            print(f"ブラウザでサインインしてください: {auth_url}", file=sys.stderr)
            try:
                response = await server.wait_for_response(self.settings.interactive_timeout)
            except TimeoutError as exc:
                print(str(exc), file=sys.stderr)
                return 1

            await runtime.session.handle_redirect(response)
            self._print_signed_in(runtime.session)
        return 0

    async def _run_logout_command(self, args: List[str], options: Dict[str, Any]) -> int:
        async with self._runtime() as runtime:
            state = await runtime.session.initialize()
            if state.client_handle is None:
                print(runtime.gate.render.to_text(), file=sys.stderr)
                return 1
            logout_url = await runtime.session.logout()

        if logout_url is None:
            print("サインインしているアカウントはありません")
        else:
            print("サインアウトしました")
        return 0

    async def _run_call_command(self, args: List[str], options: Dict[str, Any]) -> int:
        """認証付きでバックエンドを呼び出す（本文を渡すとPOST）"""
        path = args[0]
        try:
            body = json.loads(args[1]) if len(args) > 1 else None
        except json.JSONDecodeError as exc:
            print(f"本文がJSONとして不正です: {exc}", file=sys.stderr)
            return 1

        async with self._runtime() as runtime:
            if not options.get("skip_auth"):
                await runtime.session.initialize()
            if body is None:
                response = await runtime.dispatcher.get(path, skip_auth=bool(options.get("skip_auth")))
            else:
                response = await runtime.dispatcher.post(path, body, skip_auth=bool(options.get("skip_auth")))

        if self.output_format == "json":
            try:
                payload = response.json()
            except ValueError:
                payload = response.text
            self._emit({"status": response.status_code, "body": payload})
        else:
            print(f"HTTP {response.status_code}")
            print(response.text)
        return 0 if response.is_success else 1

    async def _run_capabilities_command(self, args: List[str], options: Dict[str, Any]) -> int:
        capabilities = await check_authentication_capabilities(self.settings, self._http_client)
        self._emit(capabilities.to_dict())
        return 0 if capabilities.has_authentication else 1

    @asynccontextmanager
    async def _runtime(self) -> AsyncIterator[_Runtime]:
        owns_client = self._http_client is None
        client = self._http_client or httpx.AsyncClient(timeout=self.settings.request_timeout)
        resolver = ConfigResolver(self.settings, http_client=client)
        session = AuthSessionManager(
            resolver,
            self.settings,
            client_factory=self._client_factory,
            navigator=self._navigator,
        )
        dispatcher = ApiDispatcher(
            self.settings.base_url,
            http_client=client,
            timeout=self.settings.request_timeout,
        )
        gate = TokenGate(session, dispatcher, AppServiceAuthSource(client, self.settings.base_url))
        await gate.mount()
        try:
            yield _Runtime(resolver=resolver, session=session, dispatcher=dispatcher, gate=gate)
        finally:
            await gate.unmount()
            if owns_client:
                await client.aclose()

    def _print_signed_in(self, session: AuthSessionManager) -> None:
        user = session.authenticated_user()
        if user is None:
            print("サインインに失敗しました", file=sys.stderr)
            return
        print(f"Signed in as {user.display_name}")

    def _emit(self, payload: Dict[str, Any]) -> None:
        if self.output_format == "json":
            print(json.dumps(payload, ensure_ascii=False, indent=2))
            return
        for key, value in payload.items():
            if isinstance(value, dict):
                print(f"{key}:")
                for sub_key, sub_value in value.items():
                    print(f"  {sub_key}: {sub_value}")
            else:
                print(f"{key}: {value}")


def print_help() -> None:
    """ヘルプメッセージを表示"""
    help_text = f"""InfoAssist Auth v{__version__} - Information Assistant の認証付きAPIクライアント

Usage:
    infoassist-auth <command> [args] [options]

Commands:
    config                 解決済みの認証設定を表示（IDはマスク）
    status                 認証セッションの状態を表示
    login                  ブラウザでサインイン
    logout                 サインアウトしてローカルのアカウントを破棄
    call <path> [body]     認証付きでAPIを呼び出す（bodyはJSON、指定時はPOST）
    capabilities           認証構成の診断結果を表示
    help                   このヘルプメッセージを表示
    version                バージョン情報を表示

Options:
    -h, --help             ヘルプメッセージを表示
    -v, --version          バージョン情報を表示
    --format <format>      出力形式を指定（text, json）
    --base-url <url>       バックエンドのURLを指定
    --skip-auth            call で認証ヘッダーを付与しない
    --verbose              詳細ログを出力

Environment:
    INFOASSIST_BASE_URL, INFOASSIST_RUNTIME_CONFIG_FILE, INFOASSIST_RUNTIME_CONFIG,
    VITE_AZURE_CLIENT_ID, VITE_AZURE_TENANT_ID, VITE_AZURE_AUTHORITY

Examples:
    infoassist-auth status
    infoassist-auth --format json call /getfeatureflags
    infoassist-auth call /deleteItems '{{"path": "folder/file.pdf"}}'
"""
    print(help_text)
