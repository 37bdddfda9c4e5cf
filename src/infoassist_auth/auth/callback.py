"""リダイレクト応答を受け取るローカルコールバックサーバー（CLI用）。"""

from __future__ import annotations

import asyncio
from http.server import BaseHTTPRequestHandler, HTTPServer
import threading
from urllib.parse import parse_qsl, urlparse


class RedirectCallbackServer(HTTPServer):
    """リダイレクトURIで応答パラメータを1回だけ受け取るサーバー"""

    def __init__(self, server_address: tuple[str, int], path: str = "/") -> None:
        super().__init__(server_address, _RedirectCallbackHandler)
        self.expected_path = path or "/"
        self.auth_response: dict[str, str] | None = None
        self.event = threading.Event()

    @classmethod
    def for_redirect_uri(cls, redirect_uri: str) -> "RedirectCallbackServer":
        parsed = urlparse(redirect_uri)
        host = parsed.hostname or "127.0.0.1"
        port = parsed.port if parsed.port is not None else 80
        return cls((host, port), parsed.path or "/")

    async def wait_for_response(self, timeout_seconds: float) -> dict[str, str]:
        """応答を待機する。

        Raises:
            TimeoutError: タイムアウトした場合
        """
        thread = threading.Thread(target=self.serve_forever, daemon=True)
        thread.start()
        try:
            received = await asyncio.to_thread(self.event.wait, timeout_seconds)
            if not received or self.auth_response is None:
                raise TimeoutError("認証のコールバックがタイムアウトしました。")
            return self.auth_response
        finally:
            self.shutdown()
            self.server_close()
            thread.join(timeout=1)


class _RedirectCallbackHandler(BaseHTTPRequestHandler):
    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        server = self.server
        expected = server.expected_path if isinstance(server, RedirectCallbackServer) else "/"
        if parsed.path != expected:
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"Not Found")
            return

        params = dict(parse_qsl(parsed.query))
        if isinstance(server, RedirectCallbackServer):
            server.auth_response = params
            server.event.set()

        self.send_response(200)
        self.end_headers()
        if "error" in params:
            self.wfile.write(b"Authentication failed. You can close this window.")
        else:
            self.wfile.write(b"Authentication successful. You can close this window.")

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return
