"""
認証付きAPIディスパッチャ

送信前にベアラートークンを付与し、401 を受け取った場合に限り
キャッシュを使わずにトークンを1回だけ再取得して1回だけ再送する。
HTTPエラーステータスは例外にせず、そのままレスポンスとして返す。
"""

from __future__ import annotations

import asyncio
import contextlib
import json as jsonlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Sequence

import httpx

from infoassist_auth.errors import (
    ErrorCode,
    RequestAbortedError,
    TransportFailure,
    create_api_error,
    create_transport_error,
)

logger = logging.getLogger(__name__)

UNAUTHORIZED = 401


class TokenSource(Protocol):
    """トークン取得元（AuthSessionManager が満たす）"""

    async def acquire_token_silently(
        self,
        scopes: Optional[Sequence[str]] = None,
        force_refresh: bool = False,
    ) -> Optional[str]: ...


@dataclass
class AuthenticatedRequest:
    """1回分の送信内容

    Attributes:
        url: 送信先（base_url からの相対パスも可）
        method: HTTPメソッド
        headers: 追加ヘッダ
        json: JSONエンコードする本文
        content: 送信する生の本文
        data: フォームフィールド
        files: マルチパートで送るファイル（Content-Type はトランスポートが設定する）
        scopes: 要求するスコープ（空の場合はディスパッチャ、さらにセッションの既定値）
        skip_auth: 認証を省略する公開エンドポイントかどうか
        cancel_event: セットされると送信中のリクエストを中断するイベント
    """
    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: Optional[bytes | str] = None
    data: Optional[Dict[str, Any]] = None
    files: Optional[Any] = None
    scopes: Sequence[str] = ()
    skip_auth: bool = False
    cancel_event: Optional[asyncio.Event] = None

    def build_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        if self.json is not None and self.files is None:
            headers.setdefault("Content-Type", "application/json")
        return headers

    def body_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {}
        if self.files is not None:
            kwargs["files"] = self.files
            if self.data is not None:
                kwargs["data"] = self.data
        elif self.json is not None:
            kwargs["content"] = jsonlib.dumps(self.json, ensure_ascii=False).encode("utf-8")
        elif self.content is not None:
            kwargs["content"] = self.content
        elif self.data is not None:
            kwargs["data"] = self.data
        return kwargs


class ApiDispatcher:
    """ベアラートークンを付与してHTTPリクエストを送信する"""

    def __init__(
        self,
        base_url: str = "",
        *,
        token_source: Optional[TokenSource] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        default_scopes: Optional[Sequence[str]] = None,
        timeout: float = 30.0,
    ) -> None:
        """初期化

        Args:
            base_url: 相対パスの基準URL
            token_source: トークン取得元（後から attach() でも設定可能）
            http_client: 使用する httpx クライアント（省略時は内部で生成）
            default_scopes: scopes 未指定時のスコープ（省略時はトークン取得元の既定値）
            timeout: 内部で生成するクライアントのタイムアウト秒数
        """
        self._base_url = base_url.rstrip("/")
        self._token_source = token_source
        self._default_scopes = tuple(default_scopes or ())
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def token_source(self) -> Optional[TokenSource]:
        return self._token_source

    def attach(self, token_source: TokenSource) -> None:
        """現在のセッションをトークン取得元として設定する"""
        self._token_source = token_source

    async def dispatch(self, request: AuthenticatedRequest) -> httpx.Response:
        """リクエストを送信し、最終的なレスポンスを返す

        Raises:
            TransportFailure: ネットワークレベルで送信できなかった場合
            RequestAbortedError: cancel_event により中断された場合
        """
        headers = request.build_headers()
        scopes = list(request.scopes or self._default_scopes) or None

        if not request.skip_auth:
            token = await self._get_access_token(scopes)
            if token:
                headers["Authorization"] = f"Bearer {token}"

        response = await self._send(request, headers)

        if response.status_code == UNAUTHORIZED and not request.skip_auth:
            logger.warning("401 を受信したため、トークンを再取得します: %s", request.url)
            fresh_token = await self._get_access_token(scopes, force_refresh=True)
            if fresh_token:
                headers["Authorization"] = f"Bearer {fresh_token}"
                await response.aclose()
                response = await self._send(request, headers)

        return response

    async def request(
        self,
        method: str,
        url: str,
        *,
        scopes: Optional[Sequence[str]] = None,
        skip_auth: bool = False,
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        content: Optional[bytes | str] = None,
        data: Optional[Dict[str, Any]] = None,
        files: Optional[Any] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> httpx.Response:
        """キーワード引数から AuthenticatedRequest を組み立てて送信する"""
        return await self.dispatch(
            AuthenticatedRequest(
                url=url,
                method=method.upper(),
                headers=dict(headers or {}),
                json=json,
                content=content,
                data=data,
                files=files,
                scopes=tuple(scopes or ()),
                skip_auth=skip_auth,
                cancel_event=cancel_event,
            )
        )

    async def get(self, url: str, **options: Any) -> httpx.Response:
        return await self.request("GET", url, **options)

    async def post(self, url: str, body: Any = None, **options: Any) -> httpx.Response:
        return await self.request("POST", url, json=body, **options)

    async def put(self, url: str, body: Any = None, **options: Any) -> httpx.Response:
        return await self.request("PUT", url, json=body, **options)

    async def delete(self, url: str, **options: Any) -> httpx.Response:
        return await self.request("DELETE", url, **options)

    async def _get_access_token(
        self,
        scopes: Optional[Sequence[str]],
        force_refresh: bool = False,
    ) -> Optional[str]:
        if self._token_source is None:
            logger.warning("認証セッションが未設定のため、認証なしで送信します")
            return None
        return await self._token_source.acquire_token_silently(scopes, force_refresh=force_refresh)

    async def _send(self, request: AuthenticatedRequest, headers: Dict[str, str]) -> httpx.Response:
        cancel_event = request.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise self._aborted(request)

        coroutine = self._client.request(
            request.method,
            self._resolve_url(request.url),
            headers=headers,
            **request.body_kwargs(),
        )
        try:
            if cancel_event is None:
                return await coroutine
            return await self._send_cancellable(coroutine, cancel_event, request)
        except httpx.HTTPError as exc:
            raise TransportFailure(
                create_transport_error(
                    "API リクエストの送信に失敗しました。",
                    details={"url": request.url, "reason": str(exc) or type(exc).__name__},
                )
            ) from exc

    def _resolve_url(self, url: str) -> str:
        if not self._base_url or url.startswith(("http://", "https://")):
            return url
        return f"{self._base_url}/{url.lstrip('/')}"

    async def _send_cancellable(
        self,
        coroutine: Any,
        cancel_event: asyncio.Event,
        request: AuthenticatedRequest,
    ) -> httpx.Response:
        send_task = asyncio.ensure_future(coroutine)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {send_task, cancel_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            send_task.cancel()
            raise
        finally:
            cancel_task.cancel()

        if send_task in done:
            return send_task.result()

        send_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await send_task
        raise self._aborted(request)

    @staticmethod
    def _aborted(request: AuthenticatedRequest) -> RequestAbortedError:
        logger.info("リクエストが中断されました: %s", request.url)
        return RequestAbortedError(
            create_api_error(
                code=ErrorCode.API_REQUEST_ABORTED,
                message="リクエストが中断されました。",
                details={"url": request.url},
                recoverable=True,
            )
        )

    async def close(self) -> None:
        """生成した httpx クライアントをクリーンアップ"""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "ApiDispatcher":
        return self

    async def __aexit__(self, *_exc: Any) -> None:
        await self.close()
