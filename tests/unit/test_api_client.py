"""
ApiDispatcherのユニットテスト

ベアラートークンの付与と401時の1回限りの再送を検証する
"""

import asyncio
import json
import unittest
from typing import List, Optional

import httpx

from infoassist_auth.api.client import ApiDispatcher, AuthenticatedRequest
from infoassist_auth.errors import RequestAbortedError, TransportFailure

BASE_URL = "https://app.example.com"


class FakeTokenSource:
    """順番にトークンを返すトークン取得元"""

    def __init__(self, tokens: List[Optional[str]]):
        self.tokens = list(tokens)
        self.calls: List[tuple] = []

    async def acquire_token_silently(self, scopes=None, force_refresh=False):
        self.calls.append((scopes, force_refresh))
        return self.tokens.pop(0) if self.tokens else None


class RecordingTransport:
    """リクエストを記録し、用意したステータスを順番に返す"""

    def __init__(self, statuses: List[int]):
        self.statuses = list(statuses)
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={"status": status})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))


class TestApiDispatcher(unittest.IsolatedAsyncioTestCase):
    """ApiDispatcherのテスト"""

    async def asyncSetUp(self):
        self.transport = RecordingTransport([200])
        self.http_client = self.transport.client()

    async def asyncTearDown(self):
        await self.http_client.aclose()

    def make_dispatcher(self, tokens: List[Optional[str]]) -> ApiDispatcher:
        self.tokens = FakeTokenSource(tokens)
        return ApiDispatcher(token_source=self.tokens, http_client=self.http_client)

    async def test_attaches_bearer_token(self):
        dispatcher = self.make_dispatcher(["t1"])
        response = await dispatcher.get("/info")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.transport.requests[0].headers["Authorization"], "Bearer t1")
        self.assertEqual(self.tokens.calls, [(None, False)])

    async def test_custom_scopes(self):
        dispatcher = self.make_dispatcher(["t1"])
        await dispatcher.get("/info", scopes=["api://c1/access_as_user"])
        self.assertEqual(self.tokens.calls, [(["api://c1/access_as_user"], False)])

    async def test_dispatcher_default_scopes(self):
        dispatcher = ApiDispatcher(
            token_source=FakeTokenSource(["t1"]),
            http_client=self.http_client,
            default_scopes=("User.Read", "api://c1/access_as_user"),
        )
        await dispatcher.get("/info")
        self.assertEqual(dispatcher.token_source.calls, [(["User.Read", "api://c1/access_as_user"], False)])

    async def test_no_token_sends_without_header(self):
        """トークンが取得できなくてもリクエストは送信されること"""
        dispatcher = self.make_dispatcher([None])
        response = await dispatcher.get("/info")
        self.assertEqual(response.status_code, 200)
        self.assertNotIn("Authorization", self.transport.requests[0].headers)

    async def test_no_token_source(self):
        dispatcher = ApiDispatcher(http_client=self.http_client)
        with self.assertLogs("infoassist_auth.api.client", level="WARNING"):
            await dispatcher.get("/info")
        self.assertNotIn("Authorization", self.transport.requests[0].headers)

    async def test_retries_once_on_401(self):
        """401 の場合はトークンを再取得して1回だけ再送すること"""
        self.transport.statuses = [401, 200]
        dispatcher = self.make_dispatcher(["t1", "t2"])
        response = await dispatcher.post("/chat", {"history": []})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(self.transport.requests), 2)
        self.assertEqual(self.transport.requests[1].headers["Authorization"], "Bearer t2")
        self.assertEqual(self.transport.requests[1].content, self.transport.requests[0].content)

    async def test_retry_forces_token_refresh(self):
        """401 後の再取得ではキャッシュ済みトークンを使わないこと"""
        self.transport.statuses = [401, 200]
        dispatcher = self.make_dispatcher(["t1", "t2"])
        await dispatcher.get("/info", scopes=["User.Read"])
        self.assertEqual(self.tokens.calls, [(["User.Read"], False), (["User.Read"], True)])

    async def test_second_401_is_returned(self):
        self.transport.statuses = [401, 401, 200]
        dispatcher = self.make_dispatcher(["t1", "t2"])
        response = await dispatcher.get("/info")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(len(self.transport.requests), 2)

    async def test_401_without_fresh_token_is_returned(self):
        self.transport.statuses = [401]
        dispatcher = self.make_dispatcher(["t1", None])
        response = await dispatcher.get("/info")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(len(self.transport.requests), 1)

    async def test_skip_auth(self):
        """公開エンドポイントではトークン取得も再送も行わないこと"""
        self.transport.statuses = [401]
        dispatcher = self.make_dispatcher(["t1"])
        response = await dispatcher.get("/health", skip_auth=True)
        self.assertEqual(response.status_code, 401)
        self.assertEqual(self.tokens.calls, [])
        self.assertNotIn("Authorization", self.transport.requests[0].headers)

    async def test_error_statuses_are_not_raised(self):
        self.transport.statuses = [500]
        dispatcher = self.make_dispatcher(["t1"])
        response = await dispatcher.delete("/item")
        self.assertEqual(response.status_code, 500)

    async def test_json_body_sets_content_type(self):
        dispatcher = self.make_dispatcher(["t1"])
        await dispatcher.put("/item", {"名前": "値"})
        request = self.transport.requests[0]
        self.assertEqual(request.method, "PUT")
        self.assertEqual(request.headers["Content-Type"], "application/json")
        self.assertEqual(json.loads(request.content), {"名前": "値"})

    async def test_multipart_has_boundary_content_type(self):
        """マルチパート送信では呼び出し側でContent-Typeを設定しないこと"""
        dispatcher = self.make_dispatcher(["t1"])
        await dispatcher.request(
            "POST",
            "/upload",
            files={"file": ("a.txt", b"hello")},
            data={"folder": "docs"},
        )
        content_type = self.transport.requests[0].headers["Content-Type"]
        self.assertTrue(content_type.startswith("multipart/form-data; boundary="))

    async def test_transport_failure(self):
        def failing(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(failing)) as client:
            dispatcher = ApiDispatcher(token_source=FakeTokenSource(["t1"]), http_client=client)
            with self.assertRaises(TransportFailure):
                await dispatcher.get("/info")

    async def test_attach_replaces_token_source(self):
        dispatcher = ApiDispatcher(http_client=self.http_client)
        source = FakeTokenSource(["t9"])
        dispatcher.attach(source)
        self.assertIs(dispatcher.token_source, source)
        await dispatcher.get("/info")
        self.assertEqual(self.transport.requests[0].headers["Authorization"], "Bearer t9")


class TestBaseUrl(unittest.IsolatedAsyncioTestCase):
    """相対パスの解決"""

    async def test_relative_path_joined_with_base_url(self):
        transport = RecordingTransport([200])
        async with httpx.AsyncClient(transport=httpx.MockTransport(transport.handler)) as client:
            dispatcher = ApiDispatcher(f"{BASE_URL}/", http_client=client)
            await dispatcher.get("info", skip_auth=True)
            await dispatcher.get("https://other.example.com/x", skip_auth=True)
        self.assertEqual(str(transport.requests[0].url), f"{BASE_URL}/info")
        self.assertEqual(str(transport.requests[1].url), "https://other.example.com/x")


class TestCancellation(unittest.IsolatedAsyncioTestCase):
    """cancel_event による中断のテスト"""

    async def test_already_cancelled(self):
        transport = RecordingTransport([200])
        async with transport.client() as client:
            dispatcher = ApiDispatcher(token_source=FakeTokenSource(["t1"]), http_client=client)
            event = asyncio.Event()
            event.set()
            with self.assertRaises(RequestAbortedError):
                await dispatcher.dispatch(AuthenticatedRequest(url="/chat", cancel_event=event))
        self.assertEqual(transport.requests, [])

    async def test_cancel_in_flight(self):
        """送信中にイベントがセットされたら中断されること"""
        started = asyncio.Event()

        async def slow(request):
            started.set()
            await asyncio.sleep(10)
            return httpx.Response(200)

        async with httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(slow)) as client:
            dispatcher = ApiDispatcher(token_source=FakeTokenSource(["t1"]), http_client=client)
            event = asyncio.Event()

            async def cancel_later():
                await started.wait()
                event.set()

            canceller = asyncio.create_task(cancel_later())
            with self.assertRaises(RequestAbortedError):
                await dispatcher.post("/chat", {"history": []}, cancel_event=event)
            await canceller

    async def test_completes_when_not_cancelled(self):
        transport = RecordingTransport([200])
        async with transport.client() as client:
            dispatcher = ApiDispatcher(token_source=FakeTokenSource(["t1"]), http_client=client)
            response = await dispatcher.get("/info", cancel_event=asyncio.Event())
        self.assertEqual(response.status_code, 200)


if __name__ == "__main__":
    unittest.main()
