"""
認証構成の診断のユニットテスト
"""

import os
import unittest
from unittest.mock import patch

import httpx

from infoassist_auth.api.diagnostics import check_authentication_capabilities
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import set_injected_config


def make_client(status: int) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=[] if status == 200 else None)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestCheckAuthenticationCapabilities(unittest.IsolatedAsyncioTestCase):
    """check_authentication_capabilitiesのテスト"""

    def setUp(self):
        patcher = patch.dict(os.environ, {}, clear=True)
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        set_injected_config(None)

    async def test_app_service_session(self):
        settings = AuthSettings(_env_file=None, base_url="https://app.example.com")
        async with make_client(200) as client:
            result = await check_authentication_capabilities(settings, client)
        self.assertTrue(result.has_authentication)
        self.assertTrue(result.has_valid_tokens)
        self.assertFalse(result.supports_silent_auth)
        self.assertIsNone(result.error_message)

    async def test_static_client_configuration(self):
        settings = AuthSettings(_env_file=None, build_client_id="c2")
        async with make_client(401) as client:
            result = await check_authentication_capabilities(settings, client)
        self.assertTrue(result.has_authentication)
        self.assertFalse(result.has_valid_tokens)
        self.assertTrue(result.supports_silent_auth)

    async def test_nothing_configured(self):
        settings = AuthSettings(_env_file=None)
        async with make_client(401) as client:
            result = await check_authentication_capabilities(settings, client)
        self.assertFalse(result.has_authentication)
        self.assertEqual(result.error_message, "No authentication configuration found")

    async def test_network_failure(self):
        def failing(request):
            raise httpx.ConnectError("refused", request=request)

        settings = AuthSettings(_env_file=None, build_client_id="c2")
        async with httpx.AsyncClient(transport=httpx.MockTransport(failing)) as client:
            result = await check_authentication_capabilities(settings, client)
        self.assertFalse(result.has_authentication)
        self.assertTrue(result.error_message.startswith("Authentication check failed:"))
        self.assertEqual(result.to_dict()["supports_silent_auth"], False)


if __name__ == "__main__":
    unittest.main()
