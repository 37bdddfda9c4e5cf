"""
実行時の認証設定解決のユニットテスト

バックエンド・App Service・注入設定・ビルド時設定の優先順位とキャッシュを検証する
"""

import asyncio
import json
import os
import tempfile
import unittest
from pathlib import Path
from typing import Any, Dict, Optional
from unittest.mock import patch

import httpx

from infoassist_auth.config import runtime as runtime_module
from infoassist_auth.config.runtime import (
    BASELINE_SCOPE,
    DEFAULT_AUTHORITY,
    ConfigResolver,
    RuntimeConfig,
    clear_config_cache,
    get_cached_config,
    load_runtime_config,
    merge_fragments,
    set_default_resolver,
)
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import (
    AppServiceAuthSource,
    BackendConfigSource,
    ConfigFragment,
    ConfigSource,
    InjectedConfigSource,
    extract_tenant_id,
    has_static_client_id,
    set_injected_config,
)

BASE_URL = "https://app.example.com"
TENANT_GUID = "72f988bf-86f1-41af-91ab-2d7cd011db47"


def make_settings(**values):
    return AuthSettings(_env_file=None, base_url=BASE_URL, **values)


class FakeBackend:
    """/getMsalConfig と /.auth/me を返すモックトランスポート"""

    def __init__(
        self,
        backend: Optional[Any] = None,
        app_service: Optional[Any] = None,
        backend_status: int = 200,
        app_service_status: int = 200,
        fail: bool = False,
    ):
        self.backend = backend
        self.app_service = app_service
        self.backend_status = backend_status
        self.app_service_status = app_service_status
        self.fail = fail
        self.calls: Dict[str, int] = {}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls[path] = self.calls.get(path, 0) + 1
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if path == "/getMsalConfig":
            if self.backend is None:
                return httpx.Response(404)
            return httpx.Response(self.backend_status, json=self.backend)
        if path == "/.auth/me":
            if self.app_service is None:
                return httpx.Response(401)
            return httpx.Response(self.app_service_status, json=self.app_service)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


class TestTenantExtraction(unittest.TestCase):
    """authority からのテナントID抽出"""

    def test_guid(self):
        authority = f"https://login.microsoftonline.com/{TENANT_GUID}"
        self.assertEqual(extract_tenant_id(authority), TENANT_GUID)

    def test_well_known_tenants(self):
        for tenant in ("common", "organizations", "consumers"):
            with self.subTest(tenant=tenant):
                self.assertEqual(extract_tenant_id(f"https://login.microsoftonline.com/{tenant}/"), tenant)

    def test_unrecognized_authority(self):
        self.assertIsNone(extract_tenant_id("https://login.microsoftonline.com/v2.0"))
        self.assertIsNone(extract_tenant_id(None))


class TestMergeFragments(unittest.TestCase):
    """フラグメント統合のテスト"""

    def test_defaults_when_nothing_configured(self):
        """何も設定がない場合は既定値になること"""
        config = merge_fragments([])
        self.assertIsNone(config.client_id)
        self.assertEqual(config.authority, DEFAULT_AUTHORITY)
        self.assertEqual(config.api_scopes, (BASELINE_SCOPE,))

    def test_authority_derived_from_tenant(self):
        config = merge_fragments([ConfigFragment.build("x", client_id="c1", tenant_id="t1")])
        self.assertEqual(config.authority, "https://login.microsoftonline.com/t1")
        self.assertEqual(config.api_scopes, ("User.Read", "api://c1/access_as_user"))

    def test_higher_precedence_wins_and_lower_fills(self):
        """上位の値は上書きされず、未設定の項目だけ下位で補完されること"""
        config = merge_fragments(
            [
                ConfigFragment.build("backend", client_id="c1"),
                ConfigFragment.build("build_env", client_id="c2", tenant_id="t2"),
            ]
        )
        self.assertEqual(config.client_id, "c1")
        self.assertEqual(config.tenant_id, "t2")

    def test_empty_strings_are_unset(self):
        config = merge_fragments(
            [
                ConfigFragment.build("backend", client_id="", authority="  "),
                ConfigFragment.build("build_env", client_id="c2"),
            ]
        )
        self.assertEqual(config.client_id, "c2")
        self.assertEqual(config.authority, DEFAULT_AUTHORITY)

    def test_silent_scopes_include_baseline(self):
        config = RuntimeConfig(authority=DEFAULT_AUTHORITY, api_scopes=("api://c/x",))
        self.assertEqual(config.silent_scopes, ("User.Read", "api://c/x"))

    def test_log_dict_masks_identifiers(self):
        config = merge_fragments([ConfigFragment.build("x", client_id="c1", tenant_id="t1")])
        log_dict = config.to_log_dict()
        self.assertEqual(log_dict["clientId"], "***configured***")
        self.assertNotIn("c1", json.dumps(log_dict["clientId"]))


class TestConfigResolver(unittest.IsolatedAsyncioTestCase):
    """ConfigResolverのテスト"""

    def tearDown(self):
        set_injected_config(None)
        set_default_resolver(None)

    async def test_backend_config_used(self):
        """バックエンドの値がそのまま使われること"""
        backend = FakeBackend(backend={"clientId": "c1", "tenantId": "t1"})
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(), http_client=client).resolve()
        self.assertEqual(config.client_id, "c1")
        self.assertEqual(config.tenant_id, "t1")
        self.assertEqual(config.authority, "https://login.microsoftonline.com/t1")
        self.assertEqual(config.api_scopes, ("User.Read", "api://c1/access_as_user"))

    async def test_backend_unreachable_with_injected_client_id(self):
        """バックエンドに到達できず注入設定だけがある場合"""
        set_injected_config({"AZURE_CLIENT_ID": "c2"})
        backend = FakeBackend(fail=True)
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(), http_client=client).resolve()
        self.assertEqual(config.client_id, "c2")
        self.assertEqual(config.authority, DEFAULT_AUTHORITY)
        self.assertEqual(config.api_scopes, ("User.Read", "api://c2/access_as_user"))

    async def test_backend_failure_falls_back_to_build_env(self):
        """バックエンドが失敗した場合はビルド時設定が使われること"""
        backend = FakeBackend(backend={"error": "x"}, backend_status=500)
        settings = make_settings(build_client_id="c2")
        async with backend.client() as client:
            config = await ConfigResolver(settings, http_client=client).resolve()
        self.assertEqual(config.client_id, "c2")
        self.assertEqual(config.authority, DEFAULT_AUTHORITY)

    async def test_network_failure_never_raises(self):
        """すべてのソースが失敗しても解決は成功すること"""
        backend = FakeBackend(fail=True)
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(), http_client=client).resolve()
        self.assertIsNone(config.client_id)
        self.assertEqual(config.authority, DEFAULT_AUTHORITY)
        self.assertEqual(config.api_scopes, (BASELINE_SCOPE,))

    async def test_invalid_json_is_skipped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>")

        settings = make_settings(build_client_id="c2")
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            config = await ConfigResolver(settings, http_client=client).resolve()
        self.assertEqual(config.client_id, "c2")

    async def test_app_service_fills_unset_fields_only(self):
        """App Service の値はバックエンドの値を上書きしないこと"""
        backend = FakeBackend(
            backend={"clientId": "c1"},
            app_service=[
                {
                    "client_id": "c-app",
                    "authority": f"https://login.microsoftonline.com/{TENANT_GUID}",
                }
            ],
        )
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(), http_client=client).resolve()
        self.assertEqual(config.client_id, "c1")
        self.assertEqual(config.tenant_id, TENANT_GUID)
        self.assertEqual(config.authority, f"https://login.microsoftonline.com/{TENANT_GUID}")

    async def test_app_service_empty_list(self):
        backend = FakeBackend(app_service=[])
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(build_client_id="c2"), http_client=client).resolve()
        self.assertEqual(config.client_id, "c2")

    async def test_injected_config_precedes_build_env(self):
        set_injected_config({"AZURE_CLIENT_ID": "c-injected", "API_SCOPES": ["api://x/.default"]})
        backend = FakeBackend()
        async with backend.client() as client:
            config = await ConfigResolver(make_settings(build_client_id="c2"), http_client=client).resolve()
        self.assertEqual(config.client_id, "c-injected")
        self.assertEqual(config.api_scopes, ("api://x/.default",))

    async def test_injected_config_from_file(self):
        """実行時設定ファイル（YAML）から注入設定を読み込むこと"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "runtime.yaml"
            path.write_text("AZURE_CLIENT_ID: c-file\nAZURE_TENANT_ID: t-file\n", encoding="utf-8")
            backend = FakeBackend()
            async with backend.client() as client:
                config = await ConfigResolver(
                    make_settings(runtime_config_file=path),
                    http_client=client,
                ).resolve()
        self.assertEqual(config.client_id, "c-file")
        self.assertEqual(config.authority, "https://login.microsoftonline.com/t-file")

    async def test_injected_config_from_json_string(self):
        settings = make_settings(runtime_config='{"AZURE_CLIENT_ID": "c-json"}')
        source = InjectedConfigSource(settings)
        fragment = await source.load()
        self.assertEqual(fragment.client_id, "c-json")

    async def test_invalid_injected_json_is_ignored(self):
        source = InjectedConfigSource(make_settings(runtime_config="{not json"))
        fragment = await source.load()
        self.assertTrue(fragment.is_empty)

    async def test_resolution_is_cached(self):
        """2回目以降はソースを再取得しないこと"""
        backend = FakeBackend(backend={"clientId": "c1"})
        async with backend.client() as client:
            resolver = ConfigResolver(make_settings(), http_client=client)
            first = await resolver.resolve()
            second = await resolver.resolve()
        self.assertIs(first, second)
        self.assertEqual(backend.calls["/getMsalConfig"], 1)

    async def test_clear_cache_forces_new_resolution(self):
        backend = FakeBackend(backend={"clientId": "c1"})
        async with backend.client() as client:
            resolver = ConfigResolver(make_settings(), http_client=client)
            await resolver.resolve()
            backend.backend = {"clientId": "c3"}
            resolver.clear_cache()
            self.assertIsNone(resolver.cached)
            config = await resolver.resolve()
        self.assertEqual(config.client_id, "c3")
        self.assertEqual(backend.calls["/getMsalConfig"], 2)

    async def test_concurrent_resolutions_are_coalesced(self):
        """並行した初回解決は1回の取得にまとめられること"""

        class SlowSource(ConfigSource):
            name = "slow"

            def __init__(self):
                self.calls = 0

            async def load(self):
                self.calls += 1
                await asyncio.sleep(0.01)
                return ConfigFragment.build(self.name, client_id="c1")

        source = SlowSource()
        resolver = ConfigResolver(make_settings(), sources=[source])
        results = await asyncio.gather(*(resolver.resolve() for _ in range(5)))
        self.assertEqual(source.calls, 1)
        self.assertTrue(all(result is results[0] for result in results))

    async def test_module_level_helpers(self):
        """既定リゾルバ経由のヘルパー関数"""
        resolver = ConfigResolver(
            make_settings(),
            sources=[InjectedConfigSource(make_settings(), values={"AZURE_CLIENT_ID": "c1"})],
        )
        set_default_resolver(resolver)
        self.assertIsNone(get_cached_config())
        config = await load_runtime_config()
        self.assertIs(get_cached_config(), config)
        clear_config_cache()
        self.assertIsNone(get_cached_config())
        self.assertIs(runtime_module.get_default_resolver(), resolver)


class TestAppServiceProbe(unittest.IsolatedAsyncioTestCase):
    """診断用のセッション確認"""

    async def test_probe_returns_claims(self):
        backend = FakeBackend(app_service=[{"user_id": "u"}])
        async with backend.client() as client:
            claims = await AppServiceAuthSource(client, BASE_URL).probe()
        self.assertEqual(claims, [{"user_id": "u"}])

    async def test_probe_returns_none_when_unauthenticated(self):
        backend = FakeBackend()
        async with backend.client() as client:
            self.assertIsNone(await AppServiceAuthSource(client, BASE_URL).probe())

    async def test_backend_source_non_object_payload(self):
        backend = FakeBackend(backend=["unexpected"])
        async with backend.client() as client:
            fragment = await BackendConfigSource(client, BASE_URL).load()
        self.assertTrue(fragment.is_empty)


class TestStaticClientId(unittest.TestCase):
    def tearDown(self):
        set_injected_config(None)

    def test_has_static_client_id(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertFalse(has_static_client_id(make_settings()))
            self.assertTrue(has_static_client_id(make_settings(build_client_id="c2")))
            set_injected_config({"AZURE_CLIENT_ID": "c-injected"})
            self.assertTrue(has_static_client_id(make_settings()))


if __name__ == "__main__":
    unittest.main()
