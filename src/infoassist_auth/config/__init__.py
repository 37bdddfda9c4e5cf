"""設定管理 - 認証設定の解決とクライアント設定"""

from infoassist_auth.config.runtime import (
    BASELINE_SCOPE,
    DEFAULT_AUTHORITY,
    ConfigResolver,
    RuntimeConfig,
    clear_config_cache,
    get_cached_config,
    get_default_resolver,
    load_runtime_config,
    set_default_resolver,
)
from infoassist_auth.config.settings import AuthSettings
from infoassist_auth.config.sources import (
    AppServiceAuthSource,
    BackendConfigSource,
    BuildEnvSource,
    ConfigFragment,
    ConfigSource,
    InjectedConfigSource,
    extract_tenant_id,
    set_injected_config,
)

__all__ = [
    "AppServiceAuthSource",
    "AuthSettings",
    "BASELINE_SCOPE",
    "BackendConfigSource",
    "BuildEnvSource",
    "ConfigFragment",
    "ConfigResolver",
    "ConfigSource",
    "DEFAULT_AUTHORITY",
    "InjectedConfigSource",
    "RuntimeConfig",
    "clear_config_cache",
    "extract_tenant_id",
    "get_cached_config",
    "get_default_resolver",
    "load_runtime_config",
    "set_default_resolver",
    "set_injected_config",
]
