from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from parley_service.app.providers.base import ModelProvider
from parley_service.app.providers.http_bridge_adapter import HttpBridgeProvider
from parley_service.app.providers.scripted_adapter import ScriptedProvider
from libs.common.errors import ConfigurationError


class ProviderRuntimeSettings(Protocol):
    default_provider_name: str
    enabled_provider_names: list[str]
    model_bridge_base_url: str
    model_bridge_token: str
    model_bridge_timeout_seconds: float


# 프로바이더 팩토리 테이블이에요. 새 프로바이더는 여기에만 추가하면 돼요.
_ProviderFactory = Callable[["ProviderRuntimeSettings"], ModelProvider]

_PROVIDER_FACTORIES: dict[str, _ProviderFactory] = {
    "scripted": lambda s: ScriptedProvider(name="scripted"),
    "http-bridge": lambda s: HttpBridgeProvider(
        name="http-bridge",
        base_url=s.model_bridge_base_url,
        token=s.model_bridge_token,
        timeout_seconds=s.model_bridge_timeout_seconds,
        provider_hint="모델 브리지",
    ),
}

KNOWN_PROVIDER_NAMES: frozenset[str] = frozenset(_PROVIDER_FACTORIES.keys())


def get_enabled_provider_names(names: list[str], *, fallback_default: str) -> list[str]:
    resolved = names if names else [fallback_default]

    unknown = [p for p in resolved if p not in KNOWN_PROVIDER_NAMES]
    if unknown:
        unknown_text = ", ".join(sorted(unknown))
        known_text = ", ".join(sorted(KNOWN_PROVIDER_NAMES))
        raise ConfigurationError(
            f"알 수 없는 프로바이더가 설정됐어요: {unknown_text}. 지원 목록: {known_text}"
        )

    return resolved


def build_providers(
    settings: ProviderRuntimeSettings,
    *,
    enabled_providers: list[str] | None = None,
) -> list[ModelProvider]:
    active_providers = enabled_providers or get_enabled_provider_names(
        settings.enabled_provider_names,
        fallback_default=settings.default_provider_name,
    )
    return [_PROVIDER_FACTORIES[name](settings) for name in active_providers]
