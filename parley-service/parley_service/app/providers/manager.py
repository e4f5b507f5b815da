from __future__ import annotations

from parley_service.app.providers.base import ModelProvider
from libs.common.errors import ValidationError


class ProviderManager:
    """모델 식별자를 프로바이더와 프로바이더 내부 모델 이름으로 풀어요.

    ``"http-bridge:gpt-5"``처럼 접두사가 있으면 그 프로바이더를 쓰고, 없으면
    기본 프로바이더에 모델 이름을 그대로 넘겨요.
    """

    def __init__(self, providers: list[ModelProvider], *, default_provider: str) -> None:
        self._providers = {provider.name: provider for provider in providers}
        self._default_provider = default_provider

    def resolve(self, model_id: str) -> tuple[ModelProvider, str]:
        provider_name, sep, model_name = model_id.partition(":")
        if not sep:
            provider_name, model_name = self._default_provider, model_id
        provider = self._providers.get(provider_name)
        if provider is None:
            supported = ", ".join(sorted(self._providers.keys()))
            raise ValidationError(
                f"지원하지 않는 프로바이더예요: `{provider_name}`. 지원 목록: {supported}"
            )
        if not model_name:
            raise ValidationError("모델 이름이 비어 있어요.")
        return provider, model_name

    def names(self) -> list[str]:
        return sorted(self._providers.keys())
