from __future__ import annotations

from dataclasses import dataclass

from parley_service.app.artifacts import ArtifactVersionController
from parley_service.app.leases import ChatLeaseRegistry
from parley_service.app.providers.base import ModelProvider
from parley_service.app.providers.catalog import build_providers, get_enabled_provider_names
from parley_service.app.providers.manager import ProviderManager
from parley_service.app.settings import Settings
from parley_service.app.store import InMemoryChatStore
from parley_service.app.stream_store import ResumableStreamStore
from parley_service.app.tools.defaults import build_default_tool_registry
from parley_service.app.tools.registry import ToolRegistry
from parley_service.app.turn_store import InMemoryTurnStore
from parley_service.app.usage import UsageCounter
from parley_service.modules.turns.engine import TurnEngine
from parley_service.modules.turns.service import TurnsService
from parley_service.modules.turns.worker import TurnWorkerPool


@dataclass(slots=True)
class RuntimeComponents:
    store: InMemoryChatStore
    turn_store: InMemoryTurnStore
    stream_store: ResumableStreamStore
    leases: ChatLeaseRegistry
    artifacts: ArtifactVersionController
    usage: UsageCounter
    provider_manager: ProviderManager
    turns_service: TurnsService
    worker_pool: TurnWorkerPool


def build_runtime_components(
    settings: Settings,
    *,
    providers: list[ModelProvider] | None = None,
    tool_registry: ToolRegistry | None = None,
) -> RuntimeComponents:
    """런타임 구성요소를 조립해요. 테스트에서는 프로바이더와 도구를 바꿔 끼울 수 있어요."""
    if providers is None:
        enabled_providers = get_enabled_provider_names(
            settings.enabled_provider_names,
            fallback_default=settings.default_provider_name,
        )
        providers = build_providers(settings, enabled_providers=enabled_providers)
    provider_manager = ProviderManager(providers, default_provider=settings.default_provider_name)

    store = InMemoryChatStore()
    turn_store = InMemoryTurnStore(retention_seconds=settings.turn_retention_seconds)
    stream_store = ResumableStreamStore(
        retention_seconds=settings.stream_retention_seconds,
        max_lifetime_seconds=settings.stream_max_lifetime_seconds,
    )
    leases = ChatLeaseRegistry(ttl_seconds=settings.chat_lease_seconds)
    artifacts = ArtifactVersionController(store)
    usage = UsageCounter()
    if tool_registry is None:
        tool_registry = build_default_tool_registry()

    engine = TurnEngine(
        store=store,
        turn_store=turn_store,
        leases=leases,
        provider_manager=provider_manager,
        tool_registry=tool_registry,
        artifacts=artifacts,
        usage_hook=usage,
        max_steps=settings.max_steps,
        tool_timeout_seconds=settings.tool_timeout_seconds,
    )
    worker_pool = TurnWorkerPool(engine, worker_count=settings.turn_worker_count)
    turns_service = TurnsService(
        store=store,
        turn_store=turn_store,
        stream_store=stream_store,
        leases=leases,
        provider_manager=provider_manager,
        tool_registry=tool_registry,
        worker_pool=worker_pool,
        default_model=settings.default_model,
        part_flush_chars=settings.part_flush_chars,
    )

    return RuntimeComponents(
        store=store,
        turn_store=turn_store,
        stream_store=stream_store,
        leases=leases,
        artifacts=artifacts,
        usage=usage,
        provider_manager=provider_manager,
        turns_service=turns_service,
        worker_pool=worker_pool,
    )
