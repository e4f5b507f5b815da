from __future__ import annotations

from parley_service.modules.common.deps import (
    get_artifacts,
    get_settings,
    get_store,
    get_turns_service,
    get_worker_pool,
    require_auth,
)

__all__ = [
    "get_artifacts",
    "get_settings",
    "get_store",
    "get_turns_service",
    "get_worker_pool",
    "require_auth",
]
