from __future__ import annotations

from collections import defaultdict

from libs.common.logging import get_logger

logger = get_logger("parley_service.usage")


class UsageCounter:
    """채팅/모델별 토큰 사용량을 누적하는 훅이에요. 한도 검사는 하지 않아요."""

    def __init__(self) -> None:
        self._totals: dict[tuple[str, str], dict[str, int]] = defaultdict(dict)

    def record(self, *, chat_id: str, model: str, usage: dict[str, int]) -> None:
        totals = self._totals[(chat_id, model)]
        for key, value in usage.items():
            totals[key] = totals.get(key, 0) + value
        logger.info("usage_recorded", chat_id=chat_id, model=model, **usage)

    def snapshot(self, chat_id: str) -> dict[str, dict[str, int]]:
        return {
            model: dict(totals)
            for (owner, model), totals in self._totals.items()
            if owner == chat_id
        }
