from __future__ import annotations

import logging
from typing import Annotated

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

_INSECURE_TOKENS = {"dev-parley-token", ""}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="PARLEY_",
        extra="ignore",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    service_name: str = "parley-service"
    host: str = "0.0.0.0"
    port: int = 8090
    api_token: str = "dev-parley-token"
    log_level: str = "INFO"

    default_provider_name: str = "scripted"
    # CSV 문자열 또는 리스트 모두 허용해요
    enabled_provider_names: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["scripted"])
    default_model: str = "scripted-echo"
    model_bridge_base_url: str = ""
    model_bridge_token: str = ""
    model_bridge_timeout_seconds: float = 60.0

    turn_worker_count: int = Field(default=4, ge=1)
    max_steps: int = Field(default=5, ge=1)
    tool_timeout_seconds: float = Field(default=30.0, gt=0)
    chat_lease_seconds: float = Field(default=600.0, gt=0)
    part_flush_chars: int = Field(default=200, ge=1)

    stream_retention_seconds: float = Field(default=900.0, gt=0)
    stream_max_lifetime_seconds: float = Field(default=3600.0, gt=0)
    stream_sweep_interval_seconds: float = Field(default=30.0, gt=0)
    turn_retention_seconds: float = Field(default=3600.0, gt=0)

    @field_validator("enabled_provider_names", mode="before")
    @classmethod
    def _parse_provider_names(cls, value: object) -> list[str]:
        """환경변수에서 CSV 문자열로 들어온 경우 리스트로 변환해요."""
        if isinstance(value, str):
            parts = [p.strip() for p in value.split(",") if p.strip()]
            return parts if parts else ["scripted"]
        return value  # type: ignore[return-value]

    @model_validator(mode="after")
    def _check_stream_windows(self) -> "Settings":
        if self.stream_max_lifetime_seconds < self.stream_retention_seconds:
            raise ValueError("stream_max_lifetime_seconds는 stream_retention_seconds보다 작을 수 없어요.")
        if self.api_token in _INSECURE_TOKENS:
            logging.getLogger("parley_service.settings").warning(
                "PARLEY_API_TOKEN이 기본값이에요. 프로덕션 환경에서는 반드시 교체해야 해요."
            )
        return self


settings = Settings()
