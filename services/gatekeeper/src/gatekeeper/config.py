from __future__ import annotations

import os
from collections.abc import Mapping

from common.utils import split_csv
from pydantic import BaseModel, Field, field_validator

DEFAULT_AUTH_SERVICE_URL = "https://wolian.cc/api/v1/validate-key"
DEFAULT_ALLOWED_ORIGINS = ("http://localhost:3000", "http://localhost:3001")


class GatewaySettings(BaseModel):
    auth_service_url: str = Field(default=DEFAULT_AUTH_SERVICE_URL, min_length=1)
    auth_timeout_seconds: float = Field(default=5.0, gt=0, le=60)
    token_cache_ttl_seconds: float = Field(default=60.0, gt=0)
    token_cache_sweep_seconds: float = Field(default=300.0, gt=0)
    allowed_origins: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    protected_prefix: str = "/api/v1/"
    cors_prefix: str = "/api"

    @field_validator("allowed_origins")
    @classmethod
    def strip_origins(cls, value: list[str]) -> list[str]:
        return [origin.strip() for origin in value if origin.strip()]

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> GatewaySettings:
        env = os.environ if environ is None else environ
        overrides: dict[str, object] = {}

        auth_url = env.get("OPEN_API_AUTH_URL", "").strip()
        if auth_url:
            overrides["auth_service_url"] = auth_url

        numeric_vars = {
            "OPEN_API_AUTH_TIMEOUT_SECONDS": "auth_timeout_seconds",
            "TOKEN_CACHE_TTL_SECONDS": "token_cache_ttl_seconds",
            "TOKEN_CACHE_SWEEP_SECONDS": "token_cache_sweep_seconds",
        }
        for variable, field_name in numeric_vars.items():
            raw = env.get(variable, "").strip()
            if not raw:
                continue
            try:
                overrides[field_name] = float(raw)
            except ValueError as exc:
                raise ValueError(f"{variable} must be a number, got {raw!r}.") from exc

        raw_origins = env.get("ALLOWED_ORIGINS")
        if raw_origins is not None:
            overrides["allowed_origins"] = split_csv(raw_origins)

        return cls(**overrides)
