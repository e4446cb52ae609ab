"""Settings loader for the payroll backend."""
from __future__ import annotations

import json
import re
from decimal import Decimal
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

MAX_GATEWAY_CONCURRENCY = 16
MAX_GATEWAY_ATTEMPTS = 5
MAX_SESSION_TTL_SECONDS = 365 * 24 * 60 * 60


class PayrollSettings(BaseSettings):
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8080)
    api_root_path: str = Field(default="")
    api_version: str = Field(default="1.0.0")
    allowed_origins: Annotated[List[str], NoDecode] = Field(default_factory=lambda: ["http://localhost:3000"])
    rate_limit_window_seconds: int = Field(default=15 * 60)
    rate_limit_max_requests: int = Field(default=100)
    upload_max_bytes: int = Field(default=10 * 1024 * 1024)
    require_auth: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    auth_domain: str = Field(default="BAX Authentication", min_length=1, max_length=128)
    challenge_ttl_seconds: int = Field(default=300)
    session_ttl_hours: Decimal = Field(default=Decimal("24"))
    jwt_algorithm: Literal["HS256", "HS384", "HS512"] = Field(default="HS256")

    jwt_secret_name: str = Field(default="payroll/jwt")
    external_api_secret_name: str = Field(default="payroll/external-api")
    secret_backend: Literal["static", "file", "aws"] = Field(default="file")
    secrets_path: Path = Field(default=Path("/app/data/secrets.json"))
    secrets_inline: Optional[str] = Field(default=None)
    secret_cache_seconds: int = Field(default=300)
    aws_region: str = Field(default="us-east-1")

    ledger_backend: Literal["local", "s3"] = Field(default="local")
    ledger_root: Path = Field(default=Path("/app/data/ledger"))
    ledger_namespace: str = Field(default="transactions")
    s3_bucket_name: Optional[str] = Field(default=None)
    storage_timeout_seconds: float = Field(default=10.0)

    gateway_url: Optional[str] = Field(default=None)
    gateway_timeout_seconds: float = Field(default=15.0)
    gateway_dry_run: bool = Field(default=True)
    gateway_max_concurrency: int = Field(default=8)
    gateway_max_attempts: int = Field(default=1)
    gateway_retry_backoff_seconds: float = Field(default=0.5)

    model_config = SettingsConfigDict(
        env_prefix="PAYROLL_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value):  # type: ignore[override]
        if value is None:
            return []
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            parts = re.split(r"[\s,]+", stripped)
            return [part for part in parts if part]
        return value

    @field_validator(
        "api_port",
        "rate_limit_window_seconds",
        "rate_limit_max_requests",
        "upload_max_bytes",
        "challenge_ttl_seconds",
        "secret_cache_seconds",
        "gateway_max_concurrency",
        "gateway_max_attempts",
    )
    @classmethod
    def validate_positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator(
        "storage_timeout_seconds",
        "gateway_timeout_seconds",
    )
    @classmethod
    def validate_positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Value must be positive")
        return value

    @field_validator("gateway_retry_backoff_seconds")
    @classmethod
    def validate_backoff(cls, value: float) -> float:
        if value < 0:
            raise ValueError("gateway_retry_backoff_seconds must not be negative")
        return value

    @field_validator("session_ttl_hours", mode="before")
    @classmethod
    def coerce_decimal(cls, value):  # type: ignore[override]
        if isinstance(value, Decimal):
            return value
        try:
            return Decimal(str(value))
        except Exception as exc:
            raise ValueError(f"Invalid decimal value: {value}") from exc

    @field_validator("session_ttl_hours")
    @classmethod
    def validate_session_ttl(cls, value: Decimal) -> Decimal:
        if not value.is_finite() or value <= 0:
            raise ValueError("session_ttl_hours must be a positive, finite number")
        return value

    @field_validator("ledger_namespace")
    @classmethod
    def normalize_namespace(cls, value: str) -> str:
        candidate = value.strip().strip("/")
        if not candidate:
            raise ValueError("ledger_namespace must not be empty")
        return candidate

    @model_validator(mode="after")
    def validate_backends(self) -> "PayrollSettings":
        if self.ledger_backend == "s3" and not self.s3_bucket_name:
            raise ValueError("PAYROLL_S3_BUCKET_NAME must be set when PAYROLL_LEDGER_BACKEND is s3")
        if not 1 <= self.session_ttl_seconds <= MAX_SESSION_TTL_SECONDS:
            raise ValueError(
                f"session_ttl_hours must resolve to between 1 second and {MAX_SESSION_TTL_SECONDS} seconds"
            )
        if self.gateway_max_concurrency > MAX_GATEWAY_CONCURRENCY:
            self.gateway_max_concurrency = MAX_GATEWAY_CONCURRENCY
        if self.gateway_max_attempts > MAX_GATEWAY_ATTEMPTS:
            self.gateway_max_attempts = MAX_GATEWAY_ATTEMPTS
        return self

    @property
    def session_ttl_seconds(self) -> int:
        return int(self.session_ttl_hours * 3600)
