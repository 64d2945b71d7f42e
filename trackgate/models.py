"""Pydantic models for trackgate.

Provides validated configuration sections and the ban/identity records the
admission core reads and writes.
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

MAX_ADDRESS_VALUE = (1 << 128) - 1


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreBackend(str, Enum):
    """Shared key-value store backends."""

    REDIS = "redis"
    MEMORY = "memory"


class CredentialMode(str, Enum):
    """How tracker requests prove who they are."""

    PASSKEY = "passkey"
    BEARER = "bearer"


class Role(str, Enum):
    """Account roles."""

    USER = "USER"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


# --------------------------------------------------------------------------
# Records
# --------------------------------------------------------------------------


class AddressBan(BaseModel):
    """Inclusive integer range of banned network addresses."""

    id: int = Field(..., ge=1, description="Ban identifier")
    from_address: int = Field(
        ..., ge=0, le=MAX_ADDRESS_VALUE, description="First banned address"
    )
    to_address: int = Field(
        ..., ge=0, le=MAX_ADDRESS_VALUE, description="Last banned address"
    )
    reason: str | None = Field(
        default=None, max_length=255, description="Why the range was banned"
    )

    @model_validator(mode="after")
    def validate_bounds(self):
        """Ensure the range is not inverted."""
        if self.from_address > self.to_address:
            msg = "from_address must be <= to_address"
            raise ValueError(msg)
        return self

    def contains(self, value: int) -> bool:
        """Return True if ``value`` falls inside the range (both ends inclusive)."""
        return self.from_address <= value <= self.to_address


class AccountBan(BaseModel):
    """Temporal or permanent ban placed on an account."""

    id: int = Field(..., ge=1, description="Ban identifier")
    account_id: int = Field(..., ge=1, description="Banned account")
    reason: str = Field(..., min_length=5, max_length=500, description="Ban reason")
    issued_by: str = Field(..., min_length=1, description="Who issued the ban")
    issued_at: float = Field(default_factory=time.time, description="Issue time")
    expires_at: float | None = Field(
        default=None, description="Expiry time (None = permanent)"
    )
    active: bool = Field(default=True, description="False once deactivated")
    deactivated_by: str | None = Field(
        default=None, description="Who deactivated the ban ('system' for expiry)"
    )
    deactivated_at: float | None = Field(default=None, description="Deactivation time")

    @field_validator("reason")
    @classmethod
    def strip_reason(cls, v: str) -> str:
        """Reject reasons that are only whitespace."""
        if len(v.strip()) < 5:
            msg = "reason must contain at least 5 non-blank characters"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_expiry(self):
        """Ensure expiry is after issue time."""
        if self.expires_at is not None and self.expires_at <= self.issued_at:
            msg = "expires_at must be later than issued_at"
            raise ValueError(msg)
        return self

    @property
    def is_permanent(self) -> bool:
        """Return True if the ban never expires."""
        return self.expires_at is None

    def is_qualifying(self, now: float) -> bool:
        """Return True if this ban currently bans its account."""
        return self.active and (self.expires_at is None or self.expires_at > now)


class Identity(BaseModel):
    """View of an account exposed by the identity store."""

    id: int = Field(..., ge=1, description="Account identifier")
    handle: str = Field(..., min_length=1, description="Username")
    email: str | None = Field(default=None, description="Email address")
    role: Role = Field(default=Role.USER, description="Account role")
    banned: bool = Field(default=False, description="Denormalized banned flag")
    passkey: str | None = Field(default=None, description="Tracker passkey")
    password_hash: str | None = Field(
        default=None, description="Argon2 password hash", repr=False
    )


# --------------------------------------------------------------------------
# Configuration
# --------------------------------------------------------------------------


class StoreConfig(BaseModel):
    """Shared store and persistent record store configuration."""

    backend: StoreBackend = Field(
        default=StoreBackend.REDIS,
        description="Key-value store backend: redis or memory",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    key_prefix: str = Field(
        default="trackgate:",
        description="Prefix applied to every key written to the shared store",
    )
    operation_timeout: float = Field(
        default=1.0,
        gt=0.0,
        le=30.0,
        description="Upper bound in seconds for a single store round-trip",
    )
    lock_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=300.0,
        description="Seconds a per-account lock is held before it auto-releases",
    )
    lock_blocking_timeout: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        description="Seconds to wait for a per-account lock before giving up",
    )
    ban_store_path: str | None = Field(
        default=None,
        description="JSON file backing the ban store (None = in-memory only)",
    )
    identity_store_path: str | None = Field(
        default=None,
        description="JSON file backing the identity store (None = in-memory only)",
    )


class CredentialConfig(BaseModel):
    """Bearer credential configuration."""

    signing_secret: str | None = Field(
        default=None,
        description="Pre-shared HMAC secret (at least 32 characters)",
        repr=False,
    )
    algorithm: str = Field(
        default="HS256",
        description="Signature algorithm: HS256, HS384 or HS512",
    )
    lifetime: float = Field(
        default=900.0,
        ge=60.0,
        le=30 * 86400.0,
        description="Credential lifetime in seconds",
    )
    issuer: str = Field(default="trackgate", description="iss claim")
    audience: str = Field(default="tracker-users", description="aud claim")
    leeway: float = Field(
        default=0.0,
        ge=0.0,
        le=300.0,
        description="Clock skew tolerated when checking expiry, in seconds",
    )

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Validate signature algorithm."""
        allowed = {"HS256", "HS384", "HS512"}
        v_upper = v.upper()
        if v_upper not in allowed:
            msg = f"algorithm must be one of {sorted(allowed)}, got {v}"
            raise ValueError(msg)
        return v_upper


class LockoutConfig(BaseModel):
    """Brute-force lockout configuration."""

    max_attempts: int = Field(
        default=5,
        ge=1,
        le=1000,
        description="Failed logins from one address before it is locked",
    )
    window: float = Field(
        default=900.0,
        ge=1.0,
        le=86400.0,
        description="Counting window in seconds, fixed from the first failure",
    )


class BanConfig(BaseModel):
    """Ban registry configuration."""

    sweep_interval: float = Field(
        default=3600.0,
        ge=1.0,
        le=86400.0,
        description="Seconds between expired-ban sweeps",
    )
    account_cache_ttl: float = Field(
        default=300.0,
        ge=0.0,
        le=3600.0,
        description="TTL of cached account ban verdicts (0 disables the cache)",
    )
    max_ban_days: int = Field(
        default=365,
        ge=1,
        le=3650,
        description="Longest temporary ban accepted by ban_account_for_days",
    )


class AdmissionConfig(BaseModel):
    """Admission pipeline configuration."""

    credential_mode: CredentialMode = Field(
        default=CredentialMode.PASSKEY,
        description="How tracker requests authenticate: passkey or bearer",
    )
    fail_open_on_malformed_address: bool = Field(
        default=True,
        description="Treat unparseable client addresses as not banned",
    )
    trust_proxy: bool = Field(
        default=False,
        description="Take the client address from X-Forwarded-For",
    )


class TrackerConfig(BaseModel):
    """Tracker front end configuration."""

    host: str = Field(default="0.0.0.0", description="Bind address")  # nosec B104
    port: int = Field(default=6969, ge=1, le=65535, description="Bind port")
    announce_interval: int = Field(
        default=1800,
        ge=60,
        le=86400,
        description="Announce interval returned to clients, in seconds",
    )
    peer_timeout: float = Field(
        default=3600.0,
        ge=60.0,
        description="Seconds before a silent peer is dropped",
    )


class ObservabilityConfig(BaseModel):
    """Logging configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(default=None, description="Log file path")
    structured_logging: bool = Field(
        default=False,
        description="Write JSON lines to the log file",
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Attach a correlation ID to log records",
    )


class Config(BaseModel):
    """Main configuration model."""

    store: StoreConfig = Field(
        default_factory=StoreConfig,
        description="Store configuration",
    )
    credentials: CredentialConfig = Field(
        default_factory=CredentialConfig,
        description="Credential configuration",
    )
    lockout: LockoutConfig = Field(
        default_factory=LockoutConfig,
        description="Lockout configuration",
    )
    bans: BanConfig = Field(
        default_factory=BanConfig,
        description="Ban registry configuration",
    )
    admission: AdmissionConfig = Field(
        default_factory=AdmissionConfig,
        description="Admission pipeline configuration",
    )
    tracker: TrackerConfig = Field(
        default_factory=TrackerConfig,
        description="Tracker front end configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )

    @model_validator(mode="after")
    def validate_config(self):
        """Validate cross-section consistency."""
        if self.admission.credential_mode == CredentialMode.BEARER and (
            not self.credentials.signing_secret
        ):
            msg = "credentials.signing_secret is required when credential_mode is bearer"
            raise ValueError(msg)
        if self.store.lock_blocking_timeout > self.store.lock_timeout:
            msg = "store.lock_blocking_timeout must not exceed store.lock_timeout"
            raise ValueError(msg)
        return self
