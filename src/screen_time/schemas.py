from datetime import datetime
from enum import Enum
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, StrictInt, field_validator


class SourceKind(str, Enum):
    TASK = "task"
    GIG = "gig"
    MANUAL = "manual"


class GrantStatus(str, Enum):
    APPLIED = "APPLIED"
    FAILED = "FAILED"
    EXPIRED = "EXPIRED"


class GrantType(str, Enum):
    GRANT = "GRANT"
    REVOKE = "REVOKE"


class GrantSource(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: SourceKind
    id: str = Field(min_length=1)


class GrantCommand(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), min_length=1)
    child_id: str = Field(min_length=1)
    minutes: StrictInt
    source: GrantSource
    idempotency_key: str | None = Field(default=None, min_length=1)
    ttl_sec: int | None = Field(default=None, ge=0)
    submitted_at: datetime | None = None

    @field_validator("minutes")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("minutes must be non-zero")
        return value

    @property
    def effective_key(self) -> str:
        return self.idempotency_key or self.id

    @property
    def grant_type(self) -> GrantType:
        return GrantType.GRANT if self.minutes > 0 else GrantType.REVOKE


class Delivery(BaseModel):
    command: GrantCommand
    attempt: int
    provider_attempts: int = 0
    worker_id: str


class ProviderOutcome(BaseModel):
    success: bool
    provider_ref: str | None = None
    error: str | None = None
    retryable: bool = False


class GrantRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    child_id: str
    type: GrantType
    minutes_delta: int
    status: GrantStatus
    provider_payload: dict | None = None
    error_message: str | None = None
    applied_at: datetime | None = None
    idempotency_key: str
    created_at: datetime | None = None

    def to_result(self) -> "GrantResult":
        ref = (self.provider_payload or {}).get("ref")
        return GrantResult(
            id=self.id,
            status=self.status,
            provider_ref=ref,
            error=self.error_message,
            applied_at=self.applied_at,
        )


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    grant_id: str
    user_id: str
    source_kind: SourceKind
    source_id: str
    reward_mode: str
    screen_minutes: int
    awarded_at: datetime


class GrantResult(BaseModel):
    id: str
    status: GrantStatus
    provider_ref: str | None = None
    error: str | None = None
    applied_at: datetime | None = None


class PendingGrant(BaseModel):
    id: str
    status: Literal["PENDING"] = "PENDING"
    submitted_at: datetime
    attempts: int = 0
    last_error: str | None = None


class ManualGrantRequest(BaseModel):
    child_id: str
    minutes_delta: int
    idempotency_key: str | None = None
    ttl_sec: int | None = None
