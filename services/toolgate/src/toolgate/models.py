from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .settings import DEMO_USER_ID

Role = Literal["admin", "provider", "clinician", "resident", "emergency_provider", "nurse", "staff"]
ResultStatus = Literal["success", "failure", "pending"]
AuditConfirmation = Literal["auto_executed", "pending", "approved", "rejected", "expired"]


# ── Actors & resources ───────────────────────────────────


class Actor(BaseModel):
    """Authenticated identity invoking an action. Read-only for the whole request."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    role: Role
    email: str | None = None
    active: bool = True
    license_number: str | None = None
    specialty: str | None = None
    department: str | None = None

    def facts(self) -> dict[str, Any]:
        return self.model_dump()


class Resource(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)

    def facts(self) -> dict[str, Any]:
        return {**self.attributes, "type": self.type, "id": self.id}


# ── Risk & confirmation state ────────────────────────────


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    @property
    def requires_confirmation(self) -> bool:
        return self is RiskLevel.HIGH

    def escalate(self, other: RiskLevel) -> RiskLevel:
        """Monotonic: the result is never lower than self."""
        return other if other.rank > self.rank else self

    def __str__(self) -> str:
        return self.value


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    def can_become(self, target: ConfirmationStatus) -> bool:
        return target in _TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self]


_TRANSITIONS: dict[ConfirmationStatus, frozenset[ConfirmationStatus]] = {
    ConfirmationStatus.PENDING: frozenset(
        {ConfirmationStatus.APPROVED, ConfirmationStatus.REJECTED, ConfirmationStatus.EXPIRED}
    ),
    ConfirmationStatus.APPROVED: frozenset(),
    ConfirmationStatus.REJECTED: frozenset(),
    ConfirmationStatus.EXPIRED: frozenset(),
}


class PendingOperation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    operation_type: str
    tool_name: str
    actor_id: str
    patient_id: str
    args: dict[str, Any]
    risk_level: RiskLevel
    estimated_duration: str | None = None
    confirmation_status: ConfirmationStatus = ConfirmationStatus.PENDING
    created_at: datetime
    expires_at: datetime
    confirmed_by: str | None = None
    confirmed_at: datetime | None = None


# ── Invocation envelope & responses ──────────────────────


class ToolInvocationV1(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tool: str = Field(..., min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    patient_id: uuid.UUID
    user_id: str = Field(default=DEMO_USER_ID, min_length=1)
    confirmation_id: uuid.UUID | None = None
    skip_confirmation: bool = False
    agent_id: str | None = None


class ToolConfigV1(BaseModel):
    risk_level: RiskLevel
    confirmation_required: bool
    estimated_time: str
    escalations: list[str] = []


class ProposedOperationV1(BaseModel):
    tool: str
    args: dict[str, Any]
    patient_id: str
    user_id: str


class ToolSuccessV1(BaseModel):
    success: Literal[True] = True
    tool: str
    result: dict[str, Any]
    execution_time_ms: int


class ConfirmationRequiredV1(BaseModel):
    success: Literal[True] = True
    requires_confirmation: Literal[True] = True
    pending_operation_id: uuid.UUID
    expires_at: datetime
    tool_config: ToolConfigV1
    operation: ProposedOperationV1
    message: str


class ToolFailureV1(BaseModel):
    success: Literal[False] = False
    error: str
    message: str
    details: dict[str, Any] | None = None
    execution_time_ms: int


class RejectRequestV1(BaseModel):
    user_id: str = Field(default=DEMO_USER_ID, min_length=1)


# ── Chat & workflows ─────────────────────────────────────


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class ChatRequestV1(BaseModel):
    messages: list[ChatMessage] = []
    patient_id: uuid.UUID | None = None
    user_id: str = Field(default=DEMO_USER_ID, min_length=1)


class WorkflowRequestV1(BaseModel):
    user_id: str = Field(default=DEMO_USER_ID, min_length=1)
    preferred_window: Literal["1week", "2weeks", "1month"] = "2weeks"


class SessionEventV1(BaseModel):
    user_id: str = Field(..., min_length=1)
    event: Literal["login", "logout"]


# ── Audit ────────────────────────────────────────────────


class AuditEntry(BaseModel):
    """One action attempt and its outcome. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    actor_id: str | None = None
    actor_email: str | None = None
    actor_role: str | None = None
    actor_agent_id: str | None = None
    action: str
    tool_name: str | None = None
    scope_patient_id: str | None = None
    scope_resource_type: str | None = None
    scope_resource_id: str | None = None
    input_arguments: dict[str, Any] = Field(default_factory=dict)
    result_status: ResultStatus
    result_data: dict[str, Any] = Field(default_factory=dict)
    result_error_message: str | None = None
    confirmation_status: AuditConfirmation = "auto_executed"
    confirmed_by_user_id: str | None = None
    requested_at: datetime
    completed_at: datetime | None = None
    duration_ms: int | None = None


class AuditRecord(AuditEntry):
    prev_hash: str
    hash: str


class AuditQuery(BaseModel):
    action: str | None = None
    actor_role: str | None = None
    result_status: ResultStatus | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    search: str | None = None
    limit: int = Field(default=100, ge=1)
