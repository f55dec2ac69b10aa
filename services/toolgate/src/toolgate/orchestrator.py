"""
Confirmation orchestrator — the tool invocation protocol.

    received → validated → authorized → needs_confirmation
                                      → executing → success
                           (any step) → failure

Phase 1 (propose): a tool whose risk assessment requires confirmation, called
without `confirmation_id` and without `skip_confirmation`, is stored as a
pending operation and never executed.

Phase 2 (confirm & execute): a follow-up request carrying `confirmation_id`
must match the stored proposal (tool, patient, args) and win the atomic
consume before the tool runs.

Every call to `handle()` or `reject()` appends exactly one audit entry.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import ValidationError

from .audit import AuditLog, sanitize_arguments, session_entry
from .errors import (
    ExecutionFailure,
    Forbidden,
    InvalidOrExpiredConfirmation,
    InvalidRequest,
    NotFound,
    ToolgateError,
)
from .identity import IdentityProvider
from .logging import bind_request_context, clear_request_context, get_logger
from .metrics import METRICS
from .models import (
    Actor,
    AuditEntry,
    ConfirmationRequiredV1,
    ConfirmationStatus,
    ProposedOperationV1,
    Resource,
    ToolConfigV1,
    ToolFailureV1,
    ToolInvocationV1,
    ToolSuccessV1,
)
from .pending_store import PendingOperationStore
from .policy import PolicyDecision, PolicyEngine
from .registry import RiskAssessment, ToolRegistry
from .settings import AGENT_ID, EXPOSE_POLICY_REASONS
from .store import DataStore
from .tools import ToolContext, ToolOutput

__all__ = [
    "InvocationOutcome",
    "Orchestrator",
    "UNKNOWN_ACTION",
    "action_name",
    "enforce",
    "patient_resource",
]

logger = get_logger("toolgate.orchestrator")

UNKNOWN_ACTION = "ai_tool.unknown"


def action_name(tool: str) -> str:
    return f"ai_tool.{tool}"


def _utc_now() -> datetime:
    return datetime.now(UTC)


def patient_resource(store: DataStore, patient_id: str) -> Resource:
    """Policy facts for a patient; collaborator errors surface as ExecutionFailure."""
    try:
        row = store.fetch_one("patients", {"id": patient_id})
    except Exception as exc:
        raise ExecutionFailure(f"patient lookup failed: {exc}") from exc
    if row is None:
        raise NotFound(f"Patient not found: {patient_id}", {"patient_id": patient_id})
    return Resource(
        type="Patient",
        id=patient_id,
        attributes={
            "assigned_provider": row.get("assigned_provider"),
            "care_team": list(row.get("care_team") or []),
            "privacy_level": row.get("privacy_level") or "standard",
        },
    )


def enforce(
    policy: PolicyEngine,
    actor: Actor,
    action: str,
    resource: Resource,
    context: Mapping[str, Any] | None = None,
) -> PolicyDecision:
    """Evaluate and raise Forbidden on Deny. Reasons are always logged."""
    decision = policy.is_authorized(actor, action, resource, context)
    METRICS.inc("toolgate_policy_decision_total", labels={"effect": decision.effect.value})
    if not decision.allowed:
        logger.warning(
            "policy_denied",
            action=action,
            actor_id=actor.id,
            reasons=decision.reasons,
            policy_ids=decision.policy_ids,
        )
        raise Forbidden(decision.reasons)
    return decision


@dataclass(frozen=True)
class InvocationOutcome:
    status_code: int
    body: dict[str, Any]


@dataclass
class _Attempt:
    """What is known about the request so far; feeds the terminal audit entry."""

    requested_at: datetime
    started: float = field(default_factory=time.perf_counter)
    action: str = UNKNOWN_ACTION
    tool_name: str | None = None
    user_id: str | None = None
    actor: Actor | None = None
    agent_id: str | None = None
    patient_id: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)
    confirmation_status: str = "auto_executed"
    confirmed_by: str | None = None

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class Orchestrator:
    def __init__(
        self,
        *,
        registry: ToolRegistry,
        policy: PolicyEngine,
        pending: PendingOperationStore,
        audit: AuditLog,
        identity: IdentityProvider,
        store: DataStore,
        clock: Callable[[], datetime] = _utc_now,
        agent_id: str = AGENT_ID,
        expose_policy_reasons: bool = EXPOSE_POLICY_REASONS,
    ) -> None:
        self.registry = registry
        self.policy = policy
        self.pending = pending
        self.audit = audit
        self.identity = identity
        self.store = store
        self.clock = clock
        self._agent_id = agent_id
        self._expose_reasons = expose_policy_reasons

    # ── Entry points ─────────────────────────────────────

    def handle(self, payload: Any) -> InvocationOutcome:
        METRICS.inc("toolgate_invoke_total")
        METRICS.gauge_inc("toolgate_invoke_in_flight")
        attempt = _Attempt(requested_at=self.clock())
        try:
            with METRICS.timer("toolgate_invoke_duration_seconds"):
                outcome = self._guarded(lambda: self._invoke(payload, attempt), attempt)
            outcome_label = "pending" if outcome.body.get("requires_confirmation") else (
                "success" if outcome.body.get("success") else "failure"
            )
            METRICS.inc("toolgate_invoke_outcome_total", labels={"outcome": outcome_label})
            return outcome
        finally:
            METRICS.gauge_dec("toolgate_invoke_in_flight")
            clear_request_context()

    def reject(self, pending_id: str, user_id: str) -> InvocationOutcome:
        attempt = _Attempt(requested_at=self.clock(), user_id=user_id)
        try:
            return self._guarded(lambda: self._reject(pending_id, user_id, attempt), attempt)
        finally:
            clear_request_context()

    def record_session(self, user_id: str, event: Literal["login", "logout"]) -> InvocationOutcome:
        """Login / logout marker for the audit trail."""
        actor = self.identity.get_actor(user_id)
        if actor is None:
            METRICS.inc("toolgate_error_total", labels={"code": Forbidden.code})
            body = ToolFailureV1(error=Forbidden.code, message=f"Unknown actor: {user_id}", execution_time_ms=0)
            return InvocationOutcome(Forbidden.status_code, body.model_dump(mode="json"))
        entry = session_entry(actor, event, self.clock())
        try:
            self.audit.append(entry)
        except Exception:
            METRICS.inc("toolgate_audit_failure_total")
            logger.error("audit_append_failed", action=entry.action, event_id=str(entry.event_id), exc_info=True)
        logger.info("session_recorded", user_id=actor.id, session_event=event)
        return InvocationOutcome(200, {"success": True, "event": event, "user_id": actor.id})

    def run_authorized(
        self,
        *,
        action: str,
        user_id: str,
        work: Callable[[Actor], ToolOutput],
        patient_id: str | None = None,
        resource: Resource | None = None,
        arguments: dict[str, Any] | None = None,
    ) -> InvocationOutcome:
        """
        Authorize `action` for the user, run `work`, and audit the attempt.

        Backs the workflow, chat and audit viewer endpoints; each call writes
        one audit entry.
        """
        attempt = _Attempt(
            requested_at=self.clock(),
            action=action,
            tool_name=action,
            user_id=user_id,
            patient_id=patient_id,
            arguments=dict(arguments or {}),
        )

        def step() -> InvocationOutcome:
            bind_request_context(action=action, user_id=user_id, patient_id=patient_id)
            actor = self.identity.get_actor(user_id)
            if actor is None:
                raise Forbidden([f"Unknown actor: {user_id}"])
            attempt.actor = actor
            target = resource or patient_resource(self.store, patient_id or "")
            enforce(self.policy, actor, action, target, {"args": attempt.arguments})
            try:
                output = work(actor)
            except ToolgateError:
                raise
            except Exception as exc:
                raise ExecutionFailure(str(exc) or exc.__class__.__name__) from exc
            elapsed = attempt.elapsed_ms()
            self._record(attempt, result_status="success", result_data={"summary": output.summary})
            return InvocationOutcome(
                200,
                {"success": True, "action": action, "result": output.result, "execution_time_ms": elapsed},
            )

        try:
            return self._guarded(step, attempt)
        finally:
            clear_request_context()

    # ── Protocol ─────────────────────────────────────────

    def _guarded(self, step: Callable[[], InvocationOutcome], attempt: _Attempt) -> InvocationOutcome:
        try:
            return step()
        except ToolgateError as exc:
            return self._fail(attempt, exc)
        except Exception as exc:
            logger.exception("tool_unexpected_error")
            return self._fail(attempt, ExecutionFailure(str(exc) or exc.__class__.__name__))

    def _invoke(self, payload: Any, attempt: _Attempt) -> InvocationOutcome:
        # 1. envelope
        if isinstance(payload, Mapping):
            raw_user = payload.get("user_id")
            attempt.user_id = raw_user if isinstance(raw_user, str) else None
            raw_tool = payload.get("tool")
            attempt.tool_name = raw_tool if isinstance(raw_tool, str) else None
        try:
            req = ToolInvocationV1.model_validate(payload)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in e["loc"]) or "body" for e in exc.errors()})
            raise InvalidRequest("Invalid request envelope", {"fields": fields}) from None

        patient_id = str(req.patient_id)
        attempt.user_id = req.user_id
        attempt.patient_id = patient_id
        attempt.agent_id = req.agent_id or self._agent_id
        attempt.arguments = dict(req.args)
        bind_request_context(tool=req.tool, user_id=req.user_id, patient_id=patient_id)

        # 2. tool
        descriptor = self.registry.resolve(req.tool)
        attempt.action = action_name(descriptor.name)

        # 3. arguments
        args = descriptor.parse_args(req.args, req.patient_id)
        args_json = args.model_dump(mode="json")
        attempt.arguments = args_json

        # 4. actor + stored facts + risk + policy
        actor = self.identity.get_actor(req.user_id)
        if actor is None:
            raise Forbidden([f"Unknown actor: {req.user_id}"])
        attempt.actor = actor
        resource = patient_resource(self.store, patient_id)
        try:
            facts = descriptor.tool.stored_facts(args, self.store)
        except Exception as exc:
            raise ExecutionFailure(f"record lookup failed: {exc}") from exc
        assessment = self.registry.assess(descriptor, args, facts)
        enforce(
            self.policy,
            actor,
            descriptor.name,
            resource,
            {
                "tool": descriptor.name,
                "risk_level": assessment.risk_level,
                "confirmation_required": assessment.confirmation_required,
                "escalations": assessment.escalations,
                "skip_confirmation": req.skip_confirmation,
                "has_confirmation": req.confirmation_id is not None,
                "args": args_json,
                "record": facts,
            },
        )

        # 5. propose
        if assessment.confirmation_required and req.confirmation_id is None and not req.skip_confirmation:
            return self._propose(req, descriptor.name, descriptor.estimated_duration, assessment, args_json, attempt)

        # 6. confirm
        if req.confirmation_id is not None:
            self._confirm(req.confirmation_id, descriptor.name, patient_id, args_json, actor, attempt)

        # 7. execute
        ctx = ToolContext(store=self.store, clock=self.clock, actor=actor)
        try:
            output = descriptor.tool.execute(args, ctx)
        except ToolgateError:
            raise
        except Exception as exc:
            raise ExecutionFailure(str(exc) or exc.__class__.__name__) from exc

        # 8. success
        elapsed = attempt.elapsed_ms()
        logger.info("tool_executed", duration_ms=elapsed, confirmation_status=attempt.confirmation_status)
        self._record(attempt, result_status="success", result_data={"summary": output.summary})
        body = ToolSuccessV1(tool=descriptor.name, result=output.result, execution_time_ms=elapsed)
        return InvocationOutcome(200, body.model_dump(mode="json"))

    def _propose(
        self,
        req: ToolInvocationV1,
        tool: str,
        estimated: str,
        assessment: RiskAssessment,
        args_json: dict[str, Any],
        attempt: _Attempt,
    ) -> InvocationOutcome:
        op = self.pending.create(
            tool_name=tool,
            actor_id=req.user_id,
            patient_id=str(req.patient_id),
            args=args_json,
            risk_level=assessment.risk_level,
            estimated_duration=estimated,
        )
        METRICS.inc("toolgate_pending_created_total")
        attempt.confirmation_status = ConfirmationStatus.PENDING.value
        logger.info("tool_proposed", pending_operation_id=str(op.id), risk_level=assessment.risk_level.value)
        self._record(
            attempt,
            result_status="pending",
            result_data={
                "pending_operation_id": str(op.id),
                "expires_at": op.expires_at.isoformat(),
                "risk_level": assessment.risk_level.value,
            },
        )
        body = ConfirmationRequiredV1(
            pending_operation_id=op.id,
            expires_at=op.expires_at,
            tool_config=ToolConfigV1(
                risk_level=assessment.risk_level,
                confirmation_required=True,
                estimated_time=estimated,
                escalations=assessment.escalations,
            ),
            operation=ProposedOperationV1(
                tool=tool,
                args=args_json,
                patient_id=str(req.patient_id),
                user_id=req.user_id,
            ),
            message=f"{tool} requires confirmation before execution",
        )
        return InvocationOutcome(200, body.model_dump(mode="json"))

    def _confirm(
        self,
        confirmation_id: uuid.UUID,
        tool: str,
        patient_id: str,
        args_json: dict[str, Any],
        actor: Actor,
        attempt: _Attempt,
    ) -> None:
        cid = str(confirmation_id)
        proposal = self.pending.get(cid)
        if proposal is None or (proposal.tool_name, proposal.patient_id, proposal.args) != (tool, patient_id, args_json):
            METRICS.inc("toolgate_confirmation_total", labels={"result": "mismatch"})
            # Overdue proposals are marked expired even on a mismatch.
            if proposal is not None and self.pending.expire_if_due(cid):
                attempt.confirmation_status = ConfirmationStatus.EXPIRED.value
            raise InvalidOrExpiredConfirmation(cid)

        consumed = self.pending.validate_and_consume(cid, actor.id)
        if consumed is None:
            METRICS.inc("toolgate_confirmation_total", labels={"result": "refused"})
            current = self.pending.get(cid)
            if current is not None and current.confirmation_status is ConfirmationStatus.EXPIRED:
                attempt.confirmation_status = ConfirmationStatus.EXPIRED.value
            raise InvalidOrExpiredConfirmation(cid)

        METRICS.inc("toolgate_confirmation_total", labels={"result": "approved"})
        attempt.confirmation_status = ConfirmationStatus.APPROVED.value
        attempt.confirmed_by = consumed.confirmed_by

    def _reject(self, pending_id: str, user_id: str, attempt: _Attempt) -> InvocationOutcome:
        proposal = self.pending.get(pending_id)
        if proposal is not None:
            attempt.action = action_name(proposal.tool_name)
            attempt.tool_name = proposal.tool_name
            attempt.patient_id = proposal.patient_id
            attempt.arguments = proposal.args
        bind_request_context(tool=attempt.tool_name, user_id=user_id, patient_id=attempt.patient_id)

        actor = self.identity.get_actor(user_id)
        if actor is None:
            raise Forbidden([f"Unknown actor: {user_id}"])
        attempt.actor = actor

        rejected = self.pending.reject(pending_id, actor.id)
        if rejected is None:
            METRICS.inc("toolgate_confirmation_total", labels={"result": "refused"})
            raise InvalidOrExpiredConfirmation(pending_id)

        METRICS.inc("toolgate_confirmation_total", labels={"result": "rejected"})
        attempt.confirmation_status = ConfirmationStatus.REJECTED.value
        attempt.confirmed_by = actor.id
        logger.info("tool_rejected", pending_operation_id=pending_id)
        self._record(
            attempt,
            result_status="success",
            result_data={"pending_operation_id": pending_id, "status": "rejected"},
        )
        return InvocationOutcome(
            200,
            {
                "success": True,
                "pending_operation_id": pending_id,
                "confirmation_status": ConfirmationStatus.REJECTED.value,
            },
        )

    # ── Terminal outcomes ────────────────────────────────

    def _fail(self, attempt: _Attempt, exc: ToolgateError) -> InvocationOutcome:
        METRICS.inc("toolgate_error_total", labels={"code": exc.code})
        elapsed = attempt.elapsed_ms()
        logger.warning("tool_failed", error=exc.code, message=exc.message, duration_ms=elapsed)

        message = exc.message
        if isinstance(exc, Forbidden):
            message = f"{exc.message}: {'; '.join(exc.reasons)}"
        self._record(attempt, result_status="failure", error_message=message)

        details: dict[str, Any] | None = dict(exc.details) or None
        if isinstance(exc, Forbidden) and not self._expose_reasons:
            details = None
        body = ToolFailureV1(error=exc.code, message=exc.message, details=details, execution_time_ms=elapsed)
        return InvocationOutcome(exc.status_code, body.model_dump(mode="json"))

    def _record(
        self,
        attempt: _Attempt,
        *,
        result_status: str,
        result_data: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        actor = attempt.actor
        entry = AuditEntry(
            actor_id=actor.id if actor else attempt.user_id,
            actor_email=actor.email if actor else None,
            actor_role=actor.role if actor else None,
            actor_agent_id=attempt.agent_id,
            action=attempt.action,
            tool_name=attempt.tool_name,
            scope_patient_id=attempt.patient_id,
            scope_resource_type="Patient" if attempt.patient_id else None,
            scope_resource_id=attempt.patient_id,
            input_arguments=sanitize_arguments(attempt.arguments),
            result_status=result_status,
            result_data=result_data or {},
            result_error_message=error_message,
            confirmation_status=attempt.confirmation_status,
            confirmed_by_user_id=attempt.confirmed_by,
            requested_at=attempt.requested_at,
            completed_at=self.clock(),
            duration_ms=attempt.elapsed_ms(),
        )
        try:
            self.audit.append(entry)
        except Exception:
            METRICS.inc("toolgate_audit_failure_total")
            logger.error("audit_append_failed", action=entry.action, event_id=str(entry.event_id), exc_info=True)
