"""
Policy engine — explicit-deny-wins evaluation over a static policy table.

Each Policy names a principal matcher, an action matcher and a resource
matcher (an exact-value map of required facts, or the wildcard "*"), plus a
`when(actor, resource, context)` predicate.  Every policy is evaluated; the
decisions are then combined:

  - any Deny overrides every Allow
  - otherwise at least one Allow authorizes
  - otherwise Deny (no applicable policy)

An exception raised while evaluating any policy turns the whole decision into
a Deny carrying the diagnostic.  Evaluation order never changes the result.

DEFAULT_POLICIES is the only place in the service that branches on role or
risk level.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Actor, Resource, RiskLevel

__all__ = [
    "Effect",
    "WILDCARD",
    "Policy",
    "PolicyDecision",
    "PolicyEngine",
    "DEFAULT_POLICIES",
    "READ_ACTIONS",
    "CLINICAL_ACTIONS",
    "DEFAULT_DENY_REASON",
]

WILDCARD = "*"
DEFAULT_DENY_REASON = "No applicable policies found - access denied by default"

Predicate = Callable[[Actor, Resource, Mapping[str, Any]], bool]


class Effect(str, Enum):
    ALLOW = "Allow"
    DENY = "Deny"


def _always(_actor: Actor, _resource: Resource, _context: Mapping[str, Any]) -> bool:
    return True


def _matches(matcher: Mapping[str, Any] | str, facts: Mapping[str, Any]) -> bool:
    """Exact-value match; a set/frozenset value means "one of"."""
    if matcher == WILDCARD:
        return True
    for key, expected in matcher.items():  # type: ignore[union-attr]
        value = facts.get(key)
        if isinstance(expected, (set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


@dataclass(frozen=True)
class Policy:
    id: str
    effect: Effect
    description: str = ""
    principal: Mapping[str, Any] | str = WILDCARD
    actions: frozenset[str] | str = WILDCARD
    resource: Mapping[str, Any] | str = WILDCARD
    when: Predicate = _always

    def applies(self, actor: Actor, action: str, resource: Resource) -> bool:
        if self.actions != WILDCARD and action not in self.actions:
            return False
        return _matches(self.principal, actor.facts()) and _matches(self.resource, resource.facts())


@dataclass(frozen=True)
class PolicyDecision:
    effect: Effect
    reasons: list[str] = field(default_factory=list)
    policy_ids: list[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.effect is Effect.ALLOW


class PolicyEngine:
    def __init__(self, policies: Iterable[Policy] | None = None) -> None:
        self._policies: tuple[Policy, ...] = tuple(DEFAULT_POLICIES if policies is None else policies)
        ids = [p.id for p in self._policies]
        if len(ids) != len(set(ids)):
            raise ValueError("policy ids must be unique")

    @property
    def policies(self) -> tuple[Policy, ...]:
        return self._policies

    def is_authorized(
        self,
        actor: Actor,
        action: str,
        resource: Resource,
        context: Mapping[str, Any] | None = None,
    ) -> PolicyDecision:
        ctx: Mapping[str, Any] = context or {}
        allows: list[Policy] = []
        denies: list[Policy] = []
        errors: list[str] = []

        for policy in self._policies:
            try:
                if policy.applies(actor, action, resource) and policy.when(actor, resource, ctx):
                    (denies if policy.effect is Effect.DENY else allows).append(policy)
            except Exception as exc:
                errors.append(f"Policy evaluation failed in {policy.id}: {exc}")

        if errors:
            return PolicyDecision(Effect.DENY, errors, [])
        if denies:
            return PolicyDecision(
                Effect.DENY,
                [f"Policy {p.id} denies access: {p.description}" for p in denies],
                [p.id for p in denies],
            )
        if allows:
            return PolicyDecision(
                Effect.ALLOW,
                [f"Policy {p.id} allows access" for p in allows],
                [p.id for p in allows],
            )
        return PolicyDecision(Effect.DENY, [DEFAULT_DENY_REASON], [])


# ── Default policy table ─────────────────────────────────

READ_ACTIONS = frozenset(
    {
        "get_patient_timeline",
        "alert_triage",
        "follow_up_analysis",
        "comprehensive_workflow",
        "ai_chat",
    }
)
CLINICAL_ACTIONS = READ_ACTIONS | frozenset(
    {
        "draft_progress_note",
        "create_appointment",
        "update_medication",
        "mark_lab_reviewed",
    }
)

LICENSED_ROLES = frozenset({"provider", "clinician", "resident"})
CONTROLLED_SUBSTANCE_SPECIALTIES = frozenset(
    {"pain_management", "psychiatry", "anesthesiology", "oncology"}
)


def _is_licensed(actor: Actor) -> bool:
    return actor.role in LICENSED_ROLES and bool(actor.license_number)


def _on_care_team(actor: Actor, resource: Resource) -> bool:
    attrs = resource.attributes
    return attrs.get("assigned_provider") == actor.id or actor.id in (attrs.get("care_team") or ())


def _is_controlled(ctx: Mapping[str, Any]) -> bool:
    # Either the caller's args or the stored record may carry the flag.
    return any((ctx.get(key) or {}).get("is_controlled") is True for key in ("args", "record"))


DEFAULT_POLICIES: tuple[Policy, ...] = (
    Policy(
        id="inactive-actor-deny",
        effect=Effect.DENY,
        description="inactive accounts may not act",
        principal={"active": False},
    ),
    Policy(
        id="admin-full-access",
        effect=Effect.ALLOW,
        principal={"role": "admin", "active": True},
    ),
    Policy(
        id="licensed-clinician-tools",
        effect=Effect.ALLOW,
        principal={"role": LICENSED_ROLES, "active": True},
        actions=CLINICAL_ACTIONS,
        resource={"type": "Patient"},
        when=lambda actor, _resource, _ctx: _is_licensed(actor),
    ),
    Policy(
        id="assigned-provider-access",
        effect=Effect.ALLOW,
        principal={"role": frozenset({"provider", "clinician"}), "active": True},
        actions=CLINICAL_ACTIONS,
        resource={"type": "Patient"},
        when=lambda actor, resource, _ctx: _on_care_team(actor, resource),
    ),
    Policy(
        id="emergency-read-access",
        effect=Effect.ALLOW,
        principal={"role": "emergency_provider", "department": "emergency", "active": True},
        actions=READ_ACTIONS,
        resource={"type": "Patient"},
    ),
    Policy(
        id="high-risk-tool-restriction",
        effect=Effect.DENY,
        description="high-risk operations require an admin or a licensed provider",
        when=lambda actor, _resource, ctx: (
            ctx.get("risk_level") == RiskLevel.HIGH
            and actor.role != "admin"
            and not _is_licensed(actor)
        ),
    ),
    Policy(
        id="vip-patient-restriction",
        effect=Effect.DENY,
        description="VIP records are limited to admins and the care team",
        resource={"type": "Patient", "privacy_level": "vip"},
        when=lambda actor, resource, _ctx: actor.role != "admin" and not _on_care_team(actor, resource),
    ),
    Policy(
        id="controlled-substance-restriction",
        effect=Effect.DENY,
        description="controlled substances require a qualifying specialty",
        actions=frozenset({"update_medication"}),
        when=lambda actor, _resource, ctx: (
            _is_controlled(ctx)
            and actor.specialty not in CONTROLLED_SUBSTANCE_SPECIALTIES
        ),
    ),
    Policy(
        id="confirmation-bypass-guard",
        effect=Effect.DENY,
        description="operations requiring confirmation cannot skip it",
        when=lambda _actor, _resource, ctx: bool(
            ctx.get("skip_confirmation")
            and ctx.get("confirmation_required")
            and not ctx.get("has_confirmation")
        ),
    ),
)
