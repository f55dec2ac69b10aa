"""
Tool registry & risk classifier.

Static, process-wide table built once at startup: tool name -> descriptor
(argument model, static risk level, confirmation flag, display duration).
Call-time escalation is driven only by ESCALATION_RULES.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from .errors import InvalidArguments, UnsupportedTool
from .models import RiskLevel
from .tools import (
    CreateAppointment,
    DraftProgressNote,
    GetPatientTimeline,
    MarkLabReviewed,
    Tool,
    ToolArgs,
    UpdateMedication,
)

__all__ = [
    "EscalationRule",
    "ESCALATION_RULES",
    "ToolDescriptor",
    "RiskAssessment",
    "ToolRegistry",
    "DEFAULT_DESCRIPTORS",
]


@dataclass(frozen=True)
class EscalationRule:
    flag: str
    level: RiskLevel
    reason: str

    def fires(self, args: ToolArgs, facts: Mapping[str, Any] | None = None) -> bool:
        return getattr(args, self.flag, None) is True or (facts or {}).get(self.flag) is True


ESCALATION_RULES: tuple[EscalationRule, ...] = (
    EscalationRule("is_controlled", RiskLevel.HIGH, "controlled substance"),
    EscalationRule("critical_value", RiskLevel.HIGH, "critical lab value"),
    EscalationRule("emergency", RiskLevel.HIGH, "emergency flag set"),
)


@dataclass(frozen=True)
class ToolDescriptor:
    tool: Tool
    risk_level: RiskLevel
    confirmation_required: bool
    estimated_duration: str

    @property
    def name(self) -> str:
        return self.tool.name

    @property
    def args_model(self) -> type[ToolArgs]:
        return self.tool.args_model

    def parse_args(self, raw: Mapping[str, Any], patient_id: uuid.UUID) -> ToolArgs:
        """Validate raw args; `patient_id` defaults to, and must equal, the request scope."""
        data = dict(raw)
        data.setdefault("patient_id", str(patient_id))
        try:
            args = self.args_model.model_validate(data)
        except ValidationError as exc:
            fields = sorted({".".join(str(p) for p in err["loc"]) or "args" for err in exc.errors()})
            raise InvalidArguments(fields) from None
        if args.patient_id != patient_id:
            raise InvalidArguments(["patient_id"], "args.patient_id does not match the request patient_id")
        return args


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: RiskLevel
    confirmation_required: bool
    escalations: list[str] = field(default_factory=list)


DEFAULT_DESCRIPTORS: tuple[ToolDescriptor, ...] = (
    ToolDescriptor(GetPatientTimeline(), RiskLevel.LOW, False, "<2s"),
    ToolDescriptor(DraftProgressNote(), RiskLevel.LOW, False, "3-5s"),
    ToolDescriptor(CreateAppointment(), RiskLevel.MEDIUM, True, "2-3s"),
    ToolDescriptor(UpdateMedication(), RiskLevel.HIGH, True, "2-3s"),
    ToolDescriptor(MarkLabReviewed(), RiskLevel.MEDIUM, True, "<2s"),
)


class ToolRegistry:
    def __init__(
        self,
        descriptors: Iterable[ToolDescriptor] = DEFAULT_DESCRIPTORS,
        rules: Iterable[EscalationRule] = ESCALATION_RULES,
    ) -> None:
        table: dict[str, ToolDescriptor] = {}
        for d in descriptors:
            if d.name in table:
                raise ValueError(f"duplicate tool: {d.name}")
            table[d.name] = d
        self._tools = MappingProxyType(table)
        self._rules = tuple(rules)

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    def resolve(self, name: str) -> ToolDescriptor:
        try:
            return self._tools[name]
        except KeyError:
            raise UnsupportedTool(name) from None

    def assess(
        self, descriptor: ToolDescriptor, args: ToolArgs, facts: Mapping[str, Any] | None = None
    ) -> RiskAssessment:
        """Static level raised by every rule whose flag is set in the arguments or the stored record."""
        level = descriptor.risk_level
        reasons: list[str] = []
        for rule in self._rules:
            if rule.fires(args, facts):
                level = level.escalate(rule.level)
                reasons.append(rule.reason)
        return RiskAssessment(
            risk_level=level,
            confirmation_required=descriptor.confirmation_required or level.requires_confirmation,
            escalations=reasons,
        )

    def describe(self) -> list[dict[str, Any]]:
        out = []
        for d in self._tools.values():
            schema = d.args_model.model_json_schema()
            out.append(
                {
                    "name": d.name,
                    "description": d.tool.description,
                    "risk_level": d.risk_level.value,
                    "confirmation_required": d.confirmation_required,
                    "estimated_duration": d.estimated_duration,
                    "escalation_flags": [r.flag for r in self._rules if r.flag in schema.get("properties", {})],
                    "args_schema": schema,
                }
            )
        return out
