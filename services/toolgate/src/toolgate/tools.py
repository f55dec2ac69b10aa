"""
Tool implementations.

The tool set is closed: each class carries its own argument model and an
`execute(args, ctx)` body that talks only to the data store in `ctx`.  The
registry (registry.py) is the single dispatch table over these classes.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import Actor
from .store import DataStore

__all__ = [
    "ToolArgs",
    "ToolContext",
    "ToolOutput",
    "Tool",
    "GetPatientTimeline",
    "DraftProgressNote",
    "CreateAppointment",
    "UpdateMedication",
    "MarkLabReviewed",
    "TOOL_CLASSES",
]


@dataclass(frozen=True)
class ToolContext:
    store: DataStore
    clock: Callable[[], datetime]
    actor: Actor


@dataclass(frozen=True)
class ToolOutput:
    result: dict[str, Any]
    summary: str


class ToolArgs(BaseModel):
    model_config = ConfigDict(extra="forbid")

    patient_id: uuid.UUID


class Tool:
    name: ClassVar[str]
    description: ClassVar[str]
    args_model: ClassVar[type[ToolArgs]]

    def stored_facts(self, args: Any, store: DataStore) -> dict[str, Any]:
        """Risk-relevant flags read from the stored record the call targets."""
        return {}

    def execute(self, args: Any, ctx: ToolContext) -> ToolOutput:
        raise NotImplementedError


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


# ── get_patient_timeline ─────────────────────────────────

Timeframe = Literal["7days", "30days", "90days", "1year"]
TimelineType = Literal["encounters", "labs", "medications", "appointments"]

TIMEFRAME_DAYS: dict[str, int] = {"7days": 7, "30days": 30, "90days": 90, "1year": 365}

# type -> (table, date column, bounded above)
TIMELINE_SOURCES: dict[str, tuple[str, str, bool]] = {
    "encounters": ("encounters", "encounter_date", True),
    "labs": ("lab_results", "result_date", True),
    "medications": ("medications", "prescribed_date", False),
    "appointments": ("appointments", "scheduled_date", False),
}


class TimelineArgs(ToolArgs):
    timeframe: Timeframe = "30days"
    include_types: list[TimelineType] | None = None


class GetPatientTimeline(Tool):
    name = "get_patient_timeline"
    description = "Chronological encounters, labs, medications and appointments for a patient."
    args_model = TimelineArgs

    def execute(self, args: TimelineArgs, ctx: ToolContext) -> ToolOutput:
        # Day-aligned window: same day + unchanged store -> identical payload.
        now = ctx.clock()
        end = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
        start = end - timedelta(days=TIMEFRAME_DAYS[args.timeframe])
        patient_id = str(args.patient_id)

        wanted = args.include_types or list(TIMELINE_SOURCES)
        timeline: dict[str, list[dict[str, Any]]] = {}
        for kind in TIMELINE_SOURCES:
            if kind not in wanted:
                continue
            table, column, bounded = TIMELINE_SOURCES[kind]
            timeline[kind] = ctx.store.fetch_all(
                table,
                {"patient_id": patient_id},
                date_column=column,
                since=start,
                until=end if bounded else None,
                order_by=column,
                descending=True,
            )

        total = sum(len(items) for items in timeline.values())
        return ToolOutput(
            result={
                "patient_id": patient_id,
                "timeframe": args.timeframe,
                "date_range": {"start": start.isoformat(), "end": end.isoformat()},
                "timeline_by_type": timeline,
                "total_items": total,
            },
            summary=f"Retrieved {args.timeframe} timeline with {len(timeline)} data types ({total} items)",
        )


# ── draft_progress_note ──────────────────────────────────

DRAFT_FOOTER = "---\nAI-generated draft. Review and complete before finalizing."

NOTE_TEMPLATES: dict[str, str] = {
    "soap": (
        "SOAP Note - {date}\n\n"
        "SUBJECTIVE:\n{context_or_pending}\n\n"
        "OBJECTIVE:\n- Vital signs: [To be recorded]\n- Physical exam: [To be completed]\n\n"
        "ASSESSMENT:\n- [Clinical assessment to be documented]\n\n"
        "PLAN:\n- [Treatment plan to be outlined]\n\n"
    ),
    "brief": (
        "Brief Note - {date}\n\n"
        "Patient Status: [To be documented]\n"
        "Key Issues: {context_or_pending}\n"
        "Actions Taken: [To be recorded]\n"
        "Follow-up: [To be scheduled]\n\n"
    ),
    "detailed": (
        "Detailed Progress Note - {date}\n\n"
        "CHIEF COMPLAINT:\n{context_or_pending}\n\n"
        "HISTORY OF PRESENT ILLNESS:\n[To be completed]\n\n"
        "REVIEW OF SYSTEMS:\n[To be documented]\n\n"
        "PHYSICAL EXAMINATION:\n[To be completed]\n\n"
        "ASSESSMENT AND PLAN:\n[To be outlined]\n\n"
    ),
}


class DraftNoteArgs(ToolArgs):
    encounter_id: uuid.UUID | None = None
    template: Literal["soap", "brief", "detailed"] = "soap"
    context: str | None = None


def render_note(template: str, context: str | None, when: datetime) -> str:
    body = NOTE_TEMPLATES[template].format(
        date=when.strftime("%Y-%m-%d"),
        context_or_pending=context or "[To be completed by clinician]",
    )
    return body + DRAFT_FOOTER


class DraftProgressNote(Tool):
    name = "draft_progress_note"
    description = "Create a non-authoritative draft progress note from a template."
    args_model = DraftNoteArgs

    def execute(self, args: DraftNoteArgs, ctx: ToolContext) -> ToolOutput:
        now = ctx.clock()
        note_id = str(uuid.uuid4())
        content = render_note(args.template, args.context, now)
        ctx.store.insert(
            "notes",
            {
                "id": note_id,
                "patient_id": str(args.patient_id),
                "encounter_id": str(args.encounter_id) if args.encounter_id else None,
                "author_id": ctx.actor.id,
                "content": content,
                "status": "draft",
                "ai_generated": True,
                "created_at": now,
            },
        )
        return ToolOutput(
            result={
                "note_id": note_id,
                "patient_id": str(args.patient_id),
                "encounter_id": str(args.encounter_id) if args.encounter_id else None,
                "template": args.template,
                "status": "draft",
                "content_preview": content[:200] + "...",
                "ai_generated": True,
            },
            summary=f"Draft {args.template.upper()} note created",
        )


# ── create_appointment ───────────────────────────────────

DEFAULT_APPOINTMENT_LEAD = timedelta(days=7)


class AppointmentArgs(ToolArgs):
    provider_id: uuid.UUID | None = None
    appointment_type: str = Field(..., min_length=1)
    preferred_date: datetime | None = None
    duration_minutes: int = Field(default=30, ge=15, le=180)
    reason: str | None = None
    emergency: bool = False


class CreateAppointment(Tool):
    name = "create_appointment"
    description = "Schedule an appointment for the patient."
    args_model = AppointmentArgs

    def execute(self, args: AppointmentArgs, ctx: ToolContext) -> ToolOutput:
        now = ctx.clock()
        appointment_id = str(uuid.uuid4())
        scheduled = args.preferred_date or now + DEFAULT_APPOINTMENT_LEAD
        provider_id = str(args.provider_id) if args.provider_id else None
        ctx.store.insert(
            "appointments",
            {
                "id": appointment_id,
                "patient_id": str(args.patient_id),
                "provider_id": provider_id,
                "scheduled_date": scheduled,
                "duration_minutes": args.duration_minutes,
                "type": args.appointment_type,
                "reason": args.reason,
                "emergency": args.emergency,
                "status": "scheduled",
                "created_by": ctx.actor.id,
                "created_by_ai": True,
                "created_at": now,
            },
        )
        return ToolOutput(
            result={
                "appointment_id": appointment_id,
                "patient_id": str(args.patient_id),
                "provider_id": provider_id,
                "scheduled_date": scheduled.isoformat(),
                "duration_minutes": args.duration_minutes,
                "type": args.appointment_type,
                "status": "scheduled",
            },
            summary=f"{args.appointment_type} appointment scheduled for {scheduled:%Y-%m-%d}",
        )


# ── update_medication ────────────────────────────────────


class MedicationArgs(ToolArgs):
    medication_id: uuid.UUID
    dosage: str | None = Field(default=None, min_length=1)
    frequency: str | None = Field(default=None, min_length=1)
    status: Literal["active", "on_hold", "discontinued"] | None = None
    is_controlled: bool = False
    reason: str | None = None

    @model_validator(mode="after")
    def _requires_change(self) -> MedicationArgs:
        if self.dosage is None and self.frequency is None and self.status is None:
            raise ValueError("at least one of dosage, frequency or status must change")
        return self

    def changes(self) -> dict[str, Any]:
        return {
            k: v
            for k, v in (("dosage", self.dosage), ("frequency", self.frequency), ("status", self.status))
            if v is not None
        }


class UpdateMedication(Tool):
    name = "update_medication"
    description = "Change dosage, frequency or status of an existing medication."
    args_model = MedicationArgs

    def stored_facts(self, args: MedicationArgs, store: DataStore) -> dict[str, Any]:
        # A missing row leaves execute() to report it.
        row = store.fetch_one("medications", {"id": str(args.medication_id), "patient_id": str(args.patient_id)})
        if row is None:
            return {}
        return {"is_controlled": row.get("is_controlled") is True}

    def execute(self, args: MedicationArgs, ctx: ToolContext) -> ToolOutput:
        scope = {"id": str(args.medication_id), "patient_id": str(args.patient_id)}
        current = ctx.store.fetch_one("medications", scope)
        if current is None:
            raise LookupError(f"medication {args.medication_id} not found for patient")

        changes = args.changes()
        ctx.store.update(
            "medications",
            scope,
            {**changes, "updated_by": ctx.actor.id, "updated_at": ctx.clock()},
        )
        previous = {k: _iso(current.get(k)) for k in changes}
        name = current.get("name") or current.get("medication_name") or "medication"
        return ToolOutput(
            result={
                "medication_id": str(args.medication_id),
                "patient_id": str(args.patient_id),
                "previous": previous,
                "changes": changes,
                "status": "updated",
            },
            summary=f"Updated {name}: {', '.join(sorted(changes))}",
        )


# ── mark_lab_reviewed ────────────────────────────────────


class LabReviewArgs(ToolArgs):
    lab_id: uuid.UUID
    review_notes: str | None = None
    critical_value: bool = False


class MarkLabReviewed(Tool):
    name = "mark_lab_reviewed"
    description = "Record that a lab result was reviewed by the acting clinician."
    args_model = LabReviewArgs

    def execute(self, args: LabReviewArgs, ctx: ToolContext) -> ToolOutput:
        scope = {"id": str(args.lab_id), "patient_id": str(args.patient_id)}
        lab = ctx.store.fetch_one("lab_results", scope)
        if lab is None:
            raise LookupError(f"lab result {args.lab_id} not found for patient")

        reviewed_at = ctx.clock()
        ctx.store.update(
            "lab_results",
            scope,
            {
                "reviewed": True,
                "reviewed_by": ctx.actor.id,
                "reviewed_at": reviewed_at,
                "review_notes": args.review_notes,
            },
        )
        test_name = lab.get("test_name") or "lab result"
        return ToolOutput(
            result={
                "lab_id": str(args.lab_id),
                "patient_id": str(args.patient_id),
                "test_name": test_name,
                "reviewed_by": ctx.actor.id,
                "reviewed_at": reviewed_at.isoformat(),
                "critical_value": args.critical_value,
            },
            summary=f"{test_name} marked reviewed",
        )


TOOL_CLASSES: tuple[type[Tool], ...] = (
    GetPatientTimeline,
    DraftProgressNote,
    CreateAppointment,
    UpdateMedication,
    MarkLabReviewed,
)
