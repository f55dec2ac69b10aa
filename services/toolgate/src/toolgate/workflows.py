"""
Patient management workflows: read-only triage and follow-up analysis.

Results feed the clinician's dashboard and suggest tool calls (e.g.
create_appointment); nothing here writes to the data store.
"""

from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Any

from .errors import NotFound
from .store import DataStore
from .tools import ToolOutput

__all__ = ["PatientWorkflows", "LAB_THRESHOLDS", "WORKFLOW_ACTIONS", "FOLLOW_UP_WINDOWS"]

# test name fragment -> value above which an abnormal result is critical
LAB_THRESHOLDS: tuple[tuple[str, float], ...] = (
    ("LDL", 160.0),
    ("Glucose", 140.0),
    ("Creatinine", 1.5),
)

PRIORITY_ORDER = {"critical": 0, "high": 1, "medium": 2}
FOLLOW_UP_OVERDUE = timedelta(days=30)
FOLLOW_UP_WINDOWS = {"1week": 7, "2weeks": 14, "1month": 30}
ROUTINE_FOLLOW_UP_DAYS = 90

WORKFLOW_ACTIONS = ("alert_triage", "follow_up_analysis", "comprehensive_workflow")


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


def _mentions_follow_up(encounter: dict[str, Any]) -> bool:
    return "follow" in str(encounter.get("plan") or "").lower()


def lab_priority(lab: dict[str, Any]) -> str | None:
    """None for normal results, otherwise critical | high."""
    status = str(lab.get("status") or "")
    if status not in ("Abnormal", "Critical"):
        return None
    if status == "Critical":
        return "critical"
    name = str(lab.get("test_name") or "")
    value = _as_float(lab.get("value"))
    for fragment, limit in LAB_THRESHOLDS:
        if fragment in name and value is not None and value > limit:
            return "critical"
    return "high"


class PatientWorkflows:
    def __init__(self, store: DataStore, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self._store = store
        self._clock = clock

    def _patient(self, patient_id: str) -> dict[str, Any]:
        patient = self._store.fetch_one("patients", {"id": patient_id})
        if patient is None:
            raise NotFound(f"Patient {patient_id} not found", {"patient_id": patient_id})
        return patient

    def _encounters(self, patient_id: str, limit: int | None = None) -> list[dict[str, Any]]:
        return self._store.fetch_all(
            "encounters", {"patient_id": patient_id}, order_by="encounter_date", descending=True, limit=limit
        )

    def run(self, workflow: str, patient_id: str, **params: Any) -> ToolOutput:
        if workflow == "alert_triage":
            return self.alert_triage(patient_id)
        if workflow == "follow_up_analysis":
            return self.follow_up_analysis(patient_id, params.get("preferred_window", "2weeks"))
        if workflow == "comprehensive_workflow":
            return self.comprehensive(patient_id)
        raise ValueError(f"unknown workflow: {workflow}")

    def alert_triage(self, patient_id: str) -> ToolOutput:
        patient = self._patient(patient_id)
        now = self._clock()
        alerts: list[dict[str, Any]] = []

        labs = self._store.fetch_all(
            "lab_results", {"patient_id": patient_id}, order_by="result_date", descending=True
        )
        for lab in labs:
            priority = lab_priority(lab)
            if priority is None:
                continue
            unit = f" {lab['unit']}" if lab.get("unit") else ""
            alerts.append(
                {
                    "type": "lab_alert",
                    "priority": priority,
                    "message": f"{lab.get('test_name')}: {lab.get('value')}{unit} ({lab.get('status')})",
                    "lab_id": str(lab.get("id")) if lab.get("id") is not None else None,
                    "action_required": "immediate_review" if priority == "critical" else "follow_up_needed",
                }
            )

        encounters = self._encounters(patient_id, limit=1)
        if encounters and _mentions_follow_up(encounters[0]):
            seen = _as_datetime(encounters[0].get("encounter_date"))
            if seen is not None and now - seen > FOLLOW_UP_OVERDUE:
                upcoming = self._store.fetch_all(
                    "appointments", {"patient_id": patient_id}, date_column="scheduled_date", since=seen, limit=1
                )
                if not upcoming:
                    alerts.append(
                        {
                            "type": "follow_up_overdue",
                            "priority": "medium",
                            "message": f"Follow-up planned at the {seen:%Y-%m-%d} visit has not been scheduled",
                            "encounter_id": str(encounters[0].get("id")),
                            "action_required": "schedule_follow_up",
                        }
                    )

        alerts.sort(key=lambda a: PRIORITY_ORDER[a["priority"]])
        critical = sum(1 for a in alerts if a["priority"] == "critical")
        summary = (
            f"Found {len(alerts)} alert(s); {critical} critical need immediate review"
            if alerts
            else "No alerts requiring immediate attention"
        )
        return ToolOutput(
            result={
                "type": "alert_triage",
                "patient_id": patient_id,
                "patient_name": f"{patient.get('first_name', '')} {patient.get('last_name', '')}".strip(),
                "alert_count": len(alerts),
                "critical_count": critical,
                "alerts": alerts,
                "summary": summary,
            },
            summary=summary,
        )

    def follow_up_analysis(self, patient_id: str, preferred_window: str = "2weeks") -> ToolOutput:
        patient = self._patient(patient_id)
        now = self._clock()
        recent = self._encounters(patient_id, limit=2)
        needs_follow_up = bool(recent) and _mentions_follow_up(recent[0])

        if needs_follow_up:
            days = FOLLOW_UP_WINDOWS.get(preferred_window, FOLLOW_UP_WINDOWS["2weeks"])
            focus = recent[0].get("assessment") or "current plan"
            recommendation = f"Follow-up recommended within {days} days for {focus} monitoring and medication review"
        else:
            days = ROUTINE_FOLLOW_UP_DAYS
            recommendation = "Routine follow-up recommended in 3-6 months"

        suggested_date = (now + timedelta(days=days)).replace(hour=9, minute=0, second=0, microsecond=0)
        return ToolOutput(
            result={
                "type": "follow_up_analysis",
                "patient_id": patient_id,
                "patient_name": f"{patient.get('first_name', '')} {patient.get('last_name', '')}".strip(),
                "needs_follow_up": needs_follow_up,
                "preferred_window": preferred_window,
                "recommendation": recommendation,
                "suggested_tool": {
                    "tool": "create_appointment",
                    "args": {
                        "appointment_type": "follow-up",
                        "preferred_date": suggested_date.isoformat(),
                        "duration_minutes": 30,
                        "reason": recommendation,
                    },
                },
            },
            summary=recommendation,
        )

    def comprehensive(self, patient_id: str) -> ToolOutput:
        # The two reads are independent; run them side by side and merge.
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="workflow") as pool:
            triage_f = pool.submit(self.alert_triage, patient_id)
            follow_f = pool.submit(self.follow_up_analysis, patient_id)
            triage, follow = triage_f.result(), follow_f.result()

        summary = (
            f"Comprehensive analysis: {triage.result['alert_count']} alert(s), follow-up "
            f"{'recommended' if follow.result['needs_follow_up'] else 'not immediately needed'}"
        )
        return ToolOutput(
            result={
                "type": "comprehensive_workflow",
                "patient_id": patient_id,
                "alert_triage": triage.result,
                "follow_up_analysis": follow.result,
                "summary": summary,
            },
            summary=summary,
        )
