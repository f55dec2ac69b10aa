"""
Invocation protocol end to end against in-memory collaborators:
propose → confirm → execute, error taxonomy, and the one-audit-entry rule.
"""

import uuid

import pytest

from helpers import (
    APPOINTMENT_ARGS,
    CONTROLLED_MEDICATION_ID,
    LAB_ID,
    MEDICATION_ID,
    MISSING_PATIENT_ID,
    PATIENT_ID,
    VIP_PATIENT_ID,
    build_harness,
    make_invocation,
)
from toolgate.audit import verify_chain
from toolgate.metrics import METRICS
from toolgate.orchestrator import UNKNOWN_ACTION

# ── Direct execution ─────────────────────────────────────


def test_low_risk_tool_executes_without_pending():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("get_patient_timeline"))
    assert out.status_code == 200
    assert out.body["success"] is True
    assert out.body["tool"] == "get_patient_timeline"
    assert "requires_confirmation" not in out.body
    assert out.body["result"]["total_items"] >= 1
    assert h.pending_count() == 0

    (record,) = h.audit.records
    assert record.action == "ai_tool.get_patient_timeline"
    assert record.result_status == "success"
    assert record.confirmation_status == "auto_executed"
    assert record.actor_id == "u1"
    assert record.actor_role == "admin"
    assert record.actor_agent_id == "emr-assistant"
    assert record.scope_patient_id == PATIENT_ID
    assert record.result_data["summary"].startswith("Retrieved 30days timeline")


def test_draft_note_executes_directly_and_writes_draft():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("draft_progress_note", args={"template": "brief"}))
    assert out.body["success"] is True
    assert out.body["result"]["status"] == "draft"
    assert len(h.store.tables["notes"]) == 1
    assert h.pending_count() == 0


def test_timeline_is_idempotent():
    h = build_harness()
    first = h.orchestrator.handle(make_invocation(args={"timeframe": "90days"})).body["result"]
    second = h.orchestrator.handle(make_invocation(args={"timeframe": "90days"})).body["result"]
    assert first == second


# ── Two-phase confirmation ───────────────────────────────


def test_confirmation_required_tool_is_proposed_not_executed():
    h = build_harness()
    before = h.store.snapshot()
    out = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS))

    assert out.status_code == 200
    body = out.body
    assert body["success"] is True
    assert body["requires_confirmation"] is True
    assert uuid.UUID(body["pending_operation_id"])
    assert body["tool_config"] == {
        "risk_level": "medium",
        "confirmation_required": True,
        "estimated_time": "2-3s",
        "escalations": [],
    }
    assert body["operation"]["tool"] == "create_appointment"
    assert body["operation"]["patient_id"] == PATIENT_ID
    assert body["operation"]["user_id"] == "u1"
    assert h.store.snapshot() == before
    assert h.pending_count() == 1

    (record,) = h.audit.records
    assert record.result_status == "pending"
    assert record.confirmation_status == "pending"
    assert record.result_data["pending_operation_id"] == body["pending_operation_id"]


def test_confirm_then_execute():
    h = build_harness()
    proposal = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body

    out = h.orchestrator.handle(
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=proposal["pending_operation_id"])
    )
    assert out.status_code == 200
    assert out.body["success"] is True
    assert out.body["result"]["status"] == "scheduled"
    assert out.body["result"]["appointment_id"]
    assert len(h.store.tables["appointments"]) == 1

    last = h.audit.records[-1]
    assert last.result_status == "success"
    assert last.confirmation_status == "approved"
    assert last.confirmed_by_user_id == "u1"


def test_second_confirm_fails():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    confirm = make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=pid)
    assert h.orchestrator.handle(confirm).body["success"] is True

    again = h.orchestrator.handle(confirm)
    assert again.status_code == 400
    assert again.body["success"] is False
    assert again.body["error"] == "InvalidOrExpiredConfirmation"
    assert len(h.store.tables["appointments"]) == 1


def test_confirm_after_ttl_is_expired():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    h.clock.advance(minutes=61)

    out = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=pid))
    assert out.body == {
        "success": False,
        "error": "InvalidOrExpiredConfirmation",
        "message": "Invalid or expired confirmation",
        "details": {"confirmation_id": pid},
        "execution_time_ms": out.body["execution_time_ms"],
    }
    assert h.store.tables["appointments"] == []
    assert h.pending.get(pid).confirmation_status.value == "expired"
    last = h.audit.records[-1]
    assert last.result_status == "failure"
    assert last.confirmation_status == "expired"


def test_confirm_with_different_args_is_refused_and_not_consumed():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    tampered = {**APPOINTMENT_ARGS, "duration_minutes": 120}
    out = h.orchestrator.handle(make_invocation("create_appointment", args=tampered, confirmation_id=pid))
    assert out.body["error"] == "InvalidOrExpiredConfirmation"
    assert h.pending.get(pid).confirmation_status.value == "pending"
    assert METRICS.get("toolgate_confirmation_total", labels={"result": "mismatch"}) == 1


def test_mismatched_confirm_after_ttl_marks_expired():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    h.clock.advance(minutes=61)

    tampered = {**APPOINTMENT_ARGS, "duration_minutes": 120}
    out = h.orchestrator.handle(make_invocation("create_appointment", args=tampered, confirmation_id=pid))
    assert out.body["error"] == "InvalidOrExpiredConfirmation"
    assert h.pending.get(pid).confirmation_status.value == "expired"
    assert h.audit.records[-1].confirmation_status == "expired"
    assert h.store.tables["appointments"] == []


def test_confirm_by_other_actor_is_refused():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    out = h.orchestrator.handle(
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=pid, user_id="dr-smith")
    )
    assert out.body["error"] == "InvalidOrExpiredConfirmation"
    assert h.store.tables["appointments"] == []


def test_unknown_confirmation_id():
    h = build_harness()
    out = h.orchestrator.handle(
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=str(uuid.uuid4()))
    )
    assert out.body["error"] == "InvalidOrExpiredConfirmation"


def test_skip_confirmation_cannot_bypass_write():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS, skip_confirmation=True))
    assert out.status_code == 403
    assert out.body["error"] == "Forbidden"
    assert h.store.tables["appointments"] == []
    assert h.pending_count() == 0


def test_skip_confirmation_allowed_for_read_tools():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("get_patient_timeline", skip_confirmation=True))
    assert out.body["success"] is True


def test_escalated_lab_review_reports_high_risk():
    h = build_harness()
    out = h.orchestrator.handle(
        make_invocation("mark_lab_reviewed", args={"lab_id": LAB_ID, "critical_value": True})
    )
    assert out.body["requires_confirmation"] is True
    assert out.body["tool_config"]["risk_level"] == "high"
    assert out.body["tool_config"]["escalations"] == ["critical lab value"]


def test_reject_pending_operation():
    h = build_harness()
    pid = h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS)).body[
        "pending_operation_id"
    ]
    out = h.orchestrator.reject(pid, "u1")
    assert out.body == {"success": True, "pending_operation_id": pid, "confirmation_status": "rejected"}
    last = h.audit.records[-1]
    assert last.action == "ai_tool.create_appointment"
    assert last.confirmation_status == "rejected"

    confirm = h.orchestrator.handle(
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, confirmation_id=pid)
    )
    assert confirm.body["error"] == "InvalidOrExpiredConfirmation"
    assert h.orchestrator.reject(pid, "u1").status_code == 400


# ── Authorization ────────────────────────────────────────


def test_unlicensed_clinician_cannot_update_medication():
    h = build_harness()
    before = h.store.snapshot()
    out = h.orchestrator.handle(
        make_invocation(
            "update_medication",
            args={"medication_id": MEDICATION_ID, "dosage": "1000mg"},
            user_id="clin-unlicensed",
        )
    )
    assert out.status_code == 403
    assert out.body["success"] is False
    assert out.body["error"] == "Forbidden"
    assert any("high-risk-tool-restriction" in r for r in out.body["details"]["reasons"])
    assert h.store.snapshot() == before
    assert h.pending_count() == 0

    (record,) = h.audit.records
    assert record.result_status == "failure"
    assert "high-risk-tool-restriction" in record.result_error_message


def test_controlled_substance_escalates_and_needs_specialty():
    h = build_harness()
    args = {"medication_id": CONTROLLED_MEDICATION_ID, "dosage": "10mg", "is_controlled": True}

    denied = h.orchestrator.handle(make_invocation("update_medication", args=args, user_id="dr-smith"))
    assert denied.body["error"] == "Forbidden"

    proposed = h.orchestrator.handle(make_invocation("update_medication", args=args, user_id="dr-pain"))
    assert proposed.body["requires_confirmation"] is True
    assert proposed.body["tool_config"]["escalations"] == ["controlled substance"]


def test_stored_controlled_flag_applies_without_argument():
    h = build_harness()
    before = h.store.snapshot()
    args = {"medication_id": CONTROLLED_MEDICATION_ID, "dosage": "80mg"}

    denied = h.orchestrator.handle(make_invocation("update_medication", args=args, user_id="dr-smith"))
    assert denied.status_code == 403
    assert denied.body["error"] == "Forbidden"
    assert any("controlled-substance-restriction" in r for r in denied.body["details"]["reasons"])
    assert h.store.snapshot() == before
    assert h.pending_count() == 0

    proposed = h.orchestrator.handle(make_invocation("update_medication", args=args, user_id="dr-pain"))
    assert proposed.body["requires_confirmation"] is True
    assert proposed.body["tool_config"]["risk_level"] == "high"
    assert proposed.body["tool_config"]["escalations"] == ["controlled substance"]


def test_stored_uncontrolled_medication_has_no_escalation():
    h = build_harness()
    out = h.orchestrator.handle(
        make_invocation(
            "update_medication", args={"medication_id": MEDICATION_ID, "dosage": "1000mg"}, user_id="dr-smith"
        )
    )
    assert out.body["requires_confirmation"] is True
    assert out.body["tool_config"]["escalations"] == []


def test_policy_reasons_hidden_when_not_exposed():
    h = build_harness(expose_policy_reasons=False)
    out = h.orchestrator.handle(make_invocation(user_id="nurse-joy"))
    assert out.body["error"] == "Forbidden"
    assert out.body["details"] is None
    assert "denied by default" in h.audit.records[-1].result_error_message


def test_unknown_actor_forbidden():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation(user_id="ghost"))
    assert out.status_code == 403
    assert out.body["details"]["reasons"] == ["Unknown actor: ghost"]


def test_demo_actor_is_default_user():
    h = build_harness()
    payload = make_invocation()
    del payload["user_id"]
    out = h.orchestrator.handle(payload)
    assert out.body["success"] is True
    assert h.audit.records[-1].actor_id == "demo-user-123"


def test_vip_patient_restricted_to_care_team():
    h = build_harness()
    denied = h.orchestrator.handle(make_invocation(patient_id=VIP_PATIENT_ID, user_id="dr-smith"))
    assert denied.body["error"] == "Forbidden"
    allowed = h.orchestrator.handle(make_invocation(patient_id=VIP_PATIENT_ID, user_id="dr-pain"))
    assert allowed.body["success"] is True


# ── Validation errors ────────────────────────────────────


@pytest.mark.parametrize(
    "payload, fields",
    [
        ({"tool": "get_patient_timeline", "args": {}}, ["patient_id"]),
        ({"tool": "get_patient_timeline", "patient_id": "not-a-uuid"}, ["patient_id"]),
        ({"tool": "", "patient_id": PATIENT_ID}, ["tool"]),
        ({"tool": "get_patient_timeline", "patient_id": PATIENT_ID, "extra": 1}, ["extra"]),
    ],
)
def test_invalid_envelope(payload, fields):
    h = build_harness()
    out = h.orchestrator.handle(payload)
    assert out.status_code == 400
    assert out.body["error"] == "InvalidRequest"
    assert out.body["details"] == {"fields": fields}
    (record,) = h.audit.records
    assert record.action == UNKNOWN_ACTION


def test_non_object_body_is_invalid_request():
    h = build_harness()
    out = h.orchestrator.handle(None)
    assert out.body["error"] == "InvalidRequest"
    assert out.body["details"] == {"fields": ["body"]}


def test_unsupported_tool_audited_with_raw_name():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("drop_tables"))
    assert out.status_code == 400
    assert out.body["error"] == "UnsupportedTool"
    (record,) = h.audit.records
    assert record.action == UNKNOWN_ACTION
    assert record.tool_name == "drop_tables"


def test_invalid_arguments_listed():
    h = build_harness()
    out = h.orchestrator.handle(make_invocation("create_appointment", args={"duration_minutes": 5}))
    assert out.status_code == 422
    assert out.body["error"] == "InvalidArguments"
    assert out.body["details"]["fields"] == ["appointment_type", "duration_minutes"]
    assert h.audit.records[-1].action == "ai_tool.create_appointment"


# ── Execution failures ───────────────────────────────────


def test_missing_record_is_execution_failure():
    h = build_harness()
    pid = h.orchestrator.handle(
        make_invocation("update_medication", args={"medication_id": str(uuid.uuid4()), "status": "on_hold"})
    ).body["pending_operation_id"]
    out = h.orchestrator.handle(
        make_invocation(
            "update_medication",
            args={"medication_id": h.pending.get(pid).args["medication_id"], "status": "on_hold"},
            confirmation_id=pid,
        )
    )
    assert out.status_code == 502
    assert out.body["error"] == "ExecutionFailure"
    assert "not found" in out.body["message"]


def test_store_outage_is_execution_failure():
    h = build_harness()
    h.store.fail_on.add("encounters")
    out = h.orchestrator.handle(make_invocation())
    assert out.status_code == 502
    assert out.body["error"] == "ExecutionFailure"
    assert h.audit.records[-1].result_error_message == "encounters unavailable"


def test_patient_lookup_outage_is_execution_failure():
    h = build_harness()
    h.store.fail_on.add("patients")
    out = h.orchestrator.handle(make_invocation())
    assert out.body["error"] == "ExecutionFailure"


def test_unknown_patient_is_not_found_before_any_write():
    h = build_harness()
    note = h.orchestrator.handle(
        make_invocation("draft_progress_note", args={"template": "brief"}, patient_id=MISSING_PATIENT_ID)
    )
    assert note.status_code == 404
    assert note.body["error"] == "NotFound"
    assert note.body["details"] == {"patient_id": MISSING_PATIENT_ID}
    assert h.store.tables["notes"] == []

    appt = h.orchestrator.handle(
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, patient_id=MISSING_PATIENT_ID)
    )
    assert appt.status_code == 404
    assert h.pending_count() == 0
    assert h.audit.records[-1].result_status == "failure"


def test_audit_failure_does_not_change_response():
    h = build_harness()
    h.audit.fail = True
    out = h.orchestrator.handle(make_invocation())
    assert out.body["success"] is True
    assert METRICS.get("toolgate_audit_failure_total") == 1


# ── Audit invariants ─────────────────────────────────────


def test_every_request_writes_exactly_one_entry():
    h = build_harness()
    payloads = [
        make_invocation(),
        make_invocation("create_appointment", args=APPOINTMENT_ARGS),
        make_invocation("create_appointment", args=APPOINTMENT_ARGS, skip_confirmation=True),
        make_invocation("nope"),
        make_invocation("create_appointment", args={}),
        make_invocation(user_id="nurse-joy"),
        make_invocation(patient_id=MISSING_PATIENT_ID),
        {"tool": "get_patient_timeline"},
    ]
    for i, payload in enumerate(payloads, start=1):
        h.orchestrator.handle(payload)
        assert len(h.audit.records) == i


def test_audit_chain_links_entries():
    h = build_harness()
    h.orchestrator.handle(make_invocation())
    h.orchestrator.handle(make_invocation("nope"))
    assert verify_chain(h.audit.records) == (True, None)
    assert h.audit.records[1].prev_hash == h.audit.records[0].hash


def test_phi_arguments_are_minimized_in_audit():
    h = build_harness()
    h.orchestrator.handle(make_invocation("draft_progress_note", args={"context": "Patient reports chest pain"}))
    stored = h.audit.records[-1].input_arguments
    assert stored["context"].startswith("hash_")
    assert "chest pain" not in str(stored)
    assert stored["_metadata"]["phi_minimized"] is True


def test_metrics_track_outcomes():
    h = build_harness()
    h.orchestrator.handle(make_invocation())
    h.orchestrator.handle(make_invocation("create_appointment", args=APPOINTMENT_ARGS))
    h.orchestrator.handle(make_invocation("nope"))
    assert METRICS.get("toolgate_invoke_total") == 3
    assert METRICS.get("toolgate_invoke_outcome_total", labels={"outcome": "success"}) == 1
    assert METRICS.get("toolgate_invoke_outcome_total", labels={"outcome": "pending"}) == 1
    assert METRICS.get("toolgate_invoke_outcome_total", labels={"outcome": "failure"}) == 1
    assert METRICS.get("toolgate_error_total", labels={"code": "UnsupportedTool"}) == 1
    assert METRICS.get("toolgate_pending_created_total") == 1
    assert METRICS.gauge_get("toolgate_invoke_in_flight") == 0
    assert METRICS.histogram_count("toolgate_invoke_duration_seconds") == 3
