"""
EMR Toolgate — Locust performance benchmark suite.

Scenarios:
 1. read_tool     — get_patient_timeline (auto-executed, one audit write)
 2. propose       — create_appointment without confirmation (pending record in Redis)
 3. confirm       — propose then confirm (atomic consume + write)
 4. denied        — unknown actor (policy deny path)
 5. healthz       — readiness check (Postgres + Redis round-trip)

Usage:
    # Headless run
    locust -f benchmarks/locustfile.py --headless -u 20 -r 5 --run-time 30s -H http://localhost:8000

    # Interactive Web UI
    locust -f benchmarks/locustfile.py -H http://localhost:8000
    # then open http://localhost:8089

Environment:
    BENCH_PATIENT_ID   seeded patient id (defaults to the demo patient)
    BENCH_USER_ID      actor id (defaults to the demo admin)

Requirements:
    pip install -e ".[bench]"
"""
from __future__ import annotations

import os

from locust import HttpUser, between, task

PATIENT_ID = os.environ.get("BENCH_PATIENT_ID", "6f1c2a4e-8b3d-4c1e-9a7f-2d5e8b1c4a10")
USER_ID = os.environ.get("BENCH_USER_ID", "demo-user-123")

APPOINTMENT_ARGS = {
    "appointment_type": "follow-up",
    "duration_minutes": 30,
    "reason": "Benchmark follow-up",
}


def _invocation(tool: str, args: dict[str, object], user_id: str = USER_ID, **extra: object) -> dict[str, object]:
    """Build a /tools/invoke JSON body."""
    return {"tool": tool, "args": args, "patient_id": PATIENT_ID, "user_id": user_id, **extra}


class ToolgateUser(HttpUser):
    """Simulates a mixed co-pilot workload against the Toolgate."""

    wait_time = between(0.1, 0.5)

    # ── Read path ────────────────────────────────────────

    @task(5)
    def read_tool(self) -> None:
        self.client.post(
            "/tools/invoke",
            json=_invocation("get_patient_timeline", {"timeframe": "30days"}),
            name="/tools/invoke [read]",
        )

    # ── Confirmation path ────────────────────────────────

    @task(2)
    def propose(self) -> None:
        self.client.post(
            "/tools/invoke",
            json=_invocation("create_appointment", APPOINTMENT_ARGS),
            name="/tools/invoke [propose]",
        )

    @task(2)
    def confirm(self) -> None:
        """Propose, then confirm with the returned pending_operation_id."""
        with self.client.post(
            "/tools/invoke",
            json=_invocation("create_appointment", APPOINTMENT_ARGS),
            name="/tools/invoke [propose]",
            catch_response=True,
        ) as resp:
            pending_id = resp.json().get("pending_operation_id") if resp.ok else None
            if pending_id is None:
                resp.failure("no pending_operation_id in proposal")
                return
        self.client.post(
            "/tools/invoke",
            json=_invocation("create_appointment", APPOINTMENT_ARGS, confirmation_id=pending_id),
            name="/tools/invoke [confirm]",
        )

    # ── Deny path ────────────────────────────────────────

    @task(1)
    def denied(self) -> None:
        with self.client.post(
            "/tools/invoke",
            json=_invocation("get_patient_timeline", {}, user_id="bench-unknown-actor"),
            name="/tools/invoke [denied]",
            catch_response=True,
        ) as resp:
            if resp.status_code == 403:
                resp.success()

    # ── Health check ─────────────────────────────────────

    @task(1)
    def healthz(self) -> None:
        self.client.get("/healthz", name="/healthz")
