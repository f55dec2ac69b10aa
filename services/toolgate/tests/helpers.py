"""
Shared test helpers for toolgate.

  - FakeRedis (hash commands + Lua transition emulation)
  - FakeDataStore / MemoryAuditLog (in-memory collaborators)
  - FakeLlm / FakeRetriever (assistant collaborators)
  - FixedClock
  - build_harness / make_client (fully wired orchestrator + TestClient)
  - Seeded ids and payload builders

Import in tests as:
    from helpers import build_harness, make_invocation, PATIENT_ID, ...
"""

from __future__ import annotations

import copy
import threading
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from toolgate.audit import compute_hash
from toolgate.identity import IdentityProvider, demo_actor
from toolgate.llm_client import LlmError
from toolgate.models import AuditEntry, AuditQuery, AuditRecord
from toolgate.orchestrator import Orchestrator
from toolgate.pending_store import PendingOperationStore
from toolgate.policy import PolicyEngine
from toolgate.registry import ToolRegistry
from toolgate.retrieval import ContextSnippet

# ── Seeded ids ───────────────────────────────────────────

PATIENT_ID = "6f1c2a4e-8b3d-4c1e-9a7f-2d5e8b1c4a10"
VIP_PATIENT_ID = "0b7e4d2c-1a9f-4e3b-8c6d-5f2a7e9b3c21"
MISSING_PATIENT_ID = "9d8c7b6a-5f4e-4d3c-8b2a-1f0e9d8c7b6a"
MEDICATION_ID = "a1b2c3d4-e5f6-4a7b-8c9d-0e1f2a3b4c5d"
CONTROLLED_MEDICATION_ID = "b2c3d4e5-f6a7-4b8c-9d0e-1f2a3b4c5d6e"
LAB_ID = "c3d4e5f6-a7b8-4c9d-8e1f-2a3b4c5d6e7f"
CRITICAL_LAB_ID = "d4e5f6a7-b8c9-4d0e-9f2a-3b4c5d6e7f80"
ENCOUNTER_ID = "e5f6a7b8-c9d0-4e1f-8a3b-4c5d6e7f8091"

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


# ── FakeRedis ────────────────────────────────────────────


class FakeRedis:
    """Minimal stand-in for redis.Redis: HSET / HGETALL / EXPIRE + the transition and expiry scripts."""

    def __init__(self) -> None:
        self._hashes: dict[str, dict[str, str]] = {}
        self._lock = threading.Lock()
        self.ttls: dict[str, int] = {}

    def hset(self, key: str, field_: str | None = None, value: Any = None, *, mapping: dict | None = None) -> int:
        with self._lock:
            h = self._hashes.setdefault(key, {})
            items = dict(mapping or {})
            if field_ is not None:
                items[field_] = value
            for k, v in items.items():
                h[k] = str(v)
            return len(items)

    def hgetall(self, key: str) -> dict[bytes, bytes]:
        with self._lock:
            return {k.encode(): v.encode() for k, v in self._hashes.get(key, {}).items()}

    def expire(self, key: str, seconds: int) -> bool:
        self.ttls[key] = seconds
        return key in self._hashes

    def ping(self) -> bool:
        return True

    def register_script(self, script: str):
        """Return a callable that simulates the Lua script via Python (atomic under a lock)."""
        redis_ref = self

        if "HMGET" not in script:
            raise NotImplementedError("unexpected script")

        def lua_expire(keys=None, args=None, client=None):
            key = keys[0]
            (now_ms,) = args
            with redis_ref._lock:
                h = redis_ref._hashes.get(key)
                if not h or "confirmation_status" not in h:
                    return b"not_found"
                if h["confirmation_status"] != "pending":
                    return b"not_pending"
                if int(now_ms) > int(h["expires_at_ms"]):
                    h["confirmation_status"] = "expired"
                    return b"expired"
                return b"pending"

        if "confirmed_by" not in script:
            return lua_expire

        def lua_transition(keys=None, args=None, client=None):
            key = keys[0]
            actor_id, now_ms, target, now_iso = args
            with redis_ref._lock:
                h = redis_ref._hashes.get(key)
                if not h or "confirmation_status" not in h:
                    return b"not_found"
                if h.get("actor_id") != actor_id:
                    return b"actor_mismatch"
                if h["confirmation_status"] != "pending":
                    return b"not_pending"
                if int(now_ms) > int(h["expires_at_ms"]):
                    h["confirmation_status"] = "expired"
                    return b"expired"
                h.update(confirmation_status=target, confirmed_by=actor_id, confirmed_at=now_iso)
                return target.encode()

        return lua_transition

    @classmethod
    def from_url(cls, _url: str, **_kw: object) -> FakeRedis:
        return cls()


class BrokenRedis(FakeRedis):
    def ping(self) -> bool:
        raise ConnectionError("redis down")


# ── Data store ───────────────────────────────────────────


def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    return all(str(row.get(k)) == str(v) for k, v in (filters or {}).items())


class FakeDataStore:
    """In-memory DataStore; `fail_on` makes every call against that table raise."""

    def __init__(self, tables: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = copy.deepcopy(tables or {})
        self.fail_on: set[str] = set()
        self.writes = 0

    def _rows(self, table: str) -> list[dict[str, Any]]:
        if table in self.fail_on:
            raise ConnectionError(f"{table} unavailable")
        return self.tables.setdefault(table, [])

    def fetch_one(self, table, filters):
        for row in self._rows(table):
            if _matches(row, filters):
                return dict(row)
        return None

    def fetch_all(
        self,
        table,
        filters=None,
        *,
        date_column=None,
        since=None,
        until=None,
        order_by=None,
        descending=False,
        limit=None,
    ):
        rows = [dict(r) for r in self._rows(table) if _matches(r, filters)]
        if date_column and since is not None:
            rows = [r for r in rows if r.get(date_column) is not None and r[date_column] >= since]
        if date_column and until is not None:
            rows = [r for r in rows if r.get(date_column) is not None and r[date_column] <= until]
        if order_by:
            rows.sort(key=lambda r: r[order_by], reverse=descending)
        return rows[:limit] if limit is not None else rows

    def insert(self, table, row):
        self.writes += 1
        stored = dict(row)
        self._rows(table).append(stored)
        return dict(stored)

    def update(self, table, filters, changes):
        self.writes += 1
        for row in self._rows(table):
            if _matches(row, filters):
                row.update(changes)
                return dict(row)
        return None

    def snapshot(self) -> dict[str, list[dict[str, Any]]]:
        return copy.deepcopy(self.tables)


def seed_tables(now: datetime = NOW) -> dict[str, list[dict[str, Any]]]:
    return {
        "user_profiles": [
            {"id": "u1", "role": "admin", "email": "u1@emr.test", "is_active": True},
            {
                "id": "dr-smith",
                "role": "provider",
                "email": "smith@emr.test",
                "license_number": "MD-1001",
                "specialty": "internal_medicine",
                "is_active": True,
            },
            {
                "id": "dr-pain",
                "role": "provider",
                "email": "pain@emr.test",
                "license_number": "MD-2002",
                "specialty": "pain_management",
                "is_active": True,
            },
            {"id": "clin-unlicensed", "role": "clinician", "email": "clin@emr.test", "is_active": True},
            {"id": "nurse-joy", "role": "nurse", "email": "joy@emr.test", "is_active": True},
            {
                "id": "er-doc",
                "role": "emergency_provider",
                "email": "er@emr.test",
                "department": "emergency",
                "is_active": True,
            },
            {
                "id": "dr-gone",
                "role": "provider",
                "email": "gone@emr.test",
                "license_number": "MD-3003",
                "is_active": False,
            },
        ],
        "patients": [
            {
                "id": PATIENT_ID,
                "first_name": "Maria",
                "last_name": "Lopez",
                "date_of_birth": "1961-07-22",
                "gender": "female",
                "allergies": ["penicillin"],
                "assigned_provider": "dr-smith",
                "care_team": ["dr-smith"],
                "privacy_level": "standard",
            },
            {
                "id": VIP_PATIENT_ID,
                "first_name": "Victor",
                "last_name": "Ip",
                "date_of_birth": "1975-01-02",
                "assigned_provider": "dr-pain",
                "care_team": ["dr-pain"],
                "privacy_level": "vip",
            },
        ],
        "encounters": [
            {
                "id": ENCOUNTER_ID,
                "patient_id": PATIENT_ID,
                "encounter_date": now - timedelta(days=45),
                "assessment": "Type 2 diabetes",
                "plan": "Adjust metformin, follow up in 4 weeks",
            },
            {
                "id": str(uuid.UUID(int=1)),
                "patient_id": PATIENT_ID,
                "encounter_date": now - timedelta(days=200),
                "assessment": "Annual physical",
                "plan": "Routine labs",
            },
        ],
        "lab_results": [
            {
                "id": LAB_ID,
                "patient_id": PATIENT_ID,
                "test_name": "LDL Cholesterol",
                "value": "172",
                "unit": "mg/dL",
                "status": "Abnormal",
                "result_date": now - timedelta(days=3),
                "reviewed": False,
            },
            {
                "id": CRITICAL_LAB_ID,
                "patient_id": PATIENT_ID,
                "test_name": "Potassium",
                "value": "6.4",
                "unit": "mmol/L",
                "status": "Critical",
                "result_date": now - timedelta(days=1),
                "reviewed": False,
            },
            {
                "id": str(uuid.UUID(int=2)),
                "patient_id": PATIENT_ID,
                "test_name": "Hemoglobin A1c",
                "value": "6.1",
                "unit": "%",
                "status": "Normal",
                "result_date": now - timedelta(days=100),
                "reviewed": True,
            },
        ],
        "medications": [
            {
                "id": MEDICATION_ID,
                "patient_id": PATIENT_ID,
                "name": "Metformin",
                "dosage": "500mg",
                "frequency": "twice daily",
                "status": "active",
                "is_controlled": False,
                "prescribed_date": now - timedelta(days=400),
            },
            {
                "id": CONTROLLED_MEDICATION_ID,
                "patient_id": PATIENT_ID,
                "name": "Oxycodone",
                "dosage": "5mg",
                "frequency": "as needed",
                "status": "active",
                "is_controlled": True,
                "prescribed_date": now - timedelta(days=10),
            },
        ],
        "appointments": [],
        "notes": [],
    }


# ── Audit log ────────────────────────────────────────────


class MemoryAuditLog:
    """Hash-chained, append-only list; same contract as AuditLog without Postgres."""

    def __init__(self) -> None:
        self.records: list[AuditRecord] = []
        self.fail = False
        self._lock = threading.Lock()

    def append(self, entry: AuditEntry) -> AuditRecord:
        if self.fail:
            raise ConnectionError("audit store unavailable")
        with self._lock:
            prev = self.records[-1].hash if self.records else ""
            record = AuditRecord(**entry.model_dump(), prev_hash=prev, hash=compute_hash(entry, prev))
            self.records.append(record)
            return record

    def query(self, q: AuditQuery) -> list[AuditRecord]:
        rows = [
            r
            for r in reversed(self.records)
            if (q.action is None or r.action == q.action)
            and (q.actor_role is None or r.actor_role == q.actor_role)
            and (q.result_status is None or r.result_status == q.result_status)
        ]
        return rows[: q.limit]

    def chain(self) -> list[AuditRecord]:
        return list(self.records)

    def ping(self) -> None:
        if self.fail:
            raise ConnectionError("audit store unavailable")

    def actions(self) -> list[str]:
        return [r.action for r in self.records]


# ── Assistant collaborators ──────────────────────────────


class FakeLlm:
    def __init__(self, reply: str = "Patient is stable.", error: LlmError | None = None) -> None:
        self.reply = reply
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def generate(self, system_prompt, user_message, *, history=None, temperature=0.7, max_tokens=1000):
        self.calls.append({"system_prompt": system_prompt, "user_message": user_message, "history": history})
        if self.error is not None:
            raise self.error
        return self.reply

    def embed(self, text):
        return [0.0, 1.0]


class FakeRetriever:
    def __init__(self, snippets: list[ContextSnippet] | None = None) -> None:
        self.snippets = snippets if snippets is not None else [
            ContextSnippet("encounter", "Follow-up for diabetes, A1c improving", 0.91),
            ContextSnippet("lab", "LDL 172 mg/dL (Abnormal)", 0.84),
        ]
        self.queries: list[tuple[str, str]] = []

    def search(self, query, patient_id):
        self.queries.append((query, patient_id))
        return list(self.snippets)

    def recent(self, patient_id, limit=None):
        return list(self.snippets)


# ── Clock ────────────────────────────────────────────────


class FixedClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now = self.now + timedelta(**delta)


# ── Wiring ───────────────────────────────────────────────


@dataclass
class Harness:
    orchestrator: Orchestrator
    store: FakeDataStore
    audit: MemoryAuditLog
    redis: FakeRedis
    pending: PendingOperationStore
    clock: FixedClock
    llm: FakeLlm = field(default_factory=FakeLlm)
    retriever: FakeRetriever = field(default_factory=FakeRetriever)

    def pending_count(self) -> int:
        return len(self.redis._hashes)


def build_harness(*, expose_policy_reasons: bool = True, redis: FakeRedis | None = None) -> Harness:
    clock = FixedClock()
    store = FakeDataStore(seed_tables())
    audit = MemoryAuditLog()
    fake_redis = redis or FakeRedis()
    pending = PendingOperationStore(client=fake_redis, ttl_s=3600, clock=clock)
    orch = Orchestrator(
        registry=ToolRegistry(),
        policy=PolicyEngine(),
        pending=pending,
        audit=audit,
        identity=IdentityProvider(store, demo=demo_actor("demo-user-123", "demo@emr.com")),
        store=store,
        clock=clock,
        expose_policy_reasons=expose_policy_reasons,
    )
    return Harness(orch, store, audit, fake_redis, pending, clock)


def make_client(harness: Harness | None = None):
    """TestClient over create_app() wired with the harness fakes. Returns (client, harness)."""
    from fastapi.testclient import TestClient

    from toolgate.assistant import ChatAssistant
    from toolgate.main import Dependencies, create_app
    from toolgate.workflows import PatientWorkflows

    h = harness or build_harness()
    deps = Dependencies(
        orchestrator=h.orchestrator,
        assistant=ChatAssistant(h.store, h.retriever, h.llm, h.orchestrator.registry, clock=h.clock),
        workflows=PatientWorkflows(h.store, clock=h.clock),
    )
    return TestClient(create_app(deps)), h


# ── Payload builders ─────────────────────────────────────


def make_invocation(tool: str = "get_patient_timeline", **overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "tool": tool,
        "args": {},
        "patient_id": PATIENT_ID,
        "user_id": "u1",
    }
    payload.update(overrides)
    return payload


APPOINTMENT_ARGS = {
    "appointment_type": "follow-up",
    "preferred_date": "2026-03-20T09:30:00+00:00",
    "duration_minutes": 30,
    "reason": "Diabetes follow-up",
}
