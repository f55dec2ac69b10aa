from __future__ import annotations

import hashlib
import json
import uuid
from datetime import UTC, datetime
from typing import Any, Literal

import psycopg2
import psycopg2.extras

from .models import Actor, AuditEntry, AuditQuery, AuditRecord

__all__ = [
    "AuditLog",
    "compute_hash",
    "verify_chain",
    "sanitize_arguments",
    "hash_value",
    "session_entry",
    "build_query",
    "PHI_FIELDS",
]

psycopg2.extras.register_uuid()  # type: ignore[no-untyped-call]

PHI_FIELDS = frozenset(
    {
        "first_name",
        "last_name",
        "name",
        "email",
        "phone",
        "ssn",
        "address",
        "street",
        "medical_record_number",
        "date_of_birth",
        "context",
        "reason",
        "review_notes",
    }
)

AUDIT_COLUMNS = (
    "event_id",
    "actor_id",
    "actor_email",
    "actor_role",
    "actor_agent_id",
    "action",
    "tool_name",
    "scope_patient_id",
    "scope_resource_type",
    "scope_resource_id",
    "input_arguments",
    "result_status",
    "result_data",
    "result_error_message",
    "confirmation_status",
    "confirmed_by_user_id",
    "requested_at",
    "completed_at",
    "duration_ms",
    "prev_hash",
    "hash",
)
_JSON_COLUMNS = frozenset({"input_arguments", "result_data"})

# ── Helpers ──────────────────────────────────────────────


def _iso_z(ts: datetime | None) -> str | None:
    """UTC ISO-8601 with microseconds and 'Z' suffix; stable across a DB round-trip."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return ts.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _canonical_json(obj: object) -> str:
    def _default(o: object) -> str:
        if isinstance(o, datetime):
            return _iso_z(o) or ""
        return str(o)

    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=_default)


def _sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


# ── PHI minimisation ─────────────────────────────────────


def hash_value(value: str) -> str:
    """Irreversible token for a PHI string: hash_<12 hex>_<n>chars."""
    return f"hash_{_sha256_hex(value)[:12]}_{len(value)}chars"


def sanitize_arguments(args: dict[str, Any] | None) -> dict[str, Any]:
    """
    Copy of *args* safe to persist: PHI strings hashed, PHI objects elided,
    plus a `_metadata` block naming the fields the caller provided.
    """
    if not args:
        return {"_metadata": {"fields_provided": [], "phi_minimized": True}}
    out: dict[str, Any] = {}
    for key, value in args.items():
        if key in PHI_FIELDS and value:
            if isinstance(value, str):
                out[key] = hash_value(value)
            elif isinstance(value, (dict, list)):
                out[key] = "[OBJECT_PROVIDED]"
            else:
                out[key] = hash_value(str(value))
        else:
            out[key] = value
    out["_metadata"] = {"fields_provided": sorted(args), "phi_minimized": True}
    return out


def session_entry(actor: Actor, event: Literal["login", "logout"], now: datetime | None = None) -> AuditEntry:
    """Login / logout entry written at the identity boundary."""
    ts = now or datetime.now(UTC)
    return AuditEntry(
        actor_id=actor.id,
        actor_email=actor.email,
        actor_role=actor.role,
        action=f"user_{event}",
        tool_name="identity",
        input_arguments={"email": hash_value(actor.email)} if event == "login" and actor.email else {},
        result_status="success",
        result_data={"role": actor.role} if event == "login" else {},
        requested_at=ts,
        completed_at=ts,
        duration_ms=0,
    )


# ── Hash contract ────────────────────────────────────────


def _hash_fields(entry: AuditEntry) -> dict[str, Any]:
    data = entry.model_dump(mode="python", exclude={"prev_hash", "hash"})
    data["event_id"] = str(entry.event_id)
    data["requested_at"] = _iso_z(entry.requested_at)
    data["completed_at"] = _iso_z(entry.completed_at)
    return data


def compute_hash(entry: AuditEntry, prev_hash: str) -> str:
    """
    sha256(canonical_json(entry fields) + prev_hash)

    Timestamps enter as UTC 'Z' strings, payload keys are sorted, and
    prev_hash is "" for the genesis record.
    """
    return _sha256_hex(_canonical_json(_hash_fields(entry)) + prev_hash)


def verify_chain(records: list[AuditRecord]) -> tuple[bool, int | None]:
    """
    Walk records (insertion order) and check linkage and hashes.
    Returns (True, None) or (False, index of the first broken record).
    """
    for i, rec in enumerate(records):
        expected_prev = records[i - 1].hash if i > 0 else ""
        if rec.prev_hash != expected_prev:
            return False, i
        if rec.hash != compute_hash(rec, rec.prev_hash):
            return False, i
    return True, None


# ── Query building ───────────────────────────────────────


def build_query(q: AuditQuery, max_limit: int) -> tuple[str, list[Any]]:
    """SQL + params for an audit listing, newest first."""
    clauses: list[str] = []
    params: list[Any] = []
    if q.action:
        clauses.append("action = %s")
        params.append(q.action)
    if q.actor_role:
        clauses.append("actor_role = %s")
        params.append(q.actor_role)
    if q.result_status:
        clauses.append("result_status = %s")
        params.append(q.result_status)
    if q.date_from:
        clauses.append("requested_at >= %s")
        params.append(q.date_from)
    if q.date_to:
        clauses.append("requested_at <= %s")
        params.append(q.date_to)
    if q.search:
        clauses.append("(actor_email ILIKE %s OR action ILIKE %s)")
        pattern = f"%{q.search}%"
        params.extend([pattern, pattern])

    where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_logs{where} ORDER BY requested_at DESC, id DESC LIMIT %s;"
    params.append(min(q.limit, max_limit))
    return sql, params


# ── Persistence ──────────────────────────────────────────


class AuditLog:
    """
    Append-only audit trail in Postgres (`audit_logs`).

    Writers are serialised with a transaction-scoped advisory lock so every
    record's prev_hash is the hash of the record inserted just before it.
    Rows are never updated or deleted.
    """

    LOCK_KEY = 4242

    def __init__(self, pg_dsn: str, max_query_limit: int = 500) -> None:
        self._dsn = pg_dsn
        self._max_limit = max_query_limit

    def _prev_hash(self, conn: psycopg2.extensions.connection) -> str:
        with conn.cursor() as cur:
            cur.execute("SELECT hash FROM audit_logs ORDER BY id DESC LIMIT 1;")
            row = cur.fetchone()
            return row[0] if row else ""

    def append(self, entry: AuditEntry) -> AuditRecord:
        conn = psycopg2.connect(self._dsn)
        try:
            conn.autocommit = False
            with conn.cursor() as cur:
                cur.execute("SELECT pg_advisory_xact_lock(%s);", (self.LOCK_KEY,))

            prev_hash = self._prev_hash(conn)
            record = AuditRecord(
                **entry.model_dump(),
                prev_hash=prev_hash,
                hash=compute_hash(entry, prev_hash),
            )
            values = record.model_dump()
            with conn.cursor() as cur:
                cur.execute(
                    f"INSERT INTO audit_logs ({', '.join(AUDIT_COLUMNS)}) "
                    f"VALUES ({', '.join(['%s'] * len(AUDIT_COLUMNS))});",
                    [
                        psycopg2.extras.Json(values[c], dumps=_canonical_json) if c in _JSON_COLUMNS else values[c]
                        for c in AUDIT_COLUMNS
                    ],
                )
            conn.commit()
            return record
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def query(self, q: AuditQuery) -> list[AuditRecord]:
        sql, params = build_query(q, self._max_limit)
        conn = psycopg2.connect(self._dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
        finally:
            conn.close()
        return [AuditRecord.model_validate(dict(r)) for r in rows]

    def chain(self) -> list[AuditRecord]:
        """Every record in insertion order (for verification)."""
        conn = psycopg2.connect(self._dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_logs ORDER BY id ASC;")
                rows = cur.fetchall()
        finally:
            conn.close()
        return [AuditRecord.model_validate(dict(r)) for r in rows]

    def ping(self) -> None:
        conn = psycopg2.connect(self._dsn, connect_timeout=2)
        try:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
        finally:
            conn.close()
