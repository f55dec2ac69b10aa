#!/usr/bin/env python3
"""
Daily anchor digest of the audit_logs hash chain.

    python -m toolgate.export_audit_digest [YYYY-MM-DD] > digest.json

The window defaults to yesterday (UTC).  Records in the window are re-hashed
and their linkage checked; the first record's prev_hash points outside the
window and is taken as given.  The emitted `digest_hash` is the value to
store somewhere write-once.

Exit codes:
  0 = window verified, digest emitted
  1 = chain broken (digest still emitted with chain_valid=false)
  2 = connectivity / unexpected error
"""

from __future__ import annotations

import json
import os
import sys
from datetime import UTC, date, datetime, timedelta

import psycopg2
import psycopg2.extras

from .audit import AUDIT_COLUMNS, _canonical_json, _sha256_hex, compute_hash
from .models import AuditRecord

__all__ = ["export_digest", "verify_window"]

PG_DSN = os.environ.get("PG_DSN", "dbname=emr user=emr password=emr host=localhost port=5432")


def _window_records(pg_dsn: str, day: date) -> list[AuditRecord]:
    conn = psycopg2.connect(pg_dsn)
    try:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(
                f"SELECT {', '.join(AUDIT_COLUMNS)} FROM audit_logs "
                "WHERE requested_at >= %s::date AND requested_at < %s::date + interval '1 day' "
                "ORDER BY id ASC;",
                (day.isoformat(), day.isoformat()),
            )
            rows = cur.fetchall()
    finally:
        conn.close()
    return [AuditRecord.model_validate(dict(r)) for r in rows]


def verify_window(records: list[AuditRecord]) -> tuple[bool, int | None]:
    """Like verify_chain, but the first prev_hash may point before the window."""
    for i, rec in enumerate(records):
        if i > 0 and rec.prev_hash != records[i - 1].hash:
            return False, i
        if rec.hash != compute_hash(rec, rec.prev_hash):
            return False, i
    return True, None


def export_digest(pg_dsn: str, day: str | None = None) -> dict[str, object]:
    window = date.fromisoformat(day) if day else (datetime.now(UTC) - timedelta(days=1)).date()
    records = _window_records(pg_dsn, window)
    valid, broken_at = verify_window(records)

    payload: dict[str, object] = {
        "window": window.isoformat(),
        "event_count": len(records),
        "first_hash": records[0].hash if records else None,
        "last_hash": records[-1].hash if records else None,
        "chain_valid": valid,
    }
    if broken_at is not None:
        payload["first_broken_event_id"] = str(records[broken_at].event_id)

    return {
        "generated_at": datetime.now(UTC).isoformat(),
        **payload,
        "digest_hash": _sha256_hex(_canonical_json(payload)),
    }


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    try:
        result = export_digest(PG_DSN, args[0] if args else None)
    except Exception as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 2

    print(json.dumps(result, indent=2))
    return 0 if result["chain_valid"] else 1


if __name__ == "__main__":
    sys.exit(main())
