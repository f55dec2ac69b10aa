from __future__ import annotations

import json
from dataclasses import dataclass

import psycopg2
import psycopg2.extras

from .llm_client import LlmClient, LlmError
from .logging import get_logger
from .metrics import METRICS

__all__ = ["ContextSnippet", "ContextRetriever"]

logger = get_logger("toolgate.retrieval")


@dataclass(frozen=True)
class ContextSnippet:
    content_type: str
    text: str
    score: float | None = None


class ContextRetriever:
    """
    Patient-scoped similarity search over `patient_embeddings` (pgvector).

    Retrieval is best-effort: any failure is logged and yields no snippets,
    so callers fall back to answering without context.
    """

    def __init__(
        self,
        pg_dsn: str,
        llm: LlmClient,
        *,
        match_threshold: float = 0.7,
        match_count: int = 5,
    ) -> None:
        self._dsn = pg_dsn
        self._llm = llm
        self._threshold = match_threshold
        self._count = match_count

    def _rows(self, sql: str, params: tuple[object, ...]) -> list[dict[str, object]]:
        conn = psycopg2.connect(self._dsn)
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(r) for r in cur.fetchall()]
        finally:
            conn.close()

    @staticmethod
    def _snippet(row: dict[str, object]) -> ContextSnippet:
        score = row.get("similarity")
        return ContextSnippet(
            content_type=str(row.get("content_type") or "note"),
            text=str(row.get("content_text") or ""),
            score=float(score) if score is not None else None,
        )

    def search(self, query: str, patient_id: str) -> list[ContextSnippet]:
        try:
            embedding = self._llm.embed(query)
            rows = self._rows(
                "SELECT * FROM search_patient_embeddings(%s::vector, %s::uuid, %s, %s);",
                (json.dumps(embedding), patient_id, self._threshold, self._count),
            )
        except LlmError as exc:
            METRICS.inc("toolgate_llm_error_total", labels={"kind": exc.kind})
            logger.warning("context_search_failed", kind=exc.kind, error=str(exc))
            return []
        except psycopg2.Error as exc:
            logger.warning("context_search_failed", kind="database", error=str(exc))
            return []
        return [self._snippet(r) for r in rows]

    def recent(self, patient_id: str, limit: int | None = None) -> list[ContextSnippet]:
        try:
            rows = self._rows(
                "SELECT content_type, content_text FROM patient_embeddings "
                "WHERE patient_id = %s::uuid ORDER BY created_at DESC LIMIT %s;",
                (patient_id, limit or self._count),
            )
        except psycopg2.Error as exc:
            logger.warning("context_recent_failed", error=str(exc))
            return []
        return [self._snippet(r) for r in rows]
