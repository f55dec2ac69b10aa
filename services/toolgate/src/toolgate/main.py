from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.concurrency import run_in_threadpool

from .assistant import ChatAssistant
from .audit import AuditLog
from .errors import InvalidRequest, NotFound, ToolgateError
from .identity import IdentityProvider, demo_actor
from .llm_client import LlmClient
from .logging import get_logger, setup_logging
from .metrics import METRICS
from .models import (
    AuditQuery,
    ChatRequestV1,
    RejectRequestV1,
    Resource,
    SessionEventV1,
    ToolFailureV1,
    WorkflowRequestV1,
)
from .orchestrator import InvocationOutcome, Orchestrator
from .pending_store import PendingOperationStore
from .policy import PolicyEngine
from .registry import ToolRegistry
from .retrieval import ContextRetriever
from .settings import (
    AUDIT_QUERY_MAX_LIMIT,
    DEMO_USER_EMAIL,
    DEMO_USER_ID,
    EMBEDDING_MODEL,
    LLM_API_KEY,
    LLM_BASE_URL,
    LLM_MODEL,
    LLM_TIMEOUT_SECONDS,
    PG_DSN,
    RAG_MATCH_COUNT,
    RAG_MATCH_THRESHOLD,
    REDIS_URL,
)
from .store import PostgresDataStore
from .tools import ToolOutput
from .workflows import WORKFLOW_ACTIONS, PatientWorkflows

logger = get_logger("toolgate.api")


@dataclass
class Dependencies:
    orchestrator: Orchestrator
    assistant: ChatAssistant
    workflows: PatientWorkflows


def build_dependencies() -> Dependencies:
    """Production wiring from settings; no connection is opened here."""
    store = PostgresDataStore(PG_DSN)
    registry = ToolRegistry()
    llm = LlmClient(
        LLM_BASE_URL,
        LLM_API_KEY,
        model=LLM_MODEL,
        embedding_model=EMBEDDING_MODEL,
        timeout_s=LLM_TIMEOUT_SECONDS,
    )
    orchestrator = Orchestrator(
        registry=registry,
        policy=PolicyEngine(),
        pending=PendingOperationStore(REDIS_URL),
        audit=AuditLog(PG_DSN, max_query_limit=AUDIT_QUERY_MAX_LIMIT),
        identity=IdentityProvider(store, demo=demo_actor(DEMO_USER_ID, DEMO_USER_EMAIL)),
        store=store,
    )
    retriever = ContextRetriever(PG_DSN, llm, match_threshold=RAG_MATCH_THRESHOLD, match_count=RAG_MATCH_COUNT)
    return Dependencies(
        orchestrator=orchestrator,
        assistant=ChatAssistant(store, retriever, llm, registry),
        workflows=PatientWorkflows(store),
    )


def _respond(outcome: InvocationOutcome) -> JSONResponse:
    return JSONResponse(status_code=outcome.status_code, content=jsonable_encoder(outcome.body))


def _failure(exc: ToolgateError) -> JSONResponse:
    METRICS.inc("toolgate_error_total", labels={"code": exc.code})
    body = ToolFailureV1(error=exc.code, message=exc.message, details=dict(exc.details) or None, execution_time_ms=0)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


def create_app(deps: Dependencies | None = None) -> FastAPI:
    setup_logging()
    deps = deps or build_dependencies()
    orch = deps.orchestrator

    app = FastAPI(title="EMR Toolgate", version="0.1")
    app.state.deps = deps

    # ── Healthchecks ─────────────────────────────────────

    @app.get("/health")
    def health():
        """Liveness: process is alive."""
        return {"status": "ok"}

    @app.get("/healthz")
    def healthz():
        """
        Readiness: 200 only when the audit store (Postgres) and the
        pending operation store (Redis) both answer.  Any failure → 503.
        """
        checks: dict[str, str] = {}
        try:
            orch.audit.ping()
            checks["postgres"] = "ok"
        except Exception as e:
            raise HTTPException(status_code=503, detail=f"postgres: {e}") from None
        try:
            orch.pending.ping()
            checks["redis"] = "ok"
        except Exception as e:
            raise HTTPException(status_code=503, detail=f"redis: {e}") from None
        return {"status": "ok", "checks": checks}

    @app.get("/metrics")
    def metrics():
        """Prometheus text exposition endpoint."""
        return PlainTextResponse(METRICS.render(), media_type="text/plain; version=0.0.4; charset=utf-8")

    # ── Tools ────────────────────────────────────────────

    @app.get("/tools")
    def list_tools():
        return {"tools": orch.registry.describe()}

    @app.post("/tools/invoke")
    async def invoke(request: Request):
        # Raw body: envelope validation belongs to the orchestrator so that
        # malformed requests are audited like any other failure.
        try:
            payload: Any = await request.json()
        except ValueError:
            payload = None
        return _respond(await run_in_threadpool(orch.handle, payload))

    @app.post("/tools/pending/{pending_id}/reject")
    def reject(pending_id: str, req: RejectRequestV1 | None = None):
        user_id = req.user_id if req is not None else DEMO_USER_ID
        return _respond(orch.reject(pending_id, user_id))

    # ── Audit ────────────────────────────────────────────

    @app.get("/audit/logs")
    def audit_logs(
        user_id: str = DEMO_USER_ID,
        action: str | None = None,
        actor_role: str | None = None,
        result_status: Literal["success", "failure", "pending"] | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        search: str | None = None,
        limit: int = Query(100, ge=1),
    ):
        q = AuditQuery(
            action=action,
            actor_role=actor_role,
            result_status=result_status,
            date_from=date_from,
            date_to=date_to,
            search=search,
            limit=limit,
        )

        def work(_actor) -> ToolOutput:
            records = orch.audit.query(q)
            return ToolOutput(
                result={"logs": [r.model_dump(mode="json") for r in records], "count": len(records)},
                summary=f"{len(records)} audit entries",
            )

        return _respond(
            orch.run_authorized(
                action="view_audit_log",
                user_id=user_id,
                resource=Resource(type="AuditLog"),
                arguments=q.model_dump(mode="json", exclude_none=True),
                work=work,
            )
        )

    @app.post("/audit/session")
    def audit_session(req: SessionEventV1):
        return _respond(orch.record_session(req.user_id, req.event))

    # ── Assistant & workflows ────────────────────────────

    @app.post("/chat")
    def chat(req: ChatRequestV1):
        if not req.messages:
            return _failure(InvalidRequest("No messages provided", {"fields": ["messages"]}))

        if req.patient_id is None:
            try:
                return JSONResponse(content=jsonable_encoder(deps.assistant.reply(req.messages)))
            except ToolgateError as exc:
                return _failure(exc)

        patient_id = str(req.patient_id)
        outcome = orch.run_authorized(
            action="ai_chat",
            user_id=req.user_id,
            patient_id=patient_id,
            arguments={"message_count": len(req.messages)},
            work=lambda _actor: ToolOutput(
                result=deps.assistant.reply(req.messages, patient_id),
                summary=f"chat reply ({len(req.messages)} messages)",
            ),
        )
        if outcome.status_code != 200:
            return _respond(outcome)
        return JSONResponse(content=jsonable_encoder(outcome.body["result"]))

    @app.post("/patients/{patient_id}/workflows/{workflow}")
    def run_workflow(patient_id: uuid.UUID, workflow: str, req: WorkflowRequestV1 | None = None):
        if workflow not in WORKFLOW_ACTIONS:
            return _failure(NotFound(f"Unknown workflow: {workflow}", {"workflows": list(WORKFLOW_ACTIONS)}))
        req = req or WorkflowRequestV1()
        pid = str(patient_id)
        return _respond(
            orch.run_authorized(
                action=workflow,
                user_id=req.user_id,
                patient_id=pid,
                arguments={"preferred_window": req.preferred_window},
                work=lambda _actor: deps.workflows.run(workflow, pid, preferred_window=req.preferred_window),
            )
        )

    logger.info("app_created", tools=orch.registry.names)
    return app


app = create_app()
